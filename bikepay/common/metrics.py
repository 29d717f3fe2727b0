"""Prometheus metric definitions for the payment service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


redsys_requests_total = Counter(
    "redsys_requests_total",
    "Outbound redirect payment requests composed",
    ["environment"],
)
redsys_notifications_total = Counter(
    "redsys_notifications_total",
    "Inbound redirect-gateway notifications by outcome",
    ["outcome"],
)
card_webhook_events_total = Counter(
    "card_webhook_events_total",
    "Card processor webhook events by type and outcome",
    ["event_type", "outcome"],
)
reservation_transitions_total = Counter(
    "reservation_transitions_total",
    "Applied reservation status transitions",
    ["to_status", "source"],
)
duplicate_deliveries_total = Counter(
    "duplicate_deliveries_total",
    "Redelivered payment results skipped as no-ops",
    ["source"],
)
unapplied_payment_results_total = Counter(
    "unapplied_payment_results_total",
    "Verified successful payments that could not be applied to their reservation",
    ["source"],
)
emails_sent_total = Counter("emails_sent_total", "Confirmation email deliveries", ["outcome"])
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
