"""Process entry point: `uvicorn bikepay.services.payments.main:app`."""

from bikepay.common.config import load_settings
from bikepay.common.logging import configure_logging
from bikepay.common.startup import log_startup_config
from bikepay.common.tracing import instrument_app, setup_tracing
from bikepay.services.payments.app import create_app

settings = load_settings()
configure_logging(settings.service_name, settings.log_level)
if settings.otel_exporter_otlp_endpoint:
    setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
log_startup_config(
    settings,
    [
        "app_env",
        "postgres_dsn",
        "site_base_url",
        "redsys_merchant_code",
        "redsys_terminal",
        "redsys_secret_key",
        "redsys_notification_path",
        "redsys_outbound_signature_encoding",
        "redsys_inbound_signature_encoding",
        "redsys_key_derivation",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "resend_api_key",
    ],
)

app = create_app(settings)
if settings.otel_exporter_otlp_endpoint:
    instrument_app(app)
