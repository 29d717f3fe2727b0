"""Confirmation email outbox: enqueue inside payment transactions, deliver later.

Delivery failures only affect the outbox row; the payment transition that
enqueued the email has already committed.
"""

import asyncio

import resend

from bikepay.common.logging import logger
from bikepay.common.metrics import emails_sent_total
from bikepay.common.outbox import claim_outbox_batch, mark_outbox_sent, requeue_outbox_event
from bikepay.services.notification.models import EmailOutboxEvent
from bikepay.services.notification.templates import RENDERERS


CONFIRMATION_TEMPLATE = "reservation_confirmed"


def confirmation_payload(reservation) -> dict:
    details = reservation.details or {}
    return {
        "reservation_id": reservation.id,
        "customer_name": reservation.customer_name,
        "start_date": reservation.start_date,
        "end_date": reservation.end_date,
        "pickup_time": reservation.pickup_time,
        "return_time": reservation.return_time,
        "pickup_location": reservation.pickup_location,
        "bikes": details.get("bikes", []),
        "insurance": bool(reservation.insurance),
        "deposit_cents": reservation.deposit_cents,
        "total_cents": reservation.payment_amount_cents or reservation.total_amount_cents,
    }


def enqueue_confirmation_email(db, reservation) -> bool:
    """Add a confirmation email row to the current transaction, if there is a recipient."""

    if not reservation.customer_email:
        logger.info("confirmation email skipped reservation_id=%s reason=no_recipient", reservation.id)
        return False
    db.add(
        EmailOutboxEvent(
            reservation_id=reservation.id,
            template=CONFIRMATION_TEMPLATE,
            recipient=reservation.customer_email,
            payload=confirmation_payload(reservation),
        )
    )
    return True


class ResendSender:
    """Sends rendered emails through the Resend API."""

    def __init__(self, api_key: str, from_address: str) -> None:
        self.api_key = api_key
        self.from_address = from_address

    def send(self, to: str, subject: str, html: str, tags: dict | None = None) -> str | None:
        resend.api_key = self.api_key
        params = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if tags:
            params["tags"] = [{"name": k, "value": str(v)} for k, v in tags.items()]
        result = resend.Emails.send(params)
        return result.get("id") if isinstance(result, dict) else None


class EmailDispatcher:
    """Delivers pending outbox emails with bounded retries."""

    def __init__(self, session_factory, sender, max_attempts: int = 5, interval_seconds: float = 2.0) -> None:
        self.session_factory = session_factory
        self.sender = sender
        self.max_attempts = max_attempts
        self.interval_seconds = interval_seconds

    def dispatch_once(self, limit: int = 50) -> int:
        """Claim and send one batch; returns how many emails were sent."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, EmailOutboxEvent, limit=limit)
            db.commit()

        sent = 0
        for row in rows:
            renderer = RENDERERS.get(row["template"])
            try:
                if renderer is None:
                    raise ValueError(f"unknown email template {row['template']}")
                subject, html = renderer(row["payload"])
                message_id = self.sender.send(row["recipient"], subject, html, tags={"category": row["template"]})
            except Exception as exc:
                with self.session_factory() as db:
                    status = requeue_outbox_event(db, EmailOutboxEvent, row["id"], str(exc), self.max_attempts)
                    db.commit()
                emails_sent_total.labels(outcome="failed").inc()
                logger.error("email delivery failed outbox_id=%s status=%s error=%s", row["id"], status, exc)
                continue
            with self.session_factory() as db:
                mark_outbox_sent(db, EmailOutboxEvent, row["id"])
                db.commit()
            sent += 1
            emails_sent_total.labels(outcome="sent").inc()
            logger.info("email sent outbox_id=%s template=%s message_id=%s", row["id"], row["template"], message_id)
        return sent

    async def run_forever(self) -> None:
        """Continuously deliver pending emails."""

        while True:
            try:
                await asyncio.to_thread(self.dispatch_once)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("email dispatcher loop error: %s", exc)
            await asyncio.sleep(self.interval_seconds)
