"""Card processor (Stripe) payment intents and webhook events.

Webhook events follow the same shape as the bank gateway notification:
verify the vendor signature, then apply the status transition.
"""

import json

import stripe
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bikepay.common.errors import (
    CardGatewayUnavailable,
    CardPaymentError,
    InvalidAmount,
    MalformedNotification,
    PaymentError,
    PersistenceError,
    SignatureMismatch,
)
from bikepay.common.logging import logger
from bikepay.common.metrics import card_webhook_events_total
from bikepay.common.state_machine import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PENDING,
    InvalidTransition,
)
from bikepay.services.payments.models import PaymentIntentRecord, Reservation
from bikepay.services.payments.redsys_params import amount_to_cents
from bikepay.services.payments.reservations import (
    apply_payment_status,
    find_by_payment_intent,
    record_unapplied_result,
)


METADATA_VALUE_MAX_LENGTH = 500


class CardGateway:
    """Thin wrapper over the Stripe SDK client built once at startup."""

    def __init__(self, client: stripe.StripeClient, webhook_secret: str | None) -> None:
        self.client = client
        self.webhook_secret = webhook_secret

    def construct_event(self, payload: bytes, sig_header: str | None) -> dict:
        """Verify the `Stripe-Signature` header and return the event as a dict."""

        if not self.webhook_secret:
            raise SignatureMismatch("webhook secret is not configured")
        if not sig_header:
            raise SignatureMismatch("missing signature header")
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text, sig_header, self.webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            raise SignatureMismatch("webhook signature verification failed") from None
        try:
            event = json.loads(text)
        except ValueError:
            raise MalformedNotification("webhook body is not JSON") from None
        if not isinstance(event, dict):
            raise MalformedNotification("webhook body must be a JSON object")
        return event

    def create_payment_intent(self, amount_cents: int, currency: str, metadata: dict[str, str]):
        return self.client.v1.payment_intents.create(
            params={
                "amount": amount_cents,
                "currency": currency,
                "payment_method_types": ["card"],
                "metadata": metadata,
            }
        )

    def card_fingerprint(self, payment_intent_id: str) -> str | None:
        intent = self.client.v1.payment_intents.retrieve(payment_intent_id, params={"expand": ["latest_charge"]})
        charge = intent["latest_charge"]
        if not charge or isinstance(charge, str):
            return None
        details = charge["payment_method_details"]
        card = details["card"] if details and "card" in details else None
        return card["fingerprint"] if card else None

    def void_payment_intent(self, payment_intent_id: str, status: str | None) -> str:
        """Cancel an uncaptured intent, or refund one that already succeeded."""

        if status == "succeeded":
            self.client.v1.refunds.create(params={"payment_intent": payment_intent_id})
            return "refunded"
        self.client.v1.payment_intents.cancel(payment_intent_id)
        return "canceled"


def clean_metadata(metadata) -> dict[str, str]:
    """Stringify and truncate metadata values; the processor only stores strings."""

    if not isinstance(metadata, dict):
        return {}
    cleaned = {}
    for key, value in metadata.items():
        cleaned[str(key)] = "" if value is None else str(value)[:METADATA_VALUE_MAX_LENGTH]
    return cleaned


def _optional_cents(value) -> int | None:
    if value in (None, ""):
        return None
    try:
        return amount_to_cents(value)
    except InvalidAmount:
        return None


def _json_list(value) -> list:
    if isinstance(value, list):
        return value
    if not isinstance(value, str) or not value:
        return []
    try:
        parsed = json.loads(value)
    except ValueError:
        return []
    return parsed if isinstance(parsed, list) else []


def reservation_from_metadata(intent: dict) -> Reservation:
    """Build a pending reservation from the metadata the checkout attached to the intent."""

    metadata = intent.get("metadata") or {}
    return Reservation(
        status=PENDING,
        payment_status=PAYMENT_PENDING,
        state_version=0,
        payment_method="stripe",
        stripe_payment_intent_id=intent["id"],
        customer_name=metadata.get("customer_name") or None,
        customer_email=metadata.get("customer_email") or intent.get("receipt_email") or None,
        customer_phone=metadata.get("customer_phone") or None,
        start_date=metadata.get("start_date") or None,
        end_date=metadata.get("end_date") or None,
        pickup_time=metadata.get("pickup_time") or None,
        return_time=metadata.get("return_time") or None,
        pickup_location=metadata.get("pickup_location") or None,
        total_amount_cents=_optional_cents(metadata.get("total_price")),
        deposit_cents=_optional_cents(metadata.get("deposit")),
        insurance=str(metadata.get("insurance", "")).lower() in ("1", "true", "yes"),
        details={
            "bikes": _json_list(metadata.get("bikes_data")),
            "accessories": _json_list(metadata.get("accessories_data")),
        },
    )


def _intent_summary(intent: dict) -> dict:
    return {
        "id": intent.get("id"),
        "status": intent.get("status"),
        "amount": intent.get("amount"),
        "amount_received": intent.get("amount_received"),
        "currency": intent.get("currency"),
        "latest_charge": intent.get("latest_charge") if isinstance(intent.get("latest_charge"), str) else None,
    }


class CardPaymentService:
    """Creates payment intents for the hosted card form."""

    def __init__(self, session_factory, gateway: CardGateway) -> None:
        self.session_factory = session_factory
        self.gateway = gateway

    def create_payment_intent(self, amount, currency: str = "eur", metadata=None) -> dict:
        """Create an intent for `amount` cents and record it locally (best effort)."""

        if isinstance(amount, bool):
            raise InvalidAmount("amount must be an integer number of cents")
        try:
            amount_cents = round(float(amount))
        except (TypeError, ValueError, OverflowError):
            raise InvalidAmount("amount must be an integer number of cents") from None
        if amount_cents <= 0:
            raise InvalidAmount("amount must be greater than zero")

        cleaned = clean_metadata(metadata)
        try:
            intent = self.gateway.create_payment_intent(amount_cents, currency.lower(), cleaned)
        except stripe.StripeError as exc:
            logger.error("payment intent creation failed amount_cents=%s error=%s", amount_cents, exc)
            raise CardPaymentError("the card payment could not be started") from exc

        try:
            with self.session_factory() as db:
                db.add(
                    PaymentIntentRecord(
                        intent_id=intent["id"],
                        amount_cents=intent["amount"],
                        currency=intent["currency"],
                        customer_email=cleaned.get("customer_email", ""),
                        status=intent["status"],
                        intent_metadata=cleaned,
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            logger.error("payment intent not recorded intent_id=%s error=%s", intent["id"], exc)

        logger.info("payment intent created intent_id=%s amount_cents=%s", intent["id"], amount_cents)
        return {"client_secret": intent["client_secret"], "payment_intent_id": intent["id"]}


class CardWebhookService:
    """Applies verified card processor events to reservations."""

    def __init__(
        self,
        session_factory,
        gateway: CardGateway,
        *,
        live: bool,
        test_card_fingerprints: frozenset[str] = frozenset(),
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.live = live
        self.test_card_fingerprints = test_card_fingerprints

    def handle_event(self, payload: bytes, sig_header: str | None) -> str:
        """Verify and apply one webhook delivery; returns the outcome label."""

        try:
            event = self.gateway.construct_event(payload, sig_header)
        except (SignatureMismatch, MalformedNotification) as exc:
            card_webhook_events_total.labels(event_type="unknown", outcome="rejected").inc()
            logger.warning("card webhook rejected reason=%s", exc.code)
            raise

        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object")
        if not isinstance(obj, dict) or not obj.get("id"):
            raise MalformedNotification("webhook event has no data object")

        handlers = {
            "payment_intent.succeeded": self._on_succeeded,
            "payment_intent.payment_failed": self._on_failed,
            "charge.refunded": self._on_refunded,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info("card webhook ignored event_type=%s event_id=%s", event_type, event.get("id"))
            card_webhook_events_total.labels(event_type="other", outcome="ignored").inc()
            return "ignored"

        try:
            outcome = handler(obj, bool(event.get("livemode")))
        except SQLAlchemyError as exc:
            card_webhook_events_total.labels(event_type=event_type, outcome="persistence_error").inc()
            logger.error("card webhook not applied event_id=%s error=%s", event.get("id"), exc)
            raise PersistenceError("could not record payment result") from exc
        except PaymentError as exc:
            card_webhook_events_total.labels(event_type=event_type, outcome=exc.code).inc()
            raise
        card_webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
        return outcome

    def _is_test_card(self, intent: dict, livemode: bool) -> bool:
        if not (self.live and livemode and self.test_card_fingerprints):
            return False
        try:
            fingerprint = self.gateway.card_fingerprint(intent["id"])
        except stripe.StripeError as exc:
            logger.error("card fingerprint lookup failed intent_id=%s error=%s", intent["id"], exc)
            raise CardGatewayUnavailable(f"could not inspect card for intent {intent['id']}") from exc
        return fingerprint is not None and fingerprint in self.test_card_fingerprints

    def _on_succeeded(self, intent: dict, livemode: bool) -> str:
        if self._is_test_card(intent, livemode):
            logger.error("test card used in live payment intent_id=%s; voiding intent", intent["id"])
            try:
                self.gateway.void_payment_intent(intent["id"], intent.get("status"))
            except stripe.StripeError as exc:
                logger.error("could not void test-card payment intent_id=%s error=%s", intent["id"], exc)
            return "test_card_rejected"

        fields = {
            "payment_method": "stripe",
            "payment_amount_cents": intent.get("amount_received") or intent.get("amount"),
            "payment_raw_response": _intent_summary(intent),
        }
        with self.session_factory() as db:
            reservation = find_by_payment_intent(db, intent["id"])
            if reservation is None:
                reservation = reservation_from_metadata(intent)
                db.add(reservation)
                try:
                    db.flush()
                except IntegrityError:
                    # A concurrent delivery created it first.
                    db.rollback()
                    reservation = find_by_payment_intent(db, intent["id"])
                    if reservation is None:
                        raise PersistenceError(f"could not create reservation for intent {intent['id']}")
                else:
                    logger.info(
                        "reservation created from payment intent intent_id=%s reservation_id=%s",
                        intent["id"],
                        reservation.id,
                    )
            applied = self._apply(db, reservation, PAYMENT_COMPLETED, fields)
            db.commit()
        return "applied" if applied else "duplicate"

    def _on_failed(self, intent: dict, livemode: bool) -> str:
        error = intent.get("last_payment_error") or {}
        fields = {
            "payment_response_code": error.get("decline_code") or error.get("code"),
            "payment_raw_response": _intent_summary(intent),
        }
        with self.session_factory() as db:
            reservation = find_by_payment_intent(db, intent["id"])
            if reservation is None:
                logger.info("failed payment for unknown reservation intent_id=%s", intent["id"])
                return "no_reservation"
            applied = self._apply(db, reservation, PAYMENT_FAILED, fields)
            db.commit()
        return "applied" if applied else "duplicate"

    def _on_refunded(self, charge: dict, livemode: bool) -> str:
        intent_id = charge.get("payment_intent")
        if not intent_id:
            logger.info("refund without payment intent charge_id=%s", charge["id"])
            return "no_reservation"
        with self.session_factory() as db:
            reservation = find_by_payment_intent(db, intent_id)
            if reservation is None:
                logger.info("refund for unknown reservation intent_id=%s", intent_id)
                return "no_reservation"
            fields = {
                "payment_raw_response": {
                    "refunded_charge": charge["id"],
                    "amount_refunded": charge.get("amount_refunded"),
                },
            }
            applied = self._apply(db, reservation, PAYMENT_REFUNDED, fields)
            db.commit()
        return "applied" if applied else "duplicate"

    def _apply(self, db, reservation: Reservation, payment_status: str, fields: dict) -> bool:
        try:
            return apply_payment_status(db, reservation, payment_status, source="stripe", **fields)
        except InvalidTransition as exc:
            record_unapplied_result(reservation, payment_status, source="stripe", reason=exc)
            return False
