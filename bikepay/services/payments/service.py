"""Redirect bank gateway (Redsys) payment flow.

Outbound: build, encode and sign merchant parameters, and record the
attempt before the browser is redirected. Inbound: the server-to-server
notification is the trust boundary; nothing in its payload is used to
change state until its signature verifies.
"""

import time
from datetime import datetime, timezone
from urllib.parse import unquote

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bikepay.common.errors import (
    InvalidOrderId,
    MalformedNotification,
    PaymentError,
    PersistenceError,
    ReservationNotPayable,
    SignatureMismatch,
    UnknownReservation,
)
from bikepay.common.logging import logger, order_id_ctx
from bikepay.common.metrics import redsys_notifications_total, redsys_requests_total
from bikepay.common.state_machine import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PENDING,
    InvalidTransition,
)
from bikepay.services.payments.models import PaymentAttempt, Reservation
from bikepay.services.payments.redsys_params import (
    ORDER_ID_LENGTH,
    build_merchant_parameters,
    decode_parameters,
    encode_parameters,
)
from bikepay.services.payments.redsys_signing import SIGNATURE_VERSION, SignatureEngine
from bikepay.services.payments.reservations import (
    apply_payment_status,
    find_by_redsys_order,
    record_unapplied_result,
)
from bikepay.services.payments.schemas import PaymentNotification, RedsysPaymentForm, ReturnPageResult


# Authorized payments (0000-0099) plus authorized refund/confirmation (0900)
# and cancellation (0400). Every other code is a failure.
SUCCESS_RESPONSE_CODES = frozenset(f"{code:04d}" for code in range(100)) | {"0400", "0900"}

# Customer-facing descriptions for common denial codes.
RESPONSE_MESSAGES: dict[str, str] = {
    "0101": "The card has expired.",
    "0102": "The card is temporarily blocked or under suspicion of fraud.",
    "0106": "PIN attempts exceeded.",
    "0125": "The card is not active.",
    "0129": "The security code (CVV2/CVC2) is incorrect.",
    "0180": "The card is not accepted by this merchant.",
    "0184": "Cardholder authentication failed.",
    "0190": "The payment was declined by the issuer.",
    "0191": "The expiry date is incorrect.",
    "0202": "The card is blocked. Please contact your bank.",
    "0904": "The merchant is not registered for this operation.",
    "9915": "The payment was cancelled.",
}
DEFAULT_FAILURE_MESSAGE = "The payment could not be completed."


def normalize_response_code(value) -> str:
    text = str(value if value is not None else "").strip()
    return text.zfill(4) if text.isdigit() else text


def _field(payload: dict, name: str):
    """Case-insensitive lookup; the gateway is not consistent about key casing."""

    if name in payload:
        return payload[name]
    lowered = name.lower()
    for key, value in payload.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def _parse_paid_at(payload: dict) -> datetime | None:
    date_text = _field(payload, "Ds_Date")
    hour_text = _field(payload, "Ds_Hour")
    if not date_text or not hour_text:
        return None
    try:
        return datetime.strptime(f"{unquote(str(date_text))} {unquote(str(hour_text))}", "%d/%m/%Y %H:%M")
    except ValueError:
        return None


def parse_notification(payload: dict) -> PaymentNotification:
    """Map a decoded notification payload to its typed form."""

    order_id = _field(payload, "Ds_Order")
    if not isinstance(order_id, str) or not order_id:
        raise MalformedNotification("notification has no order id")
    response_code = normalize_response_code(_field(payload, "Ds_Response"))
    try:
        amount_cents = int(_field(payload, "Ds_Amount"))
    except (TypeError, ValueError):
        amount_cents = None
    authorisation_code = _field(payload, "Ds_AuthorisationCode")
    if authorisation_code is not None:
        authorisation_code = str(authorisation_code).strip() or None
    return PaymentNotification(
        order_id=order_id,
        response_code=response_code,
        amount_cents=amount_cents,
        authorisation_code=authorisation_code,
        paid_at=_parse_paid_at(payload),
        raw=payload,
        succeeded=response_code in SUCCESS_RESPONSE_CODES,
    )


def generate_order_id() -> str:
    """Time-based 12-digit order id (last 12 digits of the epoch in milliseconds)."""

    return str(time.time_ns() // 1_000_000)[-ORDER_ID_LENGTH:]


class RedsysPaymentService:
    """Composes outbound redirect requests and applies verified notifications."""

    def __init__(
        self,
        session_factory,
        *,
        outbound_engine: SignatureEngine,
        inbound_engine: SignatureEngine,
        merchant_code: str,
        terminal: str,
        site_base_url: str,
        gateway_url: str,
        environment: str,
        description: str = "Alquiler de bicicletas",
        notification_path: str = "/api/notification",
        success_path: str = "/reserva-exitosa",
        failure_path: str = "/reserva-fallida",
    ) -> None:
        self.session_factory = session_factory
        self.outbound_engine = outbound_engine
        self.inbound_engine = inbound_engine
        self.merchant_code = merchant_code
        self.terminal = terminal
        self.site_base_url = site_base_url
        self.gateway_url = gateway_url
        self.environment = environment
        self.description = description
        self.notification_path = notification_path
        self.success_path = success_path
        self.failure_path = failure_path

    def _build(self, amount, order_id, locale, description):
        params = build_merchant_parameters(
            amount=amount,
            order_id=order_id if order_id not in (None, "") else generate_order_id(),
            merchant_code=self.merchant_code,
            terminal=self.terminal,
            site_base_url=self.site_base_url,
            locale=locale,
            description=description or self.description,
            notification_path=self.notification_path,
            success_path=self.success_path,
            failure_path=self.failure_path,
        )
        encoded = encode_parameters(params, self.outbound_engine.encoding)
        signature = self.outbound_engine.sign(params.order, encoded)
        return params, encoded, signature

    def compose_payment_request(
        self,
        amount,
        order_id=None,
        locale: str | None = "es",
        reservation_id: str | None = None,
        description: str | None = None,
    ) -> RedsysPaymentForm:
        """Build the signed redirect form and record the payment attempt first."""

        params, encoded, signature = self._build(amount, order_id, locale, description)
        order_id_ctx.set(params.order)

        with self.session_factory() as db:
            try:
                if reservation_id is not None:
                    reservation = db.get(Reservation, reservation_id)
                    if reservation is None:
                        raise UnknownReservation(f"reservation {reservation_id} not found")
                    if reservation.status != PENDING or reservation.payment_status != PAYMENT_PENDING:
                        raise ReservationNotPayable(
                            f"reservation {reservation_id} is {reservation.status}/{reservation.payment_status}"
                        )
                    reservation.redsys_order_id = params.order
                    reservation.payment_method = "redsys"
                db.add(
                    PaymentAttempt(
                        order_id=params.order,
                        reservation_id=reservation_id,
                        amount_cents=params.amount,
                        currency=params.currency,
                        environment=self.environment,
                        merchant_parameters=encoded,
                        status=PAYMENT_PENDING,
                    )
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                raise InvalidOrderId(f"order id {params.order} has already been used") from None
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("payment attempt not recorded order_id=%s error=%s", params.order, exc)
                raise PersistenceError("could not record payment attempt") from exc

        redsys_requests_total.labels(environment=self.environment).inc()
        logger.info(
            "redsys payment request composed order_id=%s amount_cents=%s reservation_id=%s",
            params.order,
            params.amount,
            reservation_id,
        )
        return RedsysPaymentForm(
            url=self.gateway_url,
            merchant_parameters=encoded,
            signature=signature,
            signature_version=SIGNATURE_VERSION,
        )

    def preview(self, amount, order_id=None, locale: str | None = "es", description: str | None = None) -> dict:
        """Sign a request without recording it (troubleshooting aid for test setups)."""

        params, encoded, signature = self._build(amount, order_id, locale, description)
        return {
            "url": self.gateway_url,
            "merchantParams": params.to_gateway_fields(),
            "Ds_MerchantParameters": encoded,
            "Ds_Signature": signature,
            "Ds_SignatureVersion": SIGNATURE_VERSION,
            "decodedParams": decode_parameters(encoded),
        }

    def _verified_notification(self, merchant_parameters, signature, signature_version) -> PaymentNotification:
        if not merchant_parameters or not signature:
            raise MalformedNotification("Ds_MerchantParameters and Ds_Signature are required")
        if signature_version and signature_version != SIGNATURE_VERSION:
            raise MalformedNotification(f"unsupported signature version {signature_version!r}")

        payload = decode_parameters(merchant_parameters)
        notification = parse_notification(payload)
        order_id_ctx.set(notification.order_id)
        # The key is derived from the order id inside the signed payload.
        if not self.inbound_engine.verify(notification.order_id, merchant_parameters, signature):
            raise SignatureMismatch(f"signature mismatch for order {notification.order_id}")
        return notification

    def handle_notification(
        self,
        merchant_parameters: str | None,
        signature: str | None,
        signature_version: str | None = None,
    ) -> PaymentNotification:
        """Verify a gateway notification and apply its result.

        Returns only after the update has committed.
        """

        try:
            notification = self._verified_notification(merchant_parameters, signature, signature_version)
        except SignatureMismatch:
            redsys_notifications_total.labels(outcome="signature_mismatch").inc()
            logger.warning("redsys notification rejected reason=signature_mismatch order_id=%s", order_id_ctx.get())
            raise
        except MalformedNotification as exc:
            redsys_notifications_total.labels(outcome="malformed").inc()
            logger.warning("redsys notification rejected reason=malformed detail=%s", exc.message)
            raise

        payment_status = PAYMENT_COMPLETED if notification.succeeded else PAYMENT_FAILED
        try:
            self._apply(notification, payment_status)
        except PaymentError:
            redsys_notifications_total.labels(outcome="persistence_error").inc()
            raise
        except SQLAlchemyError as exc:
            redsys_notifications_total.labels(outcome="persistence_error").inc()
            logger.error("redsys notification not applied order_id=%s error=%s", notification.order_id, exc)
            raise PersistenceError("could not record payment result") from exc

        redsys_notifications_total.labels(outcome=payment_status).inc()
        logger.info(
            "redsys notification applied order_id=%s response_code=%s payment_status=%s",
            notification.order_id,
            notification.response_code,
            payment_status,
        )
        return notification

    def _apply(self, notification: PaymentNotification, payment_status: str) -> None:
        with self.session_factory() as db:
            attempt = db.execute(
                select(PaymentAttempt).where(PaymentAttempt.order_id == notification.order_id)
            ).scalar_one_or_none()
            reservation = find_by_redsys_order(db, notification.order_id)
            if attempt is None and reservation is None:
                raise PersistenceError(f"no payment attempt or reservation for order {notification.order_id}")

            if attempt is not None:
                # Never downgrade an attempt that already completed.
                db.execute(
                    update(PaymentAttempt)
                    .where(
                        PaymentAttempt.attempt_id == attempt.attempt_id,
                        PaymentAttempt.status != PAYMENT_COMPLETED,
                    )
                    .values(
                        status=payment_status,
                        response_code=notification.response_code,
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )

            if reservation is not None:
                try:
                    apply_payment_status(
                        db,
                        reservation,
                        payment_status,
                        source="redsys",
                        payment_method="redsys",
                        payment_response_code=notification.response_code,
                        payment_amount_cents=notification.amount_cents,
                        payment_date=notification.paid_at,
                        payment_authorization_code=notification.authorisation_code,
                        payment_raw_response=notification.raw,
                    )
                except InvalidTransition as exc:
                    record_unapplied_result(reservation, payment_status, source="redsys", reason=exc)
            db.commit()

    def verify_return(
        self,
        merchant_parameters: str | None,
        signature: str | None,
        signature_version: str | None = None,
    ) -> ReturnPageResult:
        """Re-verify the signed parameters the gateway appends to the return URL.

        Gateway-supplied text is only surfaced when the signature verifies.
        Never changes state.
        """

        try:
            notification = self._verified_notification(merchant_parameters, signature, signature_version)
        except (MalformedNotification, SignatureMismatch):
            return ReturnPageResult(verified=False)
        if notification.succeeded:
            message = None
        else:
            message = RESPONSE_MESSAGES.get(notification.response_code, DEFAULT_FAILURE_MESSAGE)
        return ReturnPageResult(
            verified=True,
            order=notification.order_id,
            response_code=notification.response_code,
            message=message,
        )
