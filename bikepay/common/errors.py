"""Error taxonomy for the payment core.

Every error carries a stable `code` discriminant. Callers branch on the
code (or the class), never on the human-readable message.
"""


class PaymentError(Exception):
    """Base class for all payment-core failures."""

    code = "payment_error"
    http_status = 500
    # Message safe to return to a remote caller.
    public_message = "payment processing failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class InvalidAmount(PaymentError):
    code = "invalid_amount"
    http_status = 400
    public_message = "amount must be a positive number"


class InvalidOrderId(PaymentError):
    code = "invalid_order_id"
    http_status = 400
    public_message = "order id must be numeric"


class UnknownReservation(PaymentError):
    code = "unknown_reservation"
    http_status = 404
    public_message = "reservation not found"


class ReservationNotPayable(PaymentError):
    code = "reservation_not_payable"
    http_status = 409
    public_message = "reservation is not awaiting payment"


class CardPaymentError(PaymentError):
    code = "card_payment_error"
    http_status = 400
    public_message = "the card payment could not be started"


class CardGatewayUnavailable(PaymentError):
    code = "card_gateway_unavailable"
    http_status = 502
    public_message = "card processor unavailable"


class KeyDerivationError(PaymentError):
    code = "key_derivation_error"
    http_status = 500
    public_message = "payment processing failed"


class SignatureMismatch(PaymentError):
    code = "rejected"
    http_status = 403
    public_message = "notification rejected"


class MalformedNotification(PaymentError):
    code = "malformed_notification"
    http_status = 400
    public_message = "malformed notification"


class PersistenceError(PaymentError):
    code = "persistence_error"
    http_status = 500
    public_message = "could not record payment result"


class ConfigurationError(PaymentError):
    """Raised at startup when required settings are missing or invalid."""

    code = "configuration_error"
    http_status = 500
    public_message = "service misconfigured"


# Errors whose detail must never reach the remote caller.
OPAQUE_ERRORS = (SignatureMismatch, KeyDerivationError, PersistenceError, ConfigurationError)


def error_body(exc: PaymentError) -> dict:
    """Render the JSON error body returned for a rejected request."""

    message = exc.public_message if isinstance(exc, OPAQUE_ERRORS) else exc.message
    return {"error": {"code": exc.code, "message": message}}
