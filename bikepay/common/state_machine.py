"""Reservation and payment status transitions.

A reservation only reaches `confirmed` through a verified gateway result.
"""

PENDING = "pending"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

RESERVATION_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {CANCELLED},
    CANCELLED: set(),
}

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    PAYMENT_PENDING: {PAYMENT_COMPLETED, PAYMENT_FAILED},
    PAYMENT_COMPLETED: {PAYMENT_REFUNDED},
    PAYMENT_FAILED: set(),
    PAYMENT_REFUNDED: set(),
}

# Reservation lifecycle status implied by each final payment status.
RESERVATION_STATUS_FOR_PAYMENT: dict[str, str] = {
    PAYMENT_COMPLETED: CONFIRMED,
    PAYMENT_FAILED: CANCELLED,
    PAYMENT_REFUNDED: CANCELLED,
}


class InvalidTransition(ValueError):
    """Raised when a status change is not allowed."""


def validate_transition(transitions: dict[str, set[str]], current: str, new: str) -> None:
    """Raise when a transition is not allowed by the given table."""

    if new not in transitions.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")


def validate_payment_transition(current: str, new: str) -> None:
    validate_transition(PAYMENT_TRANSITIONS, current, new)


def validate_reservation_transition(current: str, new: str) -> None:
    if current == new:
        return
    validate_transition(RESERVATION_TRANSITIONS, current, new)
