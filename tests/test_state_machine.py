"""Unit tests for reservation and payment state-machine guardrails."""

import pytest

from bikepay.common.state_machine import (
    CANCELLED,
    CONFIRMED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PENDING,
    InvalidTransition,
    validate_payment_transition,
    validate_reservation_transition,
)


def test_valid_payment_transition():
    """Sanity check: a legal transition should pass."""

    validate_payment_transition(PAYMENT_PENDING, PAYMENT_COMPLETED)
    validate_payment_transition(PAYMENT_COMPLETED, PAYMENT_REFUNDED)


def test_completed_payment_cannot_fail():
    """A late failure must never downgrade a completed payment."""

    with pytest.raises(InvalidTransition):
        validate_payment_transition(PAYMENT_COMPLETED, PAYMENT_FAILED)


def test_invalid_transition_is_value_error():
    with pytest.raises(ValueError):
        validate_payment_transition(PAYMENT_FAILED, PAYMENT_COMPLETED)


def test_reservation_transitions():
    validate_reservation_transition(PENDING, CONFIRMED)
    validate_reservation_transition(CONFIRMED, CONFIRMED)
    validate_reservation_transition(CONFIRMED, CANCELLED)
    with pytest.raises(InvalidTransition):
        validate_reservation_transition(CANCELLED, CONFIRMED)
