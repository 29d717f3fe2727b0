"""Reservation payment-status transitions shared by both gateways.

Writes are guarded by `(id, state_version)` so concurrent deliveries of the
same result converge on one final state: the loser re-reads the row and
becomes a no-op when the winner already applied the same status.
"""

from datetime import datetime, timezone

from sqlalchemy import select, update

from bikepay.common.errors import PersistenceError
from bikepay.common.logging import logger
from bikepay.common.metrics import (
    duplicate_deliveries_total,
    reservation_transitions_total,
    unapplied_payment_results_total,
)
from bikepay.common.state_machine import (
    CONFIRMED,
    PAYMENT_COMPLETED,
    RESERVATION_STATUS_FOR_PAYMENT,
    validate_payment_transition,
    validate_reservation_transition,
)
from bikepay.services.notification.service import enqueue_confirmation_email
from bikepay.services.payments.models import Reservation


def find_by_redsys_order(db, order_id: str) -> Reservation | None:
    return db.execute(select(Reservation).where(Reservation.redsys_order_id == order_id)).scalar_one_or_none()


def find_by_payment_intent(db, intent_id: str) -> Reservation | None:
    return db.execute(
        select(Reservation).where(Reservation.stripe_payment_intent_id == intent_id)
    ).scalar_one_or_none()


def apply_payment_status(db, reservation: Reservation, payment_status: str, *, source: str, **fields) -> bool:
    """Move a reservation to `payment_status` and its implied lifecycle status.

    Returns False when the reservation already holds that payment status.
    Raises `InvalidTransition` for a disallowed change and `PersistenceError`
    when a concurrent writer moved the row somewhere else. The caller owns
    the commit.
    """

    if reservation.payment_status == payment_status:
        duplicate_deliveries_total.labels(source=source).inc()
        logger.info(
            "duplicate payment result skipped reservation_id=%s payment_status=%s source=%s",
            reservation.id,
            payment_status,
            source,
        )
        return False

    target_status = RESERVATION_STATUS_FOR_PAYMENT[payment_status]
    validate_payment_transition(reservation.payment_status, payment_status)
    validate_reservation_transition(reservation.status, target_status)
    from_status = reservation.status
    current_version = reservation.state_version

    result = db.execute(
        update(Reservation)
        .where(Reservation.id == reservation.id, Reservation.state_version == current_version)
        .values(
            status=target_status,
            payment_status=payment_status,
            state_version=current_version + 1,
            updated_at=datetime.now(timezone.utc),
            **fields,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(reservation)
        if reservation.payment_status == payment_status:
            duplicate_deliveries_total.labels(source=source).inc()
            logger.info("concurrent delivery already applied reservation_id=%s", reservation.id)
            return False
        raise PersistenceError(
            f"concurrent update for reservation {reservation.id} (expected version {current_version})"
        )

    reservation.status = target_status
    reservation.payment_status = payment_status
    reservation.state_version = current_version + 1
    for key, value in fields.items():
        setattr(reservation, key, value)

    reservation_transitions_total.labels(to_status=target_status, source=source).inc()
    logger.info(
        "reservation transition reservation_id=%s status=%s->%s payment_status=%s source=%s",
        reservation.id,
        from_status,
        target_status,
        payment_status,
        source,
    )
    if target_status == CONFIRMED and from_status != CONFIRMED:
        enqueue_confirmation_email(db, reservation)
    return True


def record_unapplied_result(reservation: Reservation, payment_status: str, *, source: str, reason) -> None:
    """Log a verified result the reservation's current state refuses.

    A captured payment that cannot be applied needs a manual refund, so it
    is logged at error level and counted; anything else is a warning.
    """

    if payment_status == PAYMENT_COMPLETED:
        unapplied_payment_results_total.labels(source=source).inc()
        logger.error(
            "verified payment not applied reservation_id=%s status=%s payment_status=%s source=%s reason=%s",
            reservation.id,
            reservation.status,
            reservation.payment_status,
            source,
            reason,
        )
        return
    logger.warning(
        "payment result ignored reservation_id=%s payment_status=%s source=%s reason=%s",
        reservation.id,
        payment_status,
        source,
        reason,
    )
