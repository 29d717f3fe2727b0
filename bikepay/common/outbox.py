"""Reusable helpers for transactional outbox delivery.

Rows are written in the same transaction as the state change that caused
them and delivered later by a background dispatcher.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select, update


def claim_outbox_batch(db, outbox_model, limit: int = 50, processing_timeout_seconds: int = 60) -> list[dict]:
    """Claim a batch of pending (or stale processing) rows for delivery."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        db.execute(
            select(table.c.id)
            .where(
                or_(
                    table.c.status == "PENDING",
                    (table.c.status == "PROCESSING")
                    & (table.c.claimed_at.is_not(None))
                    & (table.c.claimed_at < stale_before),
                )
            )
            .order_by(table.c.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    if not claim_ids:
        return []
    db.execute(update(table).where(table.c.id.in_(claim_ids)).values(status="PROCESSING", claimed_at=now))
    rows = db.execute(
        select(table.c.id, table.c.template, table.c.recipient, table.c.payload, table.c.attempts).where(
            table.c.id.in_(claim_ids)
        )
    ).all()
    return [
        {
            "id": row.id,
            "template": row.template,
            "recipient": row.recipient,
            "payload": row.payload,
            "attempts": row.attempts,
        }
        for row in rows
    ]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc), last_error=None)
    )


def requeue_outbox_event(db, outbox_model, event_id: str, error: str, max_attempts: int) -> str:
    """Return a claimed row to `PENDING`, or park it as `FAILED` once attempts run out."""

    table = outbox_model.__table__
    attempts = db.execute(select(table.c.attempts).where(table.c.id == event_id)).scalar_one()
    attempts += 1
    status = "FAILED" if attempts >= max_attempts else "PENDING"
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status=status, attempts=attempts, last_error=error[:500], claimed_at=None)
    )
    return status
