"""Notification persistence models (email outbox)."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from bikepay.common.db import Base, JSONType


class EmailOutboxEvent(Base):
    """Customer email waiting to be delivered by the dispatcher."""

    __tablename__ = "email_outbox"
    # One email of each kind per reservation, however often a result is redelivered.
    __table_args__ = (UniqueConstraint("reservation_id", "template", name="uq_email_outbox_reservation_template"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    reservation_id: Mapped[str] = mapped_column(String, index=True)
    template: Mapped[str] = mapped_column(String)
    recipient: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
