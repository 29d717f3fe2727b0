"""Payment persistence models.

Reservations are the source of truth for rental lifecycle and payment
status; attempts and intents record what was sent to each gateway.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from bikepay.common.db import Base, JSONType


class Reservation(Base):
    """One bike rental booking and the state of its payment."""

    __tablename__ = "reservations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    payment_status: Mapped[str] = mapped_column(String, index=True, default="pending")
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)
    redsys_order_id: Mapped[str | None] = mapped_column(String(12), unique=True, nullable=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)

    customer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    start_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    end_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    pickup_time: Mapped[str | None] = mapped_column(String(16), nullable=True)
    return_time: Mapped[str | None] = mapped_column(String(16), nullable=True)
    pickup_location: Mapped[str | None] = mapped_column(String, nullable=True)
    total_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deposit_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    insurance: Mapped[bool] = mapped_column(Boolean, default=False)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    payment_response_code: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_authorization_code: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_raw_response: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PaymentAttempt(Base):
    """One outbound redirect payment request sent to the bank gateway."""

    __tablename__ = "payment_attempts"

    attempt_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(String(12), unique=True, index=True)
    reservation_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    environment: Mapped[str] = mapped_column(String)
    merchant_parameters: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    response_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PaymentIntentRecord(Base):
    """Card payment intent created for the hosted card form."""

    __tablename__ = "payment_intents"

    intent_id: Mapped[str] = mapped_column(String, primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    customer_email: Mapped[str] = mapped_column(String, default="")
    status: Mapped[str] = mapped_column(String)
    intent_metadata: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
