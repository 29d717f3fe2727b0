"""API request/response schemas for the payment endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RedsysPaymentRequest(BaseModel):
    """Payload accepted by `POST /api/redsys`."""

    model_config = ConfigDict(populate_by_name=True)

    amount: float | int | str
    order_id: str | int | None = Field(default=None, alias="orderId")
    locale: str = "es"
    reservation_id: str | None = Field(default=None, alias="reservationId")
    description: str | None = None


class RedsysPaymentForm(BaseModel):
    """Hidden form fields for the auto-submitting redirect to the gateway."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    merchant_parameters: str = Field(alias="Ds_MerchantParameters")
    signature: str = Field(alias="Ds_Signature")
    signature_version: str = Field(alias="Ds_SignatureVersion")


class PaymentNotification(BaseModel):
    """Decoded, signature-verified gateway notification."""

    order_id: str
    response_code: str
    amount_cents: int | None = None
    authorisation_code: str | None = None
    paid_at: datetime | None = None
    raw: dict[str, Any]
    succeeded: bool


class ReturnPageResult(BaseModel):
    """What the success/failure pages may show about a redirect result."""

    verified: bool
    order: str | None = None
    response_code: str | None = Field(default=None, serialization_alias="responseCode")
    message: str | None = None


class PaymentIntentRequest(BaseModel):
    """Payload accepted by `POST /api/stripe/create-payment-intent`."""

    amount: float | int | str
    currency: str = "eur"
    metadata: dict[str, Any] | None = None


class PaymentIntentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_secret: str = Field(alias="clientSecret")
    payment_intent_id: str = Field(alias="paymentIntentId")
