"""Merchant parameter set for the redirect bank gateway (Redsys).

Builds the ordered `DS_MERCHANT_*` field set for one transaction and its
base64 JSON encoding. The signature covers the exact encoded bytes, so the
field order and JSON separators here are part of the wire contract.
"""

import base64
import binascii
import json
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

from pydantic import BaseModel, ConfigDict

from bikepay.common.errors import InvalidAmount, InvalidOrderId, MalformedNotification
from bikepay.common.logging import logger


ORDER_ID_LENGTH = 12
CURRENCY_EUR = "978"
TRANSACTION_TYPE_AUTHORIZATION = "0"
DESCRIPTION_MAX_LENGTH = 125

# Redsys consumer language codes.
CONSUMER_LANGUAGES: dict[str, str] = {
    "es": "001",
    "en": "002",
    "ca": "003",
    "fr": "004",
    "de": "005",
    "nl": "006",
    "it": "007",
    "sv": "008",
    "pt": "009",
    "va": "010",
    "pl": "011",
    "gl": "012",
    "eu": "013",
}
# Unknown locales get the merchant's home language (Spanish).
DEFAULT_CONSUMER_LANGUAGE = CONSUMER_LANGUAGES["es"]


class PayloadEncoding(str, Enum):
    """Base64 alphabet used for payloads and signatures."""

    STANDARD = "standard"
    URLSAFE = "urlsafe"


class MerchantParameters(BaseModel):
    """One transaction request, in gateway field order."""

    model_config = ConfigDict(frozen=True)

    amount: int
    order: str
    merchant_code: str
    currency: str = CURRENCY_EUR
    transaction_type: str = TRANSACTION_TYPE_AUTHORIZATION
    terminal: str
    merchant_url: str
    url_ok: str
    url_ko: str
    consumer_language: str
    product_description: str

    def to_gateway_fields(self) -> dict[str, str]:
        return {
            "DS_MERCHANT_AMOUNT": str(self.amount),
            "DS_MERCHANT_ORDER": self.order,
            "DS_MERCHANT_MERCHANTCODE": self.merchant_code,
            "DS_MERCHANT_CURRENCY": self.currency,
            "DS_MERCHANT_TRANSACTIONTYPE": self.transaction_type,
            "DS_MERCHANT_TERMINAL": self.terminal,
            "DS_MERCHANT_MERCHANTURL": self.merchant_url,
            "DS_MERCHANT_URLOK": self.url_ok,
            "DS_MERCHANT_URLKO": self.url_ko,
            "DS_MERCHANT_CONSUMERLANGUAGE": self.consumer_language,
            "DS_MERCHANT_PRODUCTDESCRIPTION": self.product_description,
        }


def amount_to_cents(amount) -> int:
    """Convert a euro amount to integer cents, rounding half up."""

    if isinstance(amount, bool):
        raise InvalidAmount(f"amount must be numeric, got {amount!r}")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"amount must be numeric, got {amount!r}") from None
    if not value.is_finite():
        raise InvalidAmount("amount must be a finite number")
    cents = int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents <= 0:
        raise InvalidAmount(f"amount must be greater than zero, got {amount!r}")
    return cents


def normalize_order_id(raw_order_id) -> str:
    """Left-pad to 12 characters, or keep the last 12; the result must be all digits."""

    if raw_order_id is None or isinstance(raw_order_id, bool):
        raise InvalidOrderId("order id is required")
    text = str(raw_order_id).strip()
    if not text:
        raise InvalidOrderId("order id is required")
    if len(text) >= ORDER_ID_LENGTH:
        normalized = text[-ORDER_ID_LENGTH:]
    else:
        normalized = text.rjust(ORDER_ID_LENGTH, "0")
    if not (normalized.isascii() and normalized.isdigit()):
        raise InvalidOrderId(f"order id must be numeric after normalization, got {normalized!r}")
    return normalized


def consumer_language(locale: str | None) -> str:
    """Map a locale tag (`es`, `en-GB`, `FR`) to the gateway language code."""

    primary = (locale or "").strip().replace("_", "-").split("-")[0].lower()
    code = CONSUMER_LANGUAGES.get(primary)
    if code is None:
        logger.debug("unknown consumer locale=%r, using default language", locale)
        return DEFAULT_CONSUMER_LANGUAGE
    return code


def build_merchant_parameters(
    *,
    amount,
    order_id,
    merchant_code: str,
    terminal: str,
    site_base_url: str,
    locale: str | None,
    description: str,
    notification_path: str = "/api/notification",
    success_path: str = "/reserva-exitosa",
    failure_path: str = "/reserva-fallida",
) -> MerchantParameters:
    """Assemble the merchant parameter set for one redirect payment."""

    order = normalize_order_id(order_id)
    base = site_base_url.rstrip("/")
    return MerchantParameters(
        amount=amount_to_cents(amount),
        order=order,
        merchant_code=merchant_code,
        terminal=terminal,
        merchant_url=f"{base}{notification_path}",
        url_ok=f"{base}{success_path}?order={order}",
        url_ko=f"{base}{failure_path}?order={order}",
        consumer_language=consumer_language(locale),
        product_description=description[:DESCRIPTION_MAX_LENGTH],
    )


def encode_parameters(params: MerchantParameters, encoding: PayloadEncoding = PayloadEncoding.STANDARD) -> str:
    """Serialize to compact JSON and base64-encode."""

    raw = json.dumps(params.to_gateway_fields(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if encoding is PayloadEncoding.URLSAFE:
        return base64.urlsafe_b64encode(raw).decode("ascii")
    return base64.b64encode(raw).decode("ascii")


def decode_parameters(encoded: str) -> dict:
    """Decode a base64 (either alphabet) JSON parameter payload.

    Raises `MalformedNotification` for anything that is not a JSON object.
    """

    if not isinstance(encoded, str) or not encoded.strip():
        raise MalformedNotification("merchant parameters are empty")
    text = encoded.strip().replace("-", "+").replace("_", "/")
    text += "=" * (-len(text) % 4)
    try:
        decoded = base64.b64decode(text, validate=True)
        payload = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError, RecursionError):
        raise MalformedNotification("merchant parameters are not base64 JSON") from None
    if not isinstance(payload, dict):
        raise MalformedNotification("merchant parameters must be a JSON object")
    return payload
