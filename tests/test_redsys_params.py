"""Merchant parameter construction and payload encoding."""

import base64
import json
from decimal import Decimal

import pytest

from bikepay.common.errors import InvalidAmount, InvalidOrderId, MalformedNotification
from bikepay.services.payments.redsys_params import (
    PayloadEncoding,
    amount_to_cents,
    build_merchant_parameters,
    consumer_language,
    decode_parameters,
    encode_parameters,
    normalize_order_id,
)


def _params(**overrides):
    kwargs = dict(
        amount="45.50",
        order_id="123456",
        merchant_code="999008881",
        terminal="001",
        site_base_url="https://shop.example.com/",
        locale="en",
        description="Bike rental",
    )
    kwargs.update(overrides)
    return build_merchant_parameters(**kwargs)


@pytest.mark.parametrize(
    "amount,cents",
    [("45.50", 4550), (45.5, 4550), (12, 1200), ("10.005", 1001), (Decimal("0.01"), 1)],
)
def test_amount_to_cents(amount, cents):
    assert amount_to_cents(amount) == cents


@pytest.mark.parametrize("amount", [0, "-3", "abc", "", None, True, "NaN", "inf"])
def test_amount_to_cents_rejects(amount):
    with pytest.raises(InvalidAmount):
        amount_to_cents(amount)


def test_normalize_order_id():
    assert normalize_order_id("123") == "000000000123"
    assert normalize_order_id(42) == "000000000042"
    assert normalize_order_id("1760870400123") == "760870400123"


@pytest.mark.parametrize("raw", [None, "", "  ", "12ab", "١٢٣"])
def test_normalize_order_id_rejects(raw):
    with pytest.raises(InvalidOrderId):
        normalize_order_id(raw)


def test_consumer_language():
    assert consumer_language("en-GB") == "002"
    assert consumer_language("FR") == "004"
    assert consumer_language("xx") == "001"
    assert consumer_language(None) == "001"


def test_build_merchant_parameters():
    params = _params()

    fields = params.to_gateway_fields()
    assert list(fields) == [
        "DS_MERCHANT_AMOUNT",
        "DS_MERCHANT_ORDER",
        "DS_MERCHANT_MERCHANTCODE",
        "DS_MERCHANT_CURRENCY",
        "DS_MERCHANT_TRANSACTIONTYPE",
        "DS_MERCHANT_TERMINAL",
        "DS_MERCHANT_MERCHANTURL",
        "DS_MERCHANT_URLOK",
        "DS_MERCHANT_URLKO",
        "DS_MERCHANT_CONSUMERLANGUAGE",
        "DS_MERCHANT_PRODUCTDESCRIPTION",
    ]
    assert fields["DS_MERCHANT_AMOUNT"] == "4550"
    assert fields["DS_MERCHANT_ORDER"] == "000000123456"
    assert fields["DS_MERCHANT_CURRENCY"] == "978"
    assert fields["DS_MERCHANT_TRANSACTIONTYPE"] == "0"
    assert fields["DS_MERCHANT_MERCHANTURL"] == "https://shop.example.com/api/notification"
    assert fields["DS_MERCHANT_URLOK"] == "https://shop.example.com/reserva-exitosa?order=000000123456"
    assert fields["DS_MERCHANT_URLKO"] == "https://shop.example.com/reserva-fallida?order=000000123456"
    assert fields["DS_MERCHANT_CONSUMERLANGUAGE"] == "002"


def test_description_is_truncated():
    assert len(_params(description="x" * 300).product_description) == 125


def test_encode_is_compact_json():
    params = _params(description="Alquiler de bicicletas – Altea")

    raw = base64.b64decode(encode_parameters(params)).decode("utf-8")

    assert " " not in raw.replace("Alquiler de bicicletas – Altea", "")
    assert json.loads(raw) == params.to_gateway_fields()
    assert "–" in raw


def test_encode_urlsafe_alphabet():
    params = _params(description="???>>>" * 10)

    encoded = encode_parameters(params, PayloadEncoding.URLSAFE)

    assert "+" not in encoded and "/" not in encoded
    assert decode_parameters(encoded) == params.to_gateway_fields()


def test_decode_tolerates_missing_padding():
    encoded = base64.urlsafe_b64encode(b'{"Ds_Order":"000000000001"}').decode().rstrip("=")

    assert decode_parameters(encoded) == {"Ds_Order": "000000000001"}


@pytest.mark.parametrize(
    "encoded",
    ["", "not base64!!", base64.b64encode(b"not json").decode(), base64.b64encode(b"[1, 2]").decode()],
)
def test_decode_rejects_garbage(encoded):
    with pytest.raises(MalformedNotification):
        decode_parameters(encoded)


def test_decode_rejects_deeply_nested_json():
    encoded = base64.b64encode(b"[" * 100000 + b"]" * 100000).decode()

    with pytest.raises(MalformedNotification):
        decode_parameters(encoded)
