"""Order key derivation and signature verification for the redirect gateway."""

import base64

import pytest

from bikepay.common.errors import KeyDerivationError
from bikepay.services.payments.redsys_params import PayloadEncoding, build_merchant_parameters, encode_parameters
from bikepay.services.payments.redsys_signing import KeyDerivationMode, SignatureEngine, derive_order_key

from conftest import TEST_SECRET


def _encoded(order_id="000000123456", encoding=PayloadEncoding.STANDARD):
    params = build_merchant_parameters(
        amount="45.50",
        order_id=order_id,
        merchant_code="999008881",
        terminal="001",
        site_base_url="https://shop.example.com",
        locale="es",
        description="Bike rental",
    )
    return encode_parameters(params, encoding)


def test_order_key_uses_full_ciphertext():
    """A 12-digit order pads to two blocks, so the key is 16 bytes."""

    assert len(derive_order_key(TEST_SECRET, "000000123456")) == 16
    assert len(derive_order_key(TEST_SECRET, "12345678")) == 8


def test_order_key_depends_on_every_order_digit():
    assert derive_order_key(TEST_SECRET, "000000120001") != derive_order_key(TEST_SECRET, "000000120002")


def test_secret_alphabets_are_equivalent():
    urlsafe = TEST_SECRET.replace("+", "-").replace("/", "_")

    assert derive_order_key(urlsafe, "000000123456") == derive_order_key(TEST_SECRET, "000000123456")


def test_sign_and_verify():
    engine = SignatureEngine(TEST_SECRET)
    payload = _encoded()

    signature = engine.sign("000000123456", payload)

    assert len(base64.b64decode(signature)) == 32
    assert engine.verify("000000123456", payload, signature)


# Captured storefront request signed with a merchant/terminal-derived key.
REFERENCE_SECRET = "JvJ4AULO/uZjBnFqWS8s46g94SbVJ4iG"
REFERENCE_PARAMS = (
    "eyJEU19NRVJDSEFOVF9BTU9VTlQiOiIzMDAwIiwiRFNfTUVSQ0hBTlRfT1JERVIiOiIxMjM0NTY3ODkwMTQiLCJEU19NRVJDSEFOVF9NRVJD"
    "SEFOVENPREUiOiIzNjcwNjQwOTQiLCJEU19NRVJDSEFOVF9DVVJSRU5DWSI6Ijk3OCIsIkRTX01FUkNIQU5UX1RSQU5TQUNUSU9OVFlQRSI6"
    "IjAiLCJEU19NRVJDSEFOVF9URVJNSU5BTCI6IjAwMSIsIkRTX01FUkNIQU5UX01FUkNIQU5UVVJMIjoiaHR0cHM6Ly93d3cuYWx0ZWFiaWtl"
    "c2hvcC5jb20vYXBpL25vdGlmaWNhdGlvbiIsIkRTX01FUkNIQU5UX1VSTE9LIjoiaHR0cHM6Ly93d3cuYWx0ZWFiaWtlc2hvcC5jb20vcmVz"
    "ZXJ2YS1leGl0b3NhP29yZGVyPTEyMzQ1Njc4OTAxNCIsIkRTX01FUkNIQU5UX1VSTEtPIjoiaHR0cHM6Ly93d3cuYWx0ZWFiaWtlc2hvcC5j"
    "b20vcmVzZXJ2YS1mYWxsaWRhP29yZGVyPTEyMzQ1Njc4OTAxNCIsIkRTX01FUkNIQU5UX0NPTlNVTUVSTEFOR1VBR0UiOiIwMDIiLCJEU19N"
    "RVJDSEFOVF9QUk9EVUNUREVTQ1JJUFRJT04iOiJBbHF1aWxlciBkZSBiaWNpY2xldGFzIn0="
)


def test_order_derivation_known_answer():
    payload = base64.b64encode(b'{"DS_MERCHANT_ORDER": "000000123456"}').decode()
    engine = SignatureEngine(TEST_SECRET)

    signature = engine.sign("000000123456", payload)

    assert signature == "hP5qq08KNTjplKA7i1ZXLPW+12HWIP19yRO9C7vblmM="
    assert engine.verify("000000123456", payload, signature)


def test_merchant_terminal_derivation_known_answer():
    engine = SignatureEngine(
        REFERENCE_SECRET,
        derivation_mode=KeyDerivationMode.MERCHANT_TERMINAL,
        merchant_code="367064094",
        terminal="001",
    )

    signature = engine.sign("123456789014", REFERENCE_PARAMS)

    assert signature == "TZbhQe9Ay3ZQ+qMfybCR3qhjauOM70Rh92pFX1VusBc="
    assert engine.verify("123456789014", REFERENCE_PARAMS, signature)


def test_tampered_payload_is_rejected():
    engine = SignatureEngine(TEST_SECRET)
    signature = engine.sign("000000123456", _encoded())

    tampered = _encoded(order_id="000000123457")

    assert not engine.verify("000000123456", tampered, signature)
    assert not engine.verify("000000123457", tampered, signature)


def test_signature_from_another_secret_is_rejected():
    other_secret = base64.b64encode(bytes(range(1, 25))).decode()
    payload = _encoded()

    forged = SignatureEngine(other_secret).sign("000000123456", payload)

    assert not SignatureEngine(TEST_SECRET).verify("000000123456", payload, forged)


def test_urlsafe_engine_signs_with_urlsafe_alphabet():
    payload = _encoded(encoding=PayloadEncoding.URLSAFE)
    standard = SignatureEngine(TEST_SECRET, encoding=PayloadEncoding.STANDARD).sign("000000123456", payload)
    urlsafe = SignatureEngine(TEST_SECRET, encoding=PayloadEncoding.URLSAFE).sign("000000123456", payload)

    assert urlsafe == standard.replace("+", "-").replace("/", "_")
    assert "+" not in urlsafe and "/" not in urlsafe


@pytest.mark.parametrize("bad_secret", ["", "not-base64!!", base64.b64encode(b"short").decode()])
def test_malformed_secret(bad_secret):
    engine = SignatureEngine(bad_secret)

    with pytest.raises(KeyDerivationError):
        engine.sign("000000123456", _encoded())
    assert not engine.verify("000000123456", _encoded(), "c2lnbmF0dXJl")


@pytest.mark.parametrize("received", [None, "", 12345, "%%%not-a-signature"])
def test_verify_never_raises(received):
    engine = SignatureEngine(TEST_SECRET)

    assert engine.verify("000000123456", _encoded(), received) is False


def test_merchant_terminal_derivation_ignores_order():
    engine = SignatureEngine(
        TEST_SECRET,
        derivation_mode=KeyDerivationMode.MERCHANT_TERMINAL,
        merchant_code="999008881",
        terminal="001",
    )
    payload = _encoded()

    assert engine.sign("000000000001", payload) == engine.sign("000000000002", payload)


def test_merchant_terminal_derivation_requires_identity():
    engine = SignatureEngine(TEST_SECRET, derivation_mode=KeyDerivationMode.MERCHANT_TERMINAL)

    with pytest.raises(KeyDerivationError):
        engine.sign("000000123456", _encoded())


def test_repr_hides_secret():
    assert TEST_SECRET not in repr(SignatureEngine(TEST_SECRET))
