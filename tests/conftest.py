"""Shared fixtures: in-memory database, test settings and fake vendor clients."""

import base64
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from bikepay.common.config import Settings
from bikepay.common.db import Base, make_session_factory
from bikepay.services.notification import models as notification_models  # noqa: F401
from bikepay.services.payments import models as payment_models  # noqa: F401
from bikepay.services.payments.app import create_app
from bikepay.services.payments.card import CardGateway
from bikepay.services.payments.redsys_params import PayloadEncoding
from bikepay.services.payments.redsys_signing import compute_signature, derive_order_key


# Public test secret of the Redsys integration environment.
TEST_SECRET = "sq7HjrUOBfKmC576ILgskD5srU870gJ7"
TEST_MERCHANT = "999008881"
WEBHOOK_SECRET = "whsec_test_secret"


class FakeCardGateway(CardGateway):
    """Card gateway with real webhook verification and canned API responses."""

    def __init__(self, webhook_secret=WEBHOOK_SECRET, fingerprint=None):
        super().__init__(client=None, webhook_secret=webhook_secret)
        self.fingerprint = fingerprint
        self.created = []
        self.voided = []

    def create_payment_intent(self, amount_cents, currency, metadata):
        intent_id = f"pi_test_{len(self.created) + 1}"
        self.created.append((amount_cents, currency, metadata))
        return {
            "id": intent_id,
            "amount": amount_cents,
            "currency": currency,
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret_abc",
        }

    def card_fingerprint(self, payment_intent_id):
        return self.fingerprint

    def void_payment_intent(self, payment_intent_id, status):
        self.voided.append((payment_intent_id, status))
        return "refunded" if status == "succeeded" else "canceled"


class FakeSender:
    """Records emails instead of calling the email API."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, to, subject, html, tags=None):
        if self.fail:
            raise RuntimeError("email api unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html, "tags": tags})
        return f"msg_{len(self.sent)}"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        app_env="test",
        site_base_url="https://shop.example.com",
        redsys_secret_key=TEST_SECRET,
        redsys_merchant_code=TEST_MERCHANT,
        redsys_terminal="1",
        stripe_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def card_gateway():
    return FakeCardGateway()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def app(settings, session_factory, card_gateway, sender):
    return create_app(
        settings,
        session_factory=session_factory,
        card_gateway=card_gateway,
        email_sender=sender,
        run_dispatcher=False,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def redsys_notification():
    """Build signed notification form fields the way the gateway posts them."""

    def build(order_id, response_code="0000", amount="4550", encoding=PayloadEncoding.URLSAFE, **extra):
        payload = {
            "Ds_Date": "19%2F10%2F2026",
            "Ds_Hour": "10%3A15",
            "Ds_Amount": amount,
            "Ds_Currency": "978",
            "Ds_Order": order_id,
            "Ds_MerchantCode": TEST_MERCHANT,
            "Ds_Terminal": "001",
            "Ds_Response": response_code,
            "Ds_AuthorisationCode": "123456",
        }
        payload.update(extra)
        raw = json.dumps(payload).encode("utf-8")
        if encoding is PayloadEncoding.URLSAFE:
            encoded = base64.urlsafe_b64encode(raw).decode("ascii")
        else:
            encoded = base64.b64encode(raw).decode("ascii")
        signature = compute_signature(derive_order_key(TEST_SECRET, order_id), encoded, encoding)
        return {
            "Ds_SignatureVersion": "HMAC_SHA256_V1",
            "Ds_MerchantParameters": encoded,
            "Ds_Signature": signature,
        }

    return build
