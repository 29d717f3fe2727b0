"""Confirmation email outbox delivery and rendering."""

from fastapi.testclient import TestClient
from sqlalchemy import select

from bikepay.services.notification.models import EmailOutboxEvent
from bikepay.services.notification.service import CONFIRMATION_TEMPLATE, EmailDispatcher
from bikepay.services.notification.templates import render_reservation_confirmed
from bikepay.services.payments.app import create_app
from bikepay.services.payments.models import Reservation

from conftest import FakeSender


PAYLOAD = {
    "reservation_id": "r-1",
    "customer_name": "Ana <script>",
    "start_date": "2026-10-20",
    "end_date": "2026-10-22",
    "pickup_time": "10:00",
    "return_time": "18:00",
    "pickup_location": "sucursal_albir",
    "bikes": [{"name": "Orbea Gain", "category": "e-bike", "size": "L", "quantity": 2}],
    "insurance": True,
    "deposit_cents": 10000,
    "total_cents": 4550,
}


def _enqueue(session_factory, reservation_id="r-1"):
    with session_factory() as db:
        event = EmailOutboxEvent(
            reservation_id=reservation_id,
            template=CONFIRMATION_TEMPLATE,
            recipient="ana@example.com",
            payload=PAYLOAD,
        )
        db.add(event)
        db.commit()
        return event.id


def test_render_confirmation():
    subject, html = render_reservation_confirmed(PAYLOAD)

    assert subject == "Reservation confirmed – Altea Bike Shop"
    assert "Albir Cycling – Av del Albir 159, El Albir" in html
    assert "Orbea Gain" in html
    assert "€45.50" in html
    assert "€100.00" in html
    assert "<script>" not in html


def test_dispatch_sends_pending_email(session_factory):
    event_id = _enqueue(session_factory)
    sender = FakeSender()

    sent = EmailDispatcher(session_factory, sender).dispatch_once()

    assert sent == 1
    assert sender.sent[0]["to"] == "ana@example.com"
    assert sender.sent[0]["tags"] == {"category": CONFIRMATION_TEMPLATE}
    with session_factory() as db:
        event = db.get(EmailOutboxEvent, event_id)
        assert event.status == "SENT"
        assert event.sent_at is not None
    assert EmailDispatcher(session_factory, sender).dispatch_once() == 0


def test_failed_delivery_is_retried_then_parked(session_factory):
    event_id = _enqueue(session_factory)
    dispatcher = EmailDispatcher(session_factory, FakeSender(fail=True), max_attempts=2)

    assert dispatcher.dispatch_once() == 0
    with session_factory() as db:
        event = db.get(EmailOutboxEvent, event_id)
        assert event.status == "PENDING"
        assert event.attempts == 1
        assert "unavailable" in event.last_error

    assert dispatcher.dispatch_once() == 0
    with session_factory() as db:
        assert db.get(EmailOutboxEvent, event_id).status == "FAILED"
    assert dispatcher.dispatch_once() == 0


def test_unknown_template_is_not_sent(session_factory):
    with session_factory() as db:
        db.add(EmailOutboxEvent(reservation_id="r-2", template="missing", recipient="a@b.c", payload={}))
        db.commit()
    sender = FakeSender()

    assert EmailDispatcher(session_factory, sender, max_attempts=1).dispatch_once() == 0
    assert sender.sent == []
    with session_factory() as db:
        assert db.execute(select(EmailOutboxEvent.status)).scalar_one() == "FAILED"


def test_confirmed_payment_email_is_delivered(client, session_factory, sender, redsys_notification):
    """A confirmation queued by a notification is delivered by the dispatcher."""

    client.post("/api/redsys", json={"amount": "45.50", "orderId": "31"})
    with session_factory() as db:
        db.add(Reservation(redsys_order_id="000000000031", customer_email="ana@example.com", customer_name="Ana"))
        db.commit()

    assert client.post("/api/notification", data=redsys_notification("000000000031")).status_code == 200
    assert client.app.state.dispatcher.dispatch_once() == 1
    assert sender.sent[0]["subject"] == "Reservation confirmed – Altea Bike Shop"


def test_dispatcher_stops_with_the_app(settings, session_factory):
    app = create_app(settings, session_factory=session_factory, card_gateway=None, email_sender=FakeSender())

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        task = app.state.dispatcher_task
        assert not task.done()

    assert task.done()
    assert task.cancelled()
