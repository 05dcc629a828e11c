"""Tests for owner-entered walk-in reservations."""
from __future__ import annotations

import pytest

from babyspa.extensions import db
from babyspa.models import Customer, Notification, Payment, Reservation, Session


@pytest.fixture
def walk_in(client, owner_headers, catalog, gateway):
    """POST a walk-in booking for the flat service; keyword arguments override the body."""

    def _walk_in(headers=None, **overrides):
        body = {
            "customerName": "Dewi",
            "customerPhone": "0812 5555 0000",
            "serviceId": catalog.massage_id,
            "sessionId": catalog.session_id,
            "babyName": "Nara",
            "babyAge": 4,
        }
        body.update(overrides)
        return client.post("/reservations/owner/manual", json=body, headers=headers or owner_headers)

    return _walk_in


def test_unpaid_walk_in_holds_session_and_waits_for_payment(app, services, catalog, gateway, walk_in) -> None:
    response = walk_in()

    assert response.status_code == 201
    body = response.get_json()
    assert body["reservation"]["status"] == "PENDING"
    assert body["reservation"]["reservation_type"] == "MANUAL"
    assert body["payment"]["status"] == "PENDING"
    assert body["payment"]["method"] == "CASH"
    gateway.create_transaction.assert_not_called()

    with app.app_context():
        reservation = db.session.get(Reservation, body["reservation"]["id"])
        assert reservation.locked_session_id == catalog.session_id
        assert db.session.get(Session, catalog.session_id).is_booked is True
        customer = reservation.customer
        assert customer.is_manual is True
        assert customer.phone_number == "+6281255550000"
        assert customer.email.endswith("@spa.manual")

    assert services.scheduler.stats()["payment_ids"] == [body["payment"]["id"]]


def test_paid_walk_in_reuses_existing_customer(app, services, catalog, walk_in) -> None:
    response = walk_in(customerPhone="081234567890", isPaid=True, paymentMethod="qris", paymentNotes=" paid at desk ")

    assert response.status_code == 201
    body = response.get_json()
    assert body["reservation"]["status"] == "CONFIRMED"
    assert body["reservation"]["customer_id"] == catalog.customer_id
    assert body["payment"]["status"] == "PAID"
    assert body["payment"]["method"] == "QRIS"
    assert body["payment"]["notes"] == "paid at desk"
    assert body["payment"]["paid_at"] is not None
    assert services.scheduler.stats()["active_timers"] == 0
    with app.app_context():
        assert Customer.query.count() == 2


def test_walk_in_notifies_owners(app, services, walk_in) -> None:
    walk_in()

    with app.app_context():
        assert services.events.drain() == 1
        rows = Notification.query.all()
        assert [(row.recipient_type, row.title) for row in rows] == [("owner", "New manual booking")]


def test_walk_in_cannot_take_a_booked_session(app, book, walk_in) -> None:
    assert book().status_code == 201

    response = walk_in()

    assert response.status_code == 409
    with app.app_context():
        assert Reservation.query.count() == 1
        assert Customer.query.filter_by(is_manual=True).count() == 0


def test_walk_in_validation(walk_in) -> None:
    missing = walk_in(customerPhone="", babyName=None)
    assert missing.status_code == 400
    assert "customer_phone" in missing.get_json()["message"]
    assert "baby_name" in missing.get_json()["message"]

    assert walk_in(isPaid="maybe").status_code == 400
    assert walk_in(serviceId=9999).status_code == 404


def test_walk_in_is_owner_only(walk_in, customer_headers) -> None:
    assert walk_in(headers=customer_headers).status_code == 403


def test_counter_payment_confirms_walk_in(app, client, services, owner_headers, walk_in) -> None:
    body = walk_in().get_json()
    reservation_id = body["reservation"]["id"]
    url = f"/reservations/owner/manual/{reservation_id}/payment"

    response = client.put(url, json={"paymentMethod": "transfer", "notes": "BCA transfer"}, headers=owner_headers)

    assert response.status_code == 200
    result = response.get_json()
    assert result["reservation"]["status"] == "CONFIRMED"
    assert result["payment"]["status"] == "PAID"
    assert services.scheduler.stats()["active_timers"] == 0
    with app.app_context():
        payment = db.session.get(Payment, body["payment"]["id"])
        assert payment.method == "TRANSFER"
        assert payment.notes == "BCA transfer"
        assert payment.paid_at is not None

    assert client.put(url, json={}, headers=owner_headers).status_code == 409


def test_counter_payment_rejects_online_reservations(client, owner_headers, book) -> None:
    reservation_id = book().get_json()["reservation"]["id"]

    response = client.put(f"/reservations/owner/manual/{reservation_id}/payment", json={}, headers=owner_headers)

    assert response.status_code == 400


def test_counter_payment_unknown_reservation(client, owner_headers, catalog) -> None:
    assert client.put("/reservations/owner/manual/9999/payment", json={}, headers=owner_headers).status_code == 404
