"""Tests for booking a reservation."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from functools import partial
from unittest.mock import patch

import requests

from babyspa.errors import GatewayUnavailable, TransactionCreationFailed
from babyspa.extensions import db
from babyspa.models import Payment, Reservation, Session, as_utc, utc_now
from babyspa.tripay import TripayClient


def test_create_reservation_success(app, services, catalog, gateway, book) -> None:
    response = book()

    assert response.status_code == 201
    body = response.get_json()
    assert body["reservation"]["status"] == "PENDING"
    assert body["reservation"]["total_price"] == 120000
    assert body["payment"]["status"] == "PENDING"
    assert body["payment"]["payment_url"] == "https://tripay.co.id/checkout/DEV-T000100001"
    assert body["payment"]["payment_method_name"] == "BRI Virtual Account"
    assert body["payment"]["fee"]["total_fee"] == 4250
    assert body["payment"]["time_left"]["expired"] is False

    order = gateway.create_transaction.call_args.args[0]
    assert order["amount"] == Decimal("120000")
    assert order["customer_phone"] == "+6281234567890"
    assert order["service_name"] == "Baby Massage"

    with app.app_context():
        session = db.session.get(Session, catalog.session_id)
        assert session.is_booked is True
        reservation = db.session.get(Reservation, body["reservation"]["id"])
        assert reservation.locked_session_id == catalog.session_id
        assert reservation.payment.transaction_reference == "DEV-T000100001"

    assert services.scheduler.stats()["payment_ids"] == [body["payment"]["id"]]
    assert services.events.pending == 1


def test_create_reservation_tiered_service(book, catalog) -> None:
    response = book(serviceId=catalog.swim_id, babyAge=13)

    assert response.status_code == 201
    body = response.get_json()
    assert body["reservation"]["total_price"] == 150000
    assert body["reservation"]["price_tier_id"] == catalog.toddler_tier_id


def test_create_reservation_missing_fields(book) -> None:
    response = book(babyName="", paymentMethod=None)

    assert response.status_code == 400
    body = response.get_json()
    assert body["error"] == "invalid_payload"
    assert "baby_name" in body["message"]
    assert "payment_method" in body["message"]


def test_create_reservation_rejects_boolean_age(book) -> None:
    response = book(babyAge=True)

    assert response.status_code == 400


def test_create_reservation_requires_customer_token(client, book, owner_headers) -> None:
    assert client.post("/reservations", json={}).status_code == 401
    assert book(headers=owner_headers).status_code == 403


def test_create_reservation_unknown_service(book) -> None:
    response = book(serviceId=9999)

    assert response.status_code == 404
    assert response.get_json()["error"] == "not_found"


def test_session_cannot_be_booked_twice(book, other_customer_headers) -> None:
    assert book().status_code == 201

    response = book(headers=other_customer_headers)

    assert response.status_code == 409
    assert response.get_json()["error"] == "conflict"


def test_lost_booking_race_returns_conflict(app, catalog, book) -> None:
    """Another reservation already holds the session lock but the flag was not yet set."""
    with app.app_context():
        db.session.add(
            Reservation(
                customer_id=catalog.other_customer_id,
                service_id=catalog.massage_id,
                staff_id=catalog.staff_id,
                session_id=catalog.session_id,
                locked_session_id=catalog.session_id,
                baby_name="Raka",
                baby_age=8,
                total_price=Decimal("120000"),
            )
        )
        db.session.commit()

    response = book()

    assert response.status_code == 409
    with app.app_context():
        live = Reservation.query.filter_by(locked_session_id=catalog.session_id).count()
        assert live == 1
        assert db.session.get(Session, catalog.session_id).is_booked is True


def test_create_reservation_price_unavailable(book, catalog) -> None:
    response = book(serviceId=catalog.swim_id, babyAge=25)

    assert response.status_code == 422
    assert response.get_json()["error"] == "price_unavailable"


def test_create_reservation_inactive_payment_method(app, catalog, gateway, book) -> None:
    response = book(paymentMethod="ALFAMART")

    assert response.status_code == 400
    gateway.create_transaction.assert_not_called()
    with app.app_context():
        assert db.session.get(Session, catalog.session_id).is_booked is False


def test_gateway_rejection_rolls_back_reservation(app, catalog, gateway, book) -> None:
    gateway.create_transaction.side_effect = TransactionCreationFailed("Failed to create payment transaction")

    response = book()

    assert response.status_code == 422
    assert response.get_json()["error"] == "transaction_failed"
    with app.app_context():
        assert Reservation.query.count() == 0
        assert Payment.query.count() == 0
        assert db.session.get(Session, catalog.session_id).is_booked is False


def test_gateway_outage_returns_503_and_frees_session(app, catalog, gateway, book) -> None:
    gateway.create_transaction.side_effect = GatewayUnavailable("Payment service is temporarily unavailable")

    response = book()

    assert response.status_code == 503
    with app.app_context():
        assert db.session.get(Session, catalog.session_id).is_booked is False

    gateway.create_transaction.side_effect = None
    gateway.create_transaction.return_value = {
        "reference": "DEV-T0001RETRY",
        "checkout_url": "https://tripay.co.id/checkout/DEV-T0001RETRY",
    }
    assert book().status_code == 201


def test_transport_error_from_gateway_frees_session(app, catalog, gateway, book) -> None:
    gateway.create_transaction.side_effect = partial(TripayClient.create_transaction, gateway)

    with patch.object(gateway, "session") as http:
        http.post.side_effect = requests.exceptions.ChunkedEncodingError("connection broken mid-body")
        response = book()

    assert response.status_code == 503
    assert response.get_json()["error"] == "payment_unavailable"
    with app.app_context():
        assert Reservation.query.count() == 0
        assert db.session.get(Session, catalog.session_id).is_booked is False


def test_unexpected_gateway_error_still_frees_session(app, services, catalog, gateway, book) -> None:
    gateway.create_transaction.side_effect = RuntimeError("unexpected provider payload")

    response = book()

    assert response.status_code == 500
    assert services.scheduler.stats()["active_timers"] == 0
    with app.app_context():
        assert Reservation.query.count() == 0
        assert Payment.query.count() == 0
        assert db.session.get(Session, catalog.session_id).is_booked is False


def test_gateway_deadline_matches_payment_expiry(app, gateway, book) -> None:
    app.config["PAYMENT_EXPIRY_HOURS"] = 2

    response = book()

    order = gateway.create_transaction.call_args.args[0]
    assert timedelta(hours=1, minutes=59) < order["expiry_at"] - utc_now() <= timedelta(hours=2)
    with app.app_context():
        payment = db.session.get(Payment, response.get_json()["payment"]["id"])
        assert as_utc(payment.expiry_at) == order["expiry_at"]


def test_fractional_ids_are_rejected(app, catalog, gateway, book) -> None:
    response = book(serviceId=catalog.massage_id + 0.9)

    assert response.status_code == 400
    assert "service_id" in response.get_json()["message"]
    gateway.create_transaction.assert_not_called()


def test_numeric_string_ids_are_accepted(book, catalog) -> None:
    assert book(sessionId=str(catalog.session_id)).status_code == 201
