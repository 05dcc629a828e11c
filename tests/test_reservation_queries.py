"""Tests for reading reservations, payment details and manual verification."""
from __future__ import annotations

from functools import partial
from unittest.mock import patch

import pytest
import requests

from babyspa.errors import GatewayUnavailable
from babyspa.extensions import db
from babyspa.models import Payment, Reservation, Session
from babyspa.tripay import TripayClient


@pytest.fixture
def booked(book):
    body = book().get_json()
    return body["reservation"]["id"], body["payment"]["id"]


def test_customer_reads_own_reservation(client, customer_headers, booked) -> None:
    reservation_id, payment_id = booked

    response = client.get(f"/reservations/{reservation_id}", headers=customer_headers)

    assert response.status_code == 200
    body = response.get_json()["reservation"]
    assert body["baby_name"] == "Ayu"
    assert body["payment"]["id"] == payment_id


def test_customer_cannot_read_other_reservation(client, other_customer_headers, owner_headers, booked) -> None:
    reservation_id, _ = booked

    assert client.get(f"/reservations/{reservation_id}", headers=other_customer_headers).status_code == 403
    assert client.get(f"/reservations/{reservation_id}", headers=owner_headers).status_code == 200


def test_payment_details_refresh_applies_provider_status(app, client, services, customer_headers, gateway, booked) -> None:
    reservation_id, payment_id = booked
    gateway.get_transaction_detail.return_value = {"status": "PAID", "fee_merchant": 4250}

    response = client.get(f"/reservations/{reservation_id}/payment", headers=customer_headers)

    assert response.status_code == 200
    body = response.get_json()
    assert body["payment"]["status"] == "PAID"
    assert body["reservation_status"] == "CONFIRMED"
    assert services.scheduler.stats()["active_timers"] == 0


def test_payment_details_keep_state_when_gateway_down(client, customer_headers, gateway, booked) -> None:
    reservation_id, _ = booked
    gateway.get_transaction_detail.side_effect = GatewayUnavailable("Payment service is temporarily unavailable")

    response = client.get(f"/reservations/{reservation_id}/payment", headers=customer_headers)

    assert response.status_code == 200
    body = response.get_json()
    assert body["payment"]["status"] == "PENDING"
    assert body["payment"]["time_left"]["expired"] is False


def test_payment_details_unpaid_is_left_pending(client, customer_headers, booked) -> None:
    reservation_id, _ = booked

    response = client.get(f"/reservations/{reservation_id}/payment", headers=customer_headers)

    assert response.get_json()["payment"]["status"] == "PENDING"


def test_payment_methods_lists_active_channels(client, customer_headers, gateway) -> None:
    response = client.get("/reservations/payment-methods", headers=customer_headers)

    assert response.status_code == 200
    methods = response.get_json()["payment_methods"]
    assert [method["code"] for method in methods] == ["BRIVA", "QRIS"]
    assert methods[1]["category"] == "qr_code"
    assert methods[1]["fee"] == {"flat": 750.0, "percent": 0.7}
    gateway.list_channels.assert_called_once_with(retries=3)


def test_payment_methods_gateway_unavailable(client, customer_headers, gateway) -> None:
    gateway.list_channels.side_effect = GatewayUnavailable("Payment service is temporarily unavailable")

    response = client.get("/reservations/payment-methods", headers=customer_headers)

    assert response.status_code == 503
    assert response.get_json()["error"] == "payment_unavailable"


def test_manual_verification_confirms_payment(app, client, owner_headers, booked) -> None:
    reservation_id, payment_id = booked

    response = client.put(f"/payments/{payment_id}/verify", json={"isVerified": True}, headers=owner_headers)

    assert response.status_code == 200
    assert response.get_json()["payment"]["status"] == "PAID"
    with app.app_context():
        assert db.session.get(Reservation, reservation_id).status == "CONFIRMED"

    again = client.put(f"/payments/{payment_id}/verify", json={"isVerified": False}, headers=owner_headers)
    assert again.status_code == 409


def test_manual_rejection_cancels_reservation(app, client, owner_headers, booked) -> None:
    reservation_id, payment_id = booked

    response = client.put(f"/payments/{payment_id}/verify", json={"isVerified": False}, headers=owner_headers)

    assert response.status_code == 200
    with app.app_context():
        reservation = db.session.get(Reservation, reservation_id)
        assert reservation.status == "CANCELLED"
        assert db.session.get(Payment, payment_id).status == "FAILED"
        assert db.session.get(Session, reservation.session_id).is_booked is False


def test_manual_verification_validates_flag(client, owner_headers, customer_headers, booked) -> None:
    _, payment_id = booked

    assert client.put(f"/payments/{payment_id}/verify", json={"isVerified": "yes"}, headers=owner_headers).status_code == 400
    assert client.put(f"/payments/{payment_id}/verify", json={"isVerified": True}, headers=customer_headers).status_code == 403
    assert client.put("/payments/9999/verify", json={"isVerified": True}, headers=owner_headers).status_code == 404


def test_payment_details_survive_transport_errors(client, customer_headers, gateway, booked) -> None:
    reservation_id, _ = booked
    gateway.get_transaction_detail.side_effect = partial(TripayClient.get_transaction_detail, gateway)

    with patch.object(gateway, "session") as http:
        http.get.side_effect = requests.exceptions.TooManyRedirects("exceeded 30 redirects")
        response = client.get(f"/reservations/{reservation_id}/payment", headers=customer_headers)

    assert response.status_code == 200
    assert response.get_json()["payment"]["status"] == "PENDING"
    assert http.get.call_count == 3
