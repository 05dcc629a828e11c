"""Tests for payment expiry timers, the sweep and the cron endpoint."""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from babyspa import repository
from babyspa.extensions import db
from babyspa.models import Payment, Reservation, Session, utc_now


@pytest.fixture
def payment_id(book):
    return book().get_json()["payment"]["id"]


def _make_overdue(app, payment_id: int) -> None:
    with app.app_context():
        payment = db.session.get(Payment, payment_id)
        payment.expiry_at = utc_now() - timedelta(minutes=5)
        db.session.commit()


def test_second_expiry_is_a_no_op(app, services, payment_id) -> None:
    with app.app_context():
        assert services.scheduler.process_expiry(payment_id) is True
        assert services.scheduler.process_expiry(payment_id) is False

        payment = db.session.get(Payment, payment_id)
        assert payment.status == "EXPIRED"
        assert payment.reservation.status == "EXPIRED"
        assert db.session.get(Session, payment.reservation.session_id).is_booked is False

    # ReservationCreated plus exactly one PaymentExpired.
    assert services.events.pending == 2


def test_expiry_after_payment_does_nothing(app, client, services, payment_id) -> None:
    with app.app_context():
        reference = db.session.get(Payment, payment_id).transaction_reference
    client.post("/payment/callback", json={"reference": reference, "status": "PAID"})

    with app.app_context():
        assert services.scheduler.process_expiry(payment_id) is False
        assert db.session.get(Payment, payment_id).status == "PAID"


def test_past_expiry_is_processed_immediately(app, services, payment_id) -> None:
    services.scheduler.clear_all()

    with app.app_context():
        services.scheduler.schedule_expiry(payment_id, utc_now() - timedelta(seconds=1))
        assert db.session.get(Payment, payment_id).status == "EXPIRED"

    assert services.scheduler.stats()["active_timers"] == 0


def test_schedule_replaces_existing_timer(services, payment_id) -> None:
    services.scheduler.schedule_expiry(payment_id, utc_now() + timedelta(hours=2))

    assert services.scheduler.stats() == {"active_timers": 1, "payment_ids": [payment_id]}
    assert services.scheduler.cancel_expiry(payment_id) is True
    assert services.scheduler.cancel_expiry(payment_id) is False


def test_timer_callback_expires_payment(app, services, payment_id) -> None:
    services.scheduler._fire(payment_id)

    with app.app_context():
        assert db.session.get(Payment, payment_id).status == "EXPIRED"


def test_initialize_from_store_skips_overdue(app, services, catalog, book, payment_id) -> None:
    second_id = book(sessionId=catalog.second_session_id).get_json()["payment"]["id"]
    _make_overdue(app, payment_id)
    services.scheduler.clear_all()

    with app.app_context():
        assert services.scheduler.initialize_from_store() == 1
        assert db.session.get(Payment, payment_id).status == "PENDING"

    assert services.scheduler.stats()["payment_ids"] == [second_id]


def test_sweep_expires_overdue_payments(app, services, payment_id) -> None:
    _make_overdue(app, payment_id)

    with app.app_context():
        result = services.scheduler.run_expiry_sweep()
        assert result == {"found": 1, "expired": 1, "skipped": 0, "errors": 0}
        assert services.scheduler.run_expiry_sweep()["found"] == 0

        reservation = db.session.get(Payment, payment_id).reservation
        assert reservation.status == "EXPIRED"
        assert reservation.locked_session_id is None


def test_sweep_counts_failures_and_continues(app, services, catalog, book, payment_id) -> None:
    second_id = book(sessionId=catalog.second_session_id).get_json()["payment"]["id"]
    _make_overdue(app, payment_id)
    _make_overdue(app, second_id)

    with app.app_context(), patch.object(
        services.scheduler, "process_expiry", side_effect=[RuntimeError("db down"), True]
    ):
        result = services.scheduler.run_expiry_sweep()

    assert result == {"found": 2, "expired": 1, "skipped": 0, "errors": 1}


def test_cron_endpoint_requires_secret(client, app, payment_id) -> None:
    _make_overdue(app, payment_id)

    assert client.get("/scheduler/cron?secret=wrong").status_code == 403

    response = client.get("/scheduler/cron?secret=cron-secret")

    assert response.status_code == 200
    assert response.get_json()["result"]["expired"] == 1
    with app.app_context():
        assert Reservation.query.filter_by(status="EXPIRED").count() == 1


def test_cron_endpoint_open_without_configured_secret(client, app) -> None:
    app.config["SCHEDULER_SECRET"] = ""

    response = client.get("/scheduler/cron")

    assert response.status_code == 200
    assert response.get_json()["result"]["found"] == 0


def test_scheduler_stats_is_owner_only(client, customer_headers, owner_headers, payment_id) -> None:
    assert client.get("/scheduler/stats", headers=customer_headers).status_code == 403

    response = client.get("/scheduler/stats", headers=owner_headers)

    assert response.status_code == 200
    assert response.get_json()["payment_ids"] == [payment_id]


def test_expiry_yields_to_payment_settled_after_pending_check(app, services, payment_id) -> None:
    """The payment is PENDING when read but PAID by the time the update runs."""
    conditional_update = repository.transition_payment

    def paid_in_between(payment, new_status, **values):
        Payment.query.filter_by(payment_id=payment.payment_id).update({"status": "PAID"}, synchronize_session=False)
        db.session.commit()
        return conditional_update(payment, new_status, **values)

    with app.app_context():
        with patch.object(repository, "transition_payment", side_effect=paid_in_between):
            assert services.scheduler.process_expiry(payment_id) is False

        payment = db.session.get(Payment, payment_id)
        assert payment.status == "PAID"
        assert payment.reservation.status == "PENDING"
        assert db.session.get(Session, payment.reservation.session_id).is_booked is True

    # Only ReservationCreated; no PaymentExpired.
    assert services.events.pending == 1


def test_cron_endpoint_refuses_unset_secret_in_production(client, app, payment_id) -> None:
    _make_overdue(app, payment_id)
    app.config.update(SCHEDULER_SECRET="", APP_ENV="production")

    response = client.get("/scheduler/cron")

    assert response.status_code == 403
    with app.app_context():
        assert db.session.get(Payment, payment_id).status == "PENDING"
