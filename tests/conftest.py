"""Shared fixtures: app, client, seeded catalogue, tokens and a stubbed gateway."""
from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from babyspa import create_app
from babyspa.auth import ROLE_CUSTOMER, ROLE_OWNER, issue_token
from babyspa.config import TestingConfig
from babyspa.extensions import db
from babyspa.models import (Customer, Owner, PriceTier, Service, Session,
                            Staff, TimeSlot)

CHANNELS = [
    {
        "group": "Virtual Account",
        "code": "BRIVA",
        "name": "BRI Virtual Account",
        "active": True,
        "fee_customer": {"flat": 4250, "percent": 0},
        "icon_url": "https://tripay.co.id/images/payment-channel/briva.png",
    },
    {
        "group": "E-Wallet",
        "code": "QRIS",
        "name": "QRIS by ShopeePay",
        "active": True,
        "fee_customer": {"flat": 750, "percent": 0.7},
        "icon_url": "https://tripay.co.id/images/payment-channel/qris.png",
    },
    {
        "group": "Convenience Store",
        "code": "ALFAMART",
        "name": "Alfamart",
        "active": False,
        "fee_customer": {"flat": 3500, "percent": 0},
        "icon_url": "https://tripay.co.id/images/payment-channel/alfamart.png",
    },
]


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()

    yield app

    app.extensions["babyspa"].scheduler.clear_all()
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["babyspa"]


@pytest.fixture
def catalog(app):
    """Two customers, one owner, a flat and a tiered service, two free sessions."""
    with app.app_context():
        customer = Customer(name="Siti", email="siti@example.com", phone_number="081234567890")
        other_customer = Customer(name="Budi", email="budi@example.com", phone_number="081298765432")
        owner = Owner(name="Owner", email="owner@example.com")
        staff = Staff(name="Rina")

        massage = Service(
            name="Baby Massage",
            price=Decimal("120000"),
            min_baby_age=1,
            max_baby_age=24,
        )
        swim = Service(name="Baby Swim", has_price_tiers=True)
        swim.price_tiers = [
            PriceTier(tier_name="Newborn", min_baby_age=0, max_baby_age=12, price=Decimal("100000")),
            PriceTier(tier_name="Toddler", min_baby_age=13, max_baby_age=24, price=Decimal("150000")),
        ]

        starts_at = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=1)
        slot = TimeSlot(starts_at=starts_at, ends_at=starts_at + timedelta(hours=1))
        session = Session(time_slot=slot, staff=staff)
        second_session = Session(
            time_slot=TimeSlot(starts_at=starts_at + timedelta(hours=1), ends_at=starts_at + timedelta(hours=2)),
            staff=staff,
        )

        db.session.add_all([customer, other_customer, owner, massage, swim, session, second_session])
        db.session.commit()

        return SimpleNamespace(
            customer_id=customer.customer_id,
            other_customer_id=other_customer.customer_id,
            owner_id=owner.owner_id,
            staff_id=staff.staff_id,
            massage_id=massage.service_id,
            swim_id=swim.service_id,
            newborn_tier_id=swim.price_tiers[0].tier_id,
            toddler_tier_id=swim.price_tiers[1].tier_id,
            session_id=session.session_id,
            second_session_id=second_session.session_id,
        )


def _bearer(app, account_id: int, role: str) -> dict[str, str]:
    with app.app_context():
        return {"Authorization": f"Bearer {issue_token(account_id, role)}"}


@pytest.fixture
def customer_headers(app, catalog):
    return _bearer(app, catalog.customer_id, ROLE_CUSTOMER)


@pytest.fixture
def other_customer_headers(app, catalog):
    return _bearer(app, catalog.other_customer_id, ROLE_CUSTOMER)


@pytest.fixture
def owner_headers(app, catalog):
    return _bearer(app, catalog.owner_id, ROLE_OWNER)


@pytest.fixture
def gateway(services):
    """Replace the Tripay HTTP calls with canned responses."""
    counter = itertools.count(1)

    def create_transaction(order):
        reference = f"DEV-T0001{next(counter):05d}"
        return {
            "reference": reference,
            "merchant_ref": f"BABYSPA-{order['reservation_id']}",
            "payment_method": order["payment_method"],
            "amount": int(order["amount"]),
            "fee_merchant": 4250,
            "checkout_url": f"https://tripay.co.id/checkout/{reference}",
            "qr_string": "00020101021226" if order["payment_method"] == "QRIS" else None,
            "instructions": [{"title": "ATM", "steps": ["Insert card", "Pay"]}],
        }

    client = services.gateway
    with patch.object(client, "list_channels", MagicMock(return_value=CHANNELS)), \
            patch.object(client, "create_transaction", MagicMock(side_effect=create_transaction)), \
            patch.object(client, "get_transaction_detail", MagicMock(return_value={"status": "UNPAID"})):
        yield client


@pytest.fixture
def book(client, customer_headers, catalog, gateway):
    """POST a reservation for the flat service; keyword arguments override the body."""

    def _book(headers=None, **overrides):
        body = {
            "serviceId": catalog.massage_id,
            "sessionId": catalog.session_id,
            "babyName": "Ayu",
            "babyAge": 6,
            "paymentMethod": "BRIVA",
        }
        body.update(overrides)
        return client.post("/reservations", json=body, headers=headers or customer_headers)

    return _book
