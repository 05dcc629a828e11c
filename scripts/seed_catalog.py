#!/usr/bin/env python3
"""
Create the tables and seed a small catalogue for local development:
an owner, a demo customer, two staff members, a flat and a tiered service,
and a week of morning sessions. Prints bearer tokens for both accounts.
"""

import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from babyspa import create_app, db
from babyspa.auth import ROLE_CUSTOMER, ROLE_OWNER, issue_token
from babyspa.models import (Customer, Owner, PriceTier, Service, Session,
                            Staff, TimeSlot)

SLOT_HOURS = (9, 10, 11)


def seed_catalog():
    """Insert demo data unless the catalogue already exists."""
    app = create_app()

    with app.app_context():
        db.create_all()
        print("🔄 Seeding baby-spa catalogue...")

        if Service.query.count() > 0:
            print("⏭️  Services already exist, skipping catalogue")
        else:
            massage = Service(
                name="Baby Massage",
                description="Gentle full-body massage",
                price=Decimal("120000"),
                min_baby_age=1,
                max_baby_age=24,
                duration_minutes=45,
            )
            swim = Service(
                name="Baby Swim",
                description="Floating and swim play, priced by age",
                has_price_tiers=True,
                duration_minutes=60,
            )
            swim.price_tiers = [
                PriceTier(tier_name="Newborn", min_baby_age=0, max_baby_age=12, price=Decimal("100000")),
                PriceTier(tier_name="Toddler", min_baby_age=13, max_baby_age=24, price=Decimal("150000")),
            ]
            db.session.add_all([massage, swim])
            print("✅ Added services: Baby Massage (flat), Baby Swim (tiered)")

        if Staff.query.count() == 0:
            db.session.add_all([Staff(name="Rina"), Staff(name="Dewi")])
            db.session.flush()
            print("✅ Added 2 staff members")

        owner = Owner.query.first()
        if owner is None:
            owner = Owner(name="Spa Owner", email="owner@babyspa.local")
            db.session.add(owner)
        customer = Customer.query.filter_by(email="parent@babyspa.local").first()
        if customer is None:
            customer = Customer(name="Demo Parent", email="parent@babyspa.local", phone_number="081234567890")
            db.session.add(customer)

        created_sessions = 0
        if Session.query.count() == 0:
            today = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
            for day in range(1, 8):
                for hour in SLOT_HOURS:
                    starts_at = (today + timedelta(days=day)).replace(hour=hour)
                    slot = TimeSlot(starts_at=starts_at, ends_at=starts_at + timedelta(hours=1))
                    db.session.add(slot)
                    for staff in Staff.query.all():
                        db.session.add(Session(time_slot=slot, staff=staff))
                        created_sessions += 1

        db.session.commit()
        print(f"\n✨ Created {created_sessions} sessions")

        print("\nTokens for testing:")
        print(f"  Owner:    {issue_token(owner.owner_id, ROLE_OWNER)}")
        print(f"  Customer: {issue_token(customer.customer_id, ROLE_CUSTOMER)}")


if __name__ == "__main__":
    seed_catalog()
