"""Database models for the baby-spa reservation backend."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from .extensions import db


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def _money(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


RESERVATION_PENDING = "PENDING"
RESERVATION_CONFIRMED = "CONFIRMED"
RESERVATION_IN_PROGRESS = "IN_PROGRESS"
RESERVATION_COMPLETED = "COMPLETED"
RESERVATION_CANCELLED = "CANCELLED"
RESERVATION_EXPIRED = "EXPIRED"

RESERVATION_STATUSES = (
    RESERVATION_PENDING,
    RESERVATION_CONFIRMED,
    RESERVATION_IN_PROGRESS,
    RESERVATION_COMPLETED,
    RESERVATION_CANCELLED,
    RESERVATION_EXPIRED,
)

# Allowed edges of the reservation lifecycle; terminal states map to nothing.
RESERVATION_TRANSITIONS: dict[str, frozenset[str]] = {
    RESERVATION_PENDING: frozenset(
        {RESERVATION_CONFIRMED, RESERVATION_CANCELLED, RESERVATION_EXPIRED}
    ),
    RESERVATION_CONFIRMED: frozenset({RESERVATION_IN_PROGRESS, RESERVATION_CANCELLED}),
    RESERVATION_IN_PROGRESS: frozenset({RESERVATION_COMPLETED}),
    RESERVATION_COMPLETED: frozenset(),
    RESERVATION_CANCELLED: frozenset(),
    RESERVATION_EXPIRED: frozenset(),
}

# Reservations in these states no longer hold their session.
RESERVATION_RELEASED_STATES = frozenset({RESERVATION_CANCELLED, RESERVATION_EXPIRED})

RESERVATION_ONLINE = "ONLINE"
# Walk-in or phone bookings entered by an owner.
RESERVATION_MANUAL = "MANUAL"

PAYMENT_PENDING = "PENDING"
PAYMENT_PAID = "PAID"
PAYMENT_FAILED = "FAILED"
PAYMENT_EXPIRED = "EXPIRED"
PAYMENT_REFUNDED = "REFUNDED"

PAYMENT_STATUSES = (
    PAYMENT_PENDING,
    PAYMENT_PAID,
    PAYMENT_FAILED,
    PAYMENT_EXPIRED,
    PAYMENT_REFUNDED,
)


class Customer(db.Model):
    __tablename__ = "customers"

    customer_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    phone_number = db.Column(db.String(30), nullable=False)
    one_signal_player_id = db.Column(db.String(100))
    # Created by an owner for a walk-in booking; has no real e-mail address.
    is_manual = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    reservations = db.relationship("Reservation", back_populates="customer", lazy="dynamic")

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.customer_id,
            "name": self.name,
            "email": self.email,
            "phone_number": self.phone_number,
        }


class Owner(db.Model):
    __tablename__ = "owners"

    owner_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    one_signal_player_id = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)


class Staff(db.Model):
    __tablename__ = "staff"

    staff_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {"id": self.staff_id, "name": self.name, "is_active": self.is_active}


class Service(db.Model):
    __tablename__ = "services"

    service_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    # Null when pricing comes from tiers.
    price = db.Column(db.Numeric(12, 2))
    has_price_tiers = db.Column(db.Boolean, nullable=False, default=False)
    min_baby_age = db.Column(db.Integer)
    max_baby_age = db.Column(db.Integer)
    duration_minutes = db.Column(db.Integer, nullable=False, default=60)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    price_tiers = db.relationship(
        "PriceTier",
        back_populates="service",
        cascade="all, delete-orphan",
        order_by="PriceTier.min_baby_age",
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "name": self.name,
            "price": _money(self.price),
            "has_price_tiers": self.has_price_tiers,
            "duration_minutes": self.duration_minutes,
        }


class PriceTier(db.Model):
    """Age-banded price for a tiered service; ages in months, inclusive."""

    __tablename__ = "price_tiers"
    __table_args__ = (
        db.UniqueConstraint("service_id", "min_baby_age", "max_baby_age", name="uq_price_tier_range"),
    )

    tier_id = db.Column(db.Integer, primary_key=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    tier_name = db.Column(db.String(100), nullable=False)
    min_baby_age = db.Column(db.Integer, nullable=False)
    max_baby_age = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)

    service = db.relationship("Service", back_populates="price_tiers")

    def covers(self, baby_age: int) -> bool:
        return self.min_baby_age <= baby_age <= self.max_baby_age


class TimeSlot(db.Model):
    __tablename__ = "time_slots"

    time_slot_id = db.Column(db.Integer, primary_key=True)
    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)


class Session(db.Model):
    """One staff member's availability in one time slot."""

    __tablename__ = "sessions"
    __table_args__ = (
        db.UniqueConstraint("time_slot_id", "staff_id", name="uq_session_slot_staff"),
    )

    session_id = db.Column(db.Integer, primary_key=True)
    time_slot_id = db.Column(db.Integer, db.ForeignKey("time_slots.time_slot_id"), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=False)
    is_booked = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    time_slot = db.relationship("TimeSlot")
    staff = db.relationship("Staff")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.session_id,
            "staff_id": self.staff_id,
            "is_booked": self.is_booked,
            "starts_at": _iso(self.time_slot.starts_at) if self.time_slot else None,
            "ends_at": _iso(self.time_slot.ends_at) if self.time_slot else None,
        }


class Reservation(db.Model):
    __tablename__ = "reservations"

    reservation_id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.customer_id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=False)
    session_id = db.Column(db.Integer, db.ForeignKey("sessions.session_id"), nullable=False)
    # Equals session_id while the reservation is live, NULL once released;
    # the unique index allows one live reservation per session.
    locked_session_id = db.Column(db.Integer, unique=True)
    price_tier_id = db.Column(db.Integer, db.ForeignKey("price_tiers.tier_id"))
    baby_name = db.Column(db.String(100), nullable=False)
    baby_age = db.Column(db.Integer, nullable=False)
    parent_names = db.Column(db.String(200))
    notes = db.Column(db.Text)
    total_price = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(
        db.Enum(
            *RESERVATION_STATUSES,
            name="reservation_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default=RESERVATION_PENDING,
    )
    reservation_type = db.Column(
        db.Enum(
            RESERVATION_ONLINE,
            RESERVATION_MANUAL,
            name="reservation_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default=RESERVATION_ONLINE,
    )
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    customer = db.relationship("Customer", back_populates="reservations")
    service = db.relationship("Service")
    staff = db.relationship("Staff")
    session = db.relationship("Session")
    price_tier = db.relationship("PriceTier")
    payment = db.relationship(
        "Payment",
        back_populates="reservation",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in RESERVATION_TRANSITIONS.get(self.status, frozenset())

    @property
    def is_terminal(self) -> bool:
        return not RESERVATION_TRANSITIONS.get(self.status)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.reservation_id,
            "status": self.status,
            "reservation_type": self.reservation_type,
            "customer_id": self.customer_id,
            "customer": self.customer.to_dict_basic() if self.customer else None,
            "service_id": self.service_id,
            "service": self.service.to_dict() if self.service else None,
            "staff_id": self.staff_id,
            "staff": self.staff.to_dict() if self.staff else None,
            "session_id": self.session_id,
            "session": self.session.to_dict() if self.session else None,
            "price_tier_id": self.price_tier_id,
            "baby_name": self.baby_name,
            "baby_age": self.baby_age,
            "parent_names": self.parent_names,
            "notes": self.notes,
            "total_price": _money(self.total_price),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Payment(db.Model):
    __tablename__ = "payments"

    payment_id = db.Column(db.Integer, primary_key=True)
    reservation_id = db.Column(
        db.Integer,
        db.ForeignKey("reservations.reservation_id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    # Gateway channel code, e.g. BRIVA or QRIS.
    method = db.Column(db.String(50), nullable=False)
    status = db.Column(
        db.Enum(
            *PAYMENT_STATUSES,
            name="payment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default=PAYMENT_PENDING,
    )
    transaction_reference = db.Column(db.String(100), unique=True)
    checkout_url = db.Column(db.String(500))
    instructions = db.Column(db.JSON)
    provider_response = db.Column(db.JSON)
    merchant_fee = db.Column(db.Numeric(12, 2))
    notes = db.Column(db.Text)
    expiry_at = db.Column(db.DateTime, nullable=False)
    paid_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    reservation = db.relationship("Reservation", back_populates="payment")

    def to_dict(self) -> dict[str, object]:
        response = self.provider_response or {}
        return {
            "id": self.payment_id,
            "reservation_id": self.reservation_id,
            "amount": _money(self.amount),
            "method": self.method,
            "status": self.status,
            "transaction_reference": self.transaction_reference,
            "payment_url": self.checkout_url,
            "instructions": self.instructions or [],
            "qr_string": response.get("qr_string") if isinstance(response, dict) else None,
            "merchant_fee": _money(self.merchant_fee),
            "notes": self.notes,
            "expiry_at": _iso(self.expiry_at),
            "paid_at": _iso(self.paid_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Notification(db.Model):
    __tablename__ = "notifications"

    notification_id = db.Column(db.Integer, primary_key=True)
    recipient_type = db.Column(
        db.Enum(
            "customer",
            "owner",
            name="notification_recipient",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    recipient_id = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    kind = db.Column(db.String(50), nullable=False)
    reference_id = db.Column(db.Integer)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.notification_id,
            "recipient_type": self.recipient_type,
            "recipient_id": self.recipient_id,
            "title": self.title,
            "message": self.message,
            "kind": self.kind,
            "reference_id": self.reference_id,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }
