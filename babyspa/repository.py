"""Query helpers shared by the reservation, callback and expiry paths.

Status changes that must happen exactly once are written as conditional
``UPDATE ... WHERE status = <expected>`` statements; the returned row count
tells the caller whether it won.
"""
from __future__ import annotations

from datetime import datetime

from .extensions import db
from .models import (PAYMENT_PENDING, RESERVATION_RELEASED_STATES, Customer,
                     Payment, Reservation, Session, TimeSlot, utc_now)


def claim_session(session_id: int) -> bool:
    """Flip ``is_booked`` from false to true; False when already booked."""
    rows = Session.query.filter_by(session_id=session_id, is_booked=False).update(
        {"is_booked": True}, synchronize_session=False
    )
    return rows == 1


def sync_session_flag(session_id: int) -> bool:
    """Set ``is_booked`` to whether a live reservation still holds the session."""
    held = (
        db.session.query(Reservation.reservation_id)
        .filter(Reservation.locked_session_id == session_id)
        .first()
        is not None
    )
    Session.query.filter_by(session_id=session_id).update(
        {"is_booked": held}, synchronize_session=False
    )
    return held


def transition_payment(payment: Payment, new_status: str, **values: object) -> bool:
    """Move a PENDING payment to ``new_status``; False if it already left PENDING."""
    values["status"] = new_status
    rows = Payment.query.filter_by(payment_id=payment.payment_id, status=PAYMENT_PENDING).update(
        values, synchronize_session=False
    )
    db.session.expire(payment)
    return rows == 1


def transition_reservation(reservation: Reservation, from_status: str, to_status: str) -> bool:
    """Conditionally move a reservation between statuses.

    Moving into a released state clears the session lock in the same
    statement; the caller still has to :func:`sync_session_flag`.
    """
    values: dict[str, object] = {"status": to_status}
    if to_status in RESERVATION_RELEASED_STATES:
        values["locked_session_id"] = None
    rows = Reservation.query.filter_by(
        reservation_id=reservation.reservation_id, status=from_status
    ).update(values, synchronize_session=False)
    db.session.expire(reservation)
    return rows == 1


def get_payment_by_reference(reference: str) -> Payment | None:
    return Payment.query.filter_by(transaction_reference=reference).first()


def overdue_pending_payments(now: datetime | None = None) -> list[Payment]:
    now = now or utc_now()
    return (
        Payment.query.filter(Payment.status == PAYMENT_PENDING, Payment.expiry_at <= now)
        .order_by(Payment.expiry_at)
        .all()
    )


def scheduled_pending_payments(now: datetime | None = None) -> list[Payment]:
    now = now or utc_now()
    return (
        Payment.query.filter(Payment.status == PAYMENT_PENDING, Payment.expiry_at > now)
        .order_by(Payment.expiry_at)
        .all()
    )


def reservations_query(
    customer_id: int | None = None,
    staff_id: int | None = None,
    statuses: list[str] | None = None,
    starts_from: datetime | None = None,
    starts_before: datetime | None = None,
):
    """Reservations matching the filters, newest first.

    Date bounds apply to the start of the booked time slot.
    """
    query = Reservation.query
    if customer_id is not None:
        query = query.filter(Reservation.customer_id == customer_id)
    if staff_id is not None:
        query = query.filter(Reservation.staff_id == staff_id)
    if statuses:
        query = query.filter(Reservation.status.in_(statuses))
    if starts_from is not None or starts_before is not None:
        query = query.join(Session, Reservation.session_id == Session.session_id).join(
            TimeSlot, Session.time_slot_id == TimeSlot.time_slot_id
        )
        if starts_from is not None:
            query = query.filter(TimeSlot.starts_at >= starts_from)
        if starts_before is not None:
            query = query.filter(TimeSlot.starts_at < starts_before)
    return query.order_by(Reservation.created_at.desc(), Reservation.reservation_id.desc())


def get_customer_by_phone(*phone_numbers: str) -> Customer | None:
    """First customer stored under any of the given spellings of a number."""
    return (
        Customer.query.filter(Customer.phone_number.in_(phone_numbers))
        .order_by(Customer.customer_id)
        .first()
    )
