"""In-process expiry timers for pending payments, plus the batch sweep."""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from . import repository
from .events import PaymentExpired
from .extensions import db
from .models import (PAYMENT_EXPIRED, PAYMENT_PENDING, RESERVATION_EXPIRED,
                     RESERVATION_PENDING, Payment, as_utc, utc_now)

if TYPE_CHECKING:
    from flask import Flask

    from .events import EventBus

log = logging.getLogger(__name__)


class PaymentExpiryScheduler:
    """One timer per pending payment, keyed by payment id.

    Timers are best effort: they die with the process. ``run_expiry_sweep``
    is the backstop for anything they miss, and both paths go through
    :meth:`process_expiry`, which only lets one caller win.
    """

    def __init__(self, app: "Flask", events: "EventBus") -> None:
        self.app = app
        self.events = events
        self._timers: dict[int, threading.Timer] = {}
        self._lock = threading.Lock()

    def schedule_expiry(self, payment_id: int, expiry_at: datetime) -> None:
        delay = (as_utc(expiry_at) - utc_now()).total_seconds()
        if delay <= 0:
            log.info("Payment %s already past expiry, processing now", payment_id)
            self.cancel_expiry(payment_id)
            self.process_expiry(payment_id)
            return

        timer = threading.Timer(delay, self._fire, args=(payment_id,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(payment_id, None)
            if previous is not None:
                previous.cancel()
            self._timers[payment_id] = timer
            timer.start()
        log.info("Scheduled expiry for payment %s in %.0f seconds", payment_id, delay)

    def cancel_expiry(self, payment_id: int) -> bool:
        with self._lock:
            timer = self._timers.pop(payment_id, None)
        if timer is None:
            return False
        timer.cancel()
        log.info("Cancelled expiry timer for payment %s", payment_id)
        return True

    def _fire(self, payment_id: int) -> None:
        with self._lock:
            if self._timers.get(payment_id) is threading.current_thread():
                del self._timers[payment_id]
        try:
            with self.app.app_context():
                self.process_expiry(payment_id)
        except Exception:
            log.exception("Expiry timer for payment %s failed", payment_id)

    def process_expiry(self, payment_id: int) -> bool:
        """Expire a pending payment and its reservation.

        Returns True only for the caller whose conditional update moved the
        payment out of PENDING; every other caller sees a no-op.
        """
        payment = db.session.get(Payment, payment_id)
        if payment is None:
            log.warning("Payment %s not found, nothing to expire", payment_id)
            return False
        if payment.status != PAYMENT_PENDING:
            log.info("Payment %s is %s, skipping expiry", payment_id, payment.status)
            return False

        reservation = payment.reservation
        event = PaymentExpired(
            reservation_id=reservation.reservation_id,
            customer_id=reservation.customer_id,
            payment_id=payment_id,
            baby_name=reservation.baby_name,
            service_name=reservation.service.name if reservation.service else "",
        )
        session_id = reservation.session_id

        try:
            if not repository.transition_payment(payment, PAYMENT_EXPIRED):
                db.session.rollback()
                log.info("Payment %s was settled concurrently, skipping expiry", payment_id)
                return False
            if repository.transition_reservation(reservation, RESERVATION_PENDING, RESERVATION_EXPIRED):
                repository.sync_session_flag(session_id)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        self.cancel_expiry(payment_id)
        log.info("Payment %s expired, reservation %s released", payment_id, event.reservation_id)
        self.events.publish(event)
        return True

    def initialize_from_store(self) -> int:
        """Re-arm timers for pending payments that have not expired yet.

        Overdue payments are left for the sweep.
        """
        payments = repository.scheduled_pending_payments(utc_now())
        for payment in payments:
            self.schedule_expiry(payment.payment_id, payment.expiry_at)
        log.info("Re-armed %d payment expiry timer(s)", len(payments))
        return len(payments)

    def run_expiry_sweep(self) -> dict[str, int]:
        payment_ids = [payment.payment_id for payment in repository.overdue_pending_payments(utc_now())]
        result = {"found": len(payment_ids), "expired": 0, "skipped": 0, "errors": 0}

        for payment_id in payment_ids:
            try:
                if self.process_expiry(payment_id):
                    result["expired"] += 1
                else:
                    result["skipped"] += 1
            except Exception:
                db.session.rollback()
                log.exception("Expiry sweep failed for payment %s", payment_id)
                result["errors"] += 1

        log.info("Expiry sweep finished: %s", result)
        return result

    def stats(self) -> dict[str, object]:
        with self._lock:
            payment_ids = sorted(self._timers)
        return {"active_timers": len(payment_ids), "payment_ids": payment_ids}

    def clear_all(self) -> int:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        return len(timers)
