"""Domain events and the in-process queue that delivers them."""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from flask import Flask

    from .notifications import NotificationSender

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationCreated:
    reservation_id: int
    customer_id: int
    payment_id: int
    baby_name: str
    service_name: str
    total_price: float
    payment_method: str


@dataclass(frozen=True)
class ManualReservationCreated:
    reservation_id: int
    customer_id: int
    baby_name: str
    service_name: str
    status: str


@dataclass(frozen=True)
class PaymentConfirmed:
    reservation_id: int
    customer_id: int
    payment_id: int
    baby_name: str
    service_name: str
    amount: float


@dataclass(frozen=True)
class PaymentExpired:
    reservation_id: int
    customer_id: int
    payment_id: int
    baby_name: str
    service_name: str


@dataclass(frozen=True)
class ReservationCancelled:
    reservation_id: int
    customer_id: int
    baby_name: str
    service_name: str
    reason: str


@dataclass(frozen=True)
class ReservationCompleted:
    reservation_id: int
    customer_id: int
    baby_name: str
    service_name: str


Handler = Callable[[object], None]


class EventBus:
    """Queue of domain events consumed off the request path.

    Producers only ever ``publish``; delivery happens on a daemon thread
    started with :meth:`start`, or synchronously through :meth:`drain`.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[object] = queue.Queue()
        self._handlers: list[Handler] = []
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    def subscribe(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def publish(self, event: object) -> None:
        log.debug("Publishing %s", type(event).__name__)
        self._queue.put(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _dispatch(self, event: object) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                log.exception("Event handler %r failed for %s", handler, event)

    def drain(self) -> int:
        """Deliver everything queued so far on the calling thread."""
        delivered = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            try:
                self._dispatch(event)
            finally:
                self._queue.task_done()
            delivered += 1

    def start(self, app: "Flask") -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()

        def consume() -> None:
            while not self._stopping.is_set():
                try:
                    event = self._queue.get(timeout=0.5)
                except queue.Empty:
                    continue
                try:
                    with app.app_context():
                        self._dispatch(event)
                finally:
                    self._queue.task_done()

        self._thread = threading.Thread(target=consume, name="babyspa-events", daemon=True)
        self._thread.start()
        log.info("Event consumer started")

    def stop(self, timeout: float = 2.0) -> None:
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


class NotificationConsumer:
    """Turns domain events into customer and owner notifications."""

    def __init__(self, sender: "NotificationSender") -> None:
        self.sender = sender
        self._routes: dict[type, Callable[[object], None]] = {
            ReservationCreated: self._reservation_created,
            ManualReservationCreated: self._manual_reservation_created,
            PaymentConfirmed: self._payment_confirmed,
            PaymentExpired: self._payment_expired,
            ReservationCancelled: self._reservation_cancelled,
            ReservationCompleted: self._reservation_completed,
        }

    def __call__(self, event: object) -> None:
        route = self._routes.get(type(event))
        if route is None:
            log.debug("No notification for %s", type(event).__name__)
            return
        route(event)

    def _reservation_created(self, event: ReservationCreated) -> None:
        self.sender.notify_all_owners(
            title="New reservation",
            message=f"New reservation for {event.baby_name} ({event.service_name}), waiting for payment.",
            kind="RESERVATION",
            reference_id=event.reservation_id,
            push=True,
        )
        self.sender.notify_customer(
            event.customer_id,
            title="Payment pending",
            message=(
                f"Your reservation for {event.baby_name} has been created. "
                f"Please complete the payment of {event.total_price:,.0f} via {event.payment_method}."
            ),
            kind="PAYMENT",
            reference_id=event.reservation_id,
        )

    def _manual_reservation_created(self, event: ManualReservationCreated) -> None:
        self.sender.notify_all_owners(
            title="New manual booking",
            message=f"Manual booking for {event.baby_name} ({event.service_name}) was added. Status: {event.status}.",
            kind="RESERVATION",
            reference_id=event.reservation_id,
        )

    def _payment_confirmed(self, event: PaymentConfirmed) -> None:
        self.sender.notify_customer(
            event.customer_id,
            title="Payment successful",
            message=f"Payment for {event.baby_name}'s {event.service_name} was received. Your reservation is confirmed.",
            kind="PAYMENT",
            reference_id=event.reservation_id,
            push=True,
            email=True,
        )
        self.sender.notify_all_owners(
            title="Payment received",
            message=f"Reservation #{event.reservation_id} for {event.baby_name} has been paid.",
            kind="PAYMENT",
            reference_id=event.reservation_id,
            push=True,
        )

    def _payment_expired(self, event: PaymentExpired) -> None:
        self.sender.notify_customer(
            event.customer_id,
            title="Reservation cancelled",
            message=(
                f"The payment window for {event.baby_name}'s {event.service_name} has closed "
                "and the reservation was cancelled."
            ),
            kind="RESERVATION",
            reference_id=event.reservation_id,
            push=True,
            email=True,
        )

    def _reservation_cancelled(self, event: ReservationCancelled) -> None:
        self.sender.notify_customer(
            event.customer_id,
            title="Reservation cancelled",
            message=f"Reservation for {event.baby_name} ({event.service_name}) was cancelled: {event.reason}.",
            kind="RESERVATION",
            reference_id=event.reservation_id,
            push=True,
        )

    def _reservation_completed(self, event: ReservationCompleted) -> None:
        self.sender.notify_customer(
            event.customer_id,
            title="Thank you for visiting",
            message=f"{event.baby_name}'s {event.service_name} session is complete. We hope to see you again!",
            kind="RESERVATION",
            reference_id=event.reservation_id,
        )
