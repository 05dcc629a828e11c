"""Reservation booking, pricing and owner-driven lifecycle changes."""
from __future__ import annotations

import logging
import re
import secrets
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import repository
from .callbacks import OUTCOMES, ProviderStatus
from .errors import (Conflict, Forbidden, GatewayError, InvalidTransition,
                     NotFound, PriceUnavailable, ValidationError)
from .events import (ManualReservationCreated, ReservationCancelled,
                     ReservationCompleted, ReservationCreated)
from .extensions import db
from .models import (PAYMENT_FAILED, PAYMENT_PAID, PAYMENT_PENDING,
                     RESERVATION_CANCELLED, RESERVATION_COMPLETED,
                     RESERVATION_CONFIRMED, RESERVATION_IN_PROGRESS,
                     RESERVATION_MANUAL, RESERVATION_PENDING,
                     RESERVATION_STATUSES, Customer, Payment, PriceTier,
                     Reservation, Service, Session, utc_now)
from .payment_utils import (calculate_payment_fee, format_payment_method_name,
                            format_time_left, normalize_phone,
                            payment_method_category, supports_qr_code)

if TYPE_CHECKING:
    from .callbacks import CallbackHandler
    from .events import EventBus
    from .scheduler import PaymentExpiryScheduler
    from .tripay import TripayClient

log = logging.getLogger(__name__)

# CONFIRMED and EXPIRED are only ever reached through payment events.
OWNER_SETTABLE_STATUSES = frozenset(
    {RESERVATION_IN_PROGRESS, RESERVATION_COMPLETED, RESERVATION_CANCELLED}
)


def _parse_id(name: str, value: object) -> int:
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value


def _parse_flag(name: str, value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "1", "0"}:
        return value.strip().lower() in {"true", "1"}
    raise ValidationError(f"{name} must be a boolean")


def _parse_date(name: str, value: object) -> date | None:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{name} must be a date in YYYY-MM-DD format") from None


def _day_start(day: date | None) -> datetime | None:
    return datetime.combine(day, time.min, tzinfo=timezone.utc) if day else None


def _parse_age(value: object) -> int:
    if isinstance(value, bool):
        raise ValidationError("baby_age must be a non-negative integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 0:
        raise ValidationError("baby_age must be a non-negative integer")
    return value


def _channel_fee(channel: dict[str, Any]) -> dict[str, float]:
    fee = channel.get("fee_customer") or {}
    return {
        "flat": float(fee.get("flat", channel.get("fee_flat", 0)) or 0),
        "percent": float(fee.get("percent", channel.get("fee_percent", 0)) or 0),
    }


def _decimal_or_none(value: object) -> Decimal | None:
    return Decimal(str(value)) if isinstance(value, (int, float, str)) and value != "" else None


class ReservationService:
    def __init__(
        self,
        gateway: "TripayClient",
        scheduler: "PaymentExpiryScheduler",
        events: "EventBus",
        callbacks: "CallbackHandler",
    ) -> None:
        self.gateway = gateway
        self.scheduler = scheduler
        self.events = events
        self.callbacks = callbacks

    # --- pricing -----------------------------------------------------------

    def calculate_total_price(
        self,
        service: Service,
        baby_age: int,
        price_tier_id: int | None = None,
    ) -> tuple[Decimal, PriceTier | None]:
        """Resolve the price of ``service`` for a baby of ``baby_age`` months.

        Tiered services use the explicit tier when one is given, otherwise the
        tier whose inclusive age range contains the age. Flat services use
        their own price and age limits.
        """
        if service.has_price_tiers:
            if price_tier_id is not None:
                tier = db.session.get(PriceTier, price_tier_id)
                if tier is None or tier.service_id != service.service_id:
                    raise ValidationError("Selected price tier does not belong to this service")
                if not tier.covers(baby_age):
                    raise ValidationError(
                        f"Baby age {baby_age} months is outside tier {tier.tier_name} "
                        f"({tier.min_baby_age}-{tier.max_baby_age} months)"
                    )
                return Decimal(tier.price), tier

            for tier in service.price_tiers:
                if tier.covers(baby_age):
                    return Decimal(tier.price), tier
            raise PriceUnavailable(f"No price tier covers a baby age of {baby_age} months")

        if price_tier_id is not None:
            raise ValidationError("This service does not use price tiers")
        if service.min_baby_age is not None and baby_age < service.min_baby_age:
            raise ValidationError(f"Minimum baby age for this service is {service.min_baby_age} months")
        if service.max_baby_age is not None and baby_age > service.max_baby_age:
            raise ValidationError(f"Maximum baby age for this service is {service.max_baby_age} months")
        if service.price is None:
            raise PriceUnavailable("Service has no price configured")
        return Decimal(service.price), None

    # --- booking -----------------------------------------------------------

    def _select_channel(self, payment_method: str) -> dict[str, Any]:
        for channel in self.gateway.list_channels():
            if channel.get("code") == payment_method and channel.get("active", True):
                return channel
        raise ValidationError("Invalid or inactive payment method")

    def _reconcile_session(self, session_id: int) -> None:
        try:
            repository.sync_session_flag(session_id)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            log.exception("Failed to reconcile booking flag of session %s", session_id)

    def _discard(self, reservation_id: int, session_id: int) -> None:
        """Undo a booking whose gateway transaction could not be opened."""
        try:
            reservation = db.session.get(Reservation, reservation_id)
            if reservation is not None:
                db.session.delete(reservation)
                db.session.flush()
            repository.sync_session_flag(session_id)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            log.exception("Failed to roll back reservation %s", reservation_id)
        else:
            log.info("Reservation %s removed after gateway failure, session %s freed", reservation_id, session_id)

    def _resolve_booking(
        self,
        service_id: object,
        session_id: object,
        baby_age: object,
        price_tier_id: object,
    ) -> tuple[Service, Session, int, Decimal, PriceTier | None]:
        service_id = _parse_id("service_id", service_id)
        session_id = _parse_id("session_id", session_id)
        age = _parse_age(baby_age)
        tier_id = _parse_id("price_tier_id", price_tier_id) if price_tier_id not in (None, "") else None

        service = db.session.get(Service, service_id)
        if service is None:
            raise NotFound("Service not found")
        if not service.is_active:
            raise ValidationError("Service is not available")
        session = db.session.get(Session, session_id)
        if session is None:
            raise NotFound("Session not found")
        if session.staff is None or not session.staff.is_active:
            raise ValidationError("Staff for this session is not available")
        if session.is_booked:
            raise Conflict("Session is already booked")

        total_price, tier = self.calculate_total_price(service, age, tier_id)
        return service, session, age, total_price, tier

    def _insert_booking(self, reservation: Reservation) -> None:
        """Claim the session and commit ``reservation`` with its payment.

        The conditional flag update and the unique ``locked_session_id`` both
        have to pass, so at most one live reservation holds a session.
        """
        session_id = reservation.session_id
        try:
            if not repository.claim_session(session_id):
                db.session.rollback()
                raise Conflict("Session is already booked")
            db.session.add(reservation)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            log.warning("Lost booking race for session %s", session_id)
            self._reconcile_session(session_id)
            raise Conflict("Session is already booked") from None
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def create_reservation(
        self,
        customer_id: int,
        service_id: object,
        session_id: object,
        baby_name: str,
        baby_age: object,
        payment_method: str,
        price_tier_id: object = None,
        notes: str | None = None,
        parent_names: str | None = None,
    ) -> dict[str, object]:
        required = {
            "service_id": service_id,
            "session_id": session_id,
            "baby_name": baby_name,
            "baby_age": baby_age,
            "payment_method": payment_method,
        }
        missing = [name for name, value in required.items() if value is None or value == ""]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        service, session, age, total_price, tier = self._resolve_booking(
            service_id, session_id, baby_age, price_tier_id
        )
        session_id = session.session_id
        customer = db.session.get(Customer, customer_id)
        if customer is None:
            raise NotFound("Customer not found")

        channel = self._select_channel(payment_method)
        expiry_at = utc_now() + timedelta(hours=current_app.config.get("PAYMENT_EXPIRY_HOURS", 24))

        reservation = Reservation(
            customer_id=customer.customer_id,
            service_id=service.service_id,
            staff_id=session.staff_id,
            session_id=session_id,
            locked_session_id=session_id,
            price_tier_id=tier.tier_id if tier else None,
            baby_name=baby_name,
            baby_age=age,
            parent_names=parent_names,
            notes=notes,
            total_price=total_price,
            status=RESERVATION_PENDING,
        )
        reservation.payment = Payment(
            amount=total_price,
            method=payment_method,
            status=PAYMENT_PENDING,
            expiry_at=expiry_at,
        )
        self._insert_booking(reservation)

        reservation_id = reservation.reservation_id
        payment = reservation.payment
        log.info("Reservation %s created for session %s", reservation_id, session_id)

        try:
            transaction = self.gateway.create_transaction({
                "reservation_id": reservation_id,
                "customer_name": customer.name,
                "customer_email": customer.email,
                "customer_phone": normalize_phone(customer.phone_number),
                "payment_method": payment_method,
                "amount": total_price,
                "service_name": service.name,
                "expiry_at": expiry_at,
            })
        except Exception:
            self._discard(reservation_id, session_id)
            raise

        payment.transaction_reference = transaction["reference"]
        payment.checkout_url = transaction.get("checkout_url")
        payment.instructions = transaction.get("instructions") or []
        payment.provider_response = transaction
        payment.merchant_fee = _decimal_or_none(transaction.get("fee_merchant"))
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            log.exception("Failed to store transaction %s for reservation %s", transaction["reference"], reservation_id)
            raise

        self.scheduler.schedule_expiry(payment.payment_id, payment.expiry_at)
        self.events.publish(
            ReservationCreated(
                reservation_id=reservation_id,
                customer_id=customer.customer_id,
                payment_id=payment.payment_id,
                baby_name=reservation.baby_name,
                service_name=service.name,
                total_price=float(total_price),
                payment_method=payment_method,
            )
        )

        fee = _channel_fee(channel)
        return {
            "reservation": reservation.to_dict(),
            "payment": {
                **self._payment_summary(payment),
                "fee": calculate_payment_fee(float(total_price), fee["flat"], fee["percent"]),
            },
        }

    def _find_or_create_manual_customer(self, name: str, phone: str) -> Customer:
        normalized = normalize_phone(phone)
        customer = repository.get_customer_by_phone(phone.strip(), normalized)
        if customer is not None:
            return customer

        digits = re.sub(r"\D", "", normalized)
        customer = Customer(
            name=name.strip(),
            email=f"manual_{digits}_{secrets.token_hex(4)}@spa.manual",
            phone_number=normalized,
            is_manual=True,
        )
        db.session.add(customer)
        return customer

    def create_manual_reservation(
        self,
        customer_name: str,
        customer_phone: str,
        service_id: object,
        session_id: object,
        baby_name: str,
        baby_age: object,
        price_tier_id: object = None,
        parent_names: str | None = None,
        notes: str | None = None,
        payment_method: str | None = None,
        is_paid: object = False,
        payment_notes: str | None = None,
    ) -> dict[str, object]:
        """Book a session on behalf of a walk-in or phone customer.

        Uses the same session lock as online bookings but opens no gateway
        transaction. Paid bookings are confirmed at once; unpaid ones get
        an expiry timer like any other pending payment.
        """
        required = {
            "customer_name": customer_name,
            "customer_phone": customer_phone,
            "service_id": service_id,
            "session_id": session_id,
            "baby_name": baby_name,
            "baby_age": baby_age,
        }
        missing = [name for name, value in required.items() if value is None or value == ""]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        paid = _parse_flag("is_paid", is_paid)
        method = (payment_method or "CASH").strip().upper()

        service, session, age, total_price, tier = self._resolve_booking(
            service_id, session_id, baby_age, price_tier_id
        )
        session_id = session.session_id
        customer = self._find_or_create_manual_customer(str(customer_name), str(customer_phone))

        now = utc_now()
        reservation = Reservation(
            customer=customer,
            service_id=service.service_id,
            staff_id=session.staff_id,
            session_id=session_id,
            locked_session_id=session_id,
            price_tier_id=tier.tier_id if tier else None,
            baby_name=baby_name.strip(),
            baby_age=age,
            parent_names=parent_names.strip() if parent_names else None,
            notes=notes,
            total_price=total_price,
            status=RESERVATION_CONFIRMED if paid else RESERVATION_PENDING,
            reservation_type=RESERVATION_MANUAL,
        )
        reservation.payment = Payment(
            amount=total_price,
            method=method,
            status=PAYMENT_PAID if paid else PAYMENT_PENDING,
            notes=payment_notes.strip() if payment_notes else None,
            paid_at=now if paid else None,
            expiry_at=now + timedelta(hours=current_app.config.get("PAYMENT_EXPIRY_HOURS", 24)),
        )
        self._insert_booking(reservation)

        payment = reservation.payment
        log.info(
            "Manual reservation %s created for session %s (%s)",
            reservation.reservation_id,
            session_id,
            reservation.status,
        )
        if not paid:
            self.scheduler.schedule_expiry(payment.payment_id, payment.expiry_at)
        self.events.publish(
            ManualReservationCreated(
                reservation_id=reservation.reservation_id,
                customer_id=customer.customer_id,
                baby_name=reservation.baby_name,
                service_name=service.name,
                status=reservation.status,
            )
        )
        return {
            "reservation": reservation.to_dict(),
            "payment": self._payment_summary(payment),
        }

    # --- reads -------------------------------------------------------------

    def get_reservation(self, reservation_id: int, customer_id: int | None = None) -> Reservation:
        reservation = db.session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFound("Reservation not found")
        if customer_id is not None and reservation.customer_id != customer_id:
            raise Forbidden("You can only access your own reservations")
        return reservation

    def list_reservations(
        self,
        customer_id: int | None = None,
        staff_id: object = None,
        status: object = None,
        start_date: object = None,
        end_date: object = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, object]:
        """Page through reservations; ``status`` may be a comma-separated list."""
        statuses = None
        if status:
            statuses = [value.strip().upper() for value in str(status).split(",") if value.strip()]
            unknown = [value for value in statuses if value not in RESERVATION_STATUSES]
            if unknown:
                raise ValidationError(f"Unknown status: {', '.join(unknown)}")
        first_day = _parse_date("start_date", start_date)
        last_day = _parse_date("end_date", end_date)
        if first_day and last_day and last_day < first_day:
            raise ValidationError("end_date must not be before start_date")

        query = repository.reservations_query(
            customer_id=customer_id,
            staff_id=_parse_id("staff_id", staff_id) if staff_id not in (None, "") else None,
            statuses=statuses,
            starts_from=_day_start(first_day),
            starts_before=_day_start(last_day + timedelta(days=1)) if last_day else None,
        )
        total = query.count()
        reservations = query.limit(limit).offset((page - 1) * limit).all()
        return {
            "reservations": [
                {**reservation.to_dict(), "payment": reservation.payment.to_dict() if reservation.payment else None}
                for reservation in reservations
            ],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    @staticmethod
    def _payment_summary(payment: Payment) -> dict[str, object]:
        return {
            **payment.to_dict(),
            "payment_method_name": format_payment_method_name(payment.method),
            "category": payment_method_category(payment.method),
            "time_left": format_time_left(payment.expiry_at) if payment.status == PAYMENT_PENDING else None,
        }

    def get_payment_details(self, reservation_id: int, customer_id: int | None = None) -> dict[str, object]:
        """Return payment state, refreshing a pending payment from the gateway."""
        reservation = self.get_reservation(reservation_id, customer_id)
        payment = reservation.payment
        if payment is None:
            raise NotFound("Payment not found")

        if payment.status == PAYMENT_PENDING and payment.transaction_reference:
            try:
                detail = self.gateway.get_transaction_detail(payment.transaction_reference)
            except GatewayError as exc:
                log.warning("Could not refresh payment %s: %s", payment.payment_id, exc.message)
            else:
                status = ProviderStatus.parse(detail.get("status"))
                if status in OUTCOMES:
                    self.callbacks.settle(payment, status, detail, _decimal_or_none(detail.get("fee_merchant")))

        return {
            "reservation_id": reservation.reservation_id,
            "reservation_status": reservation.status,
            "payment": self._payment_summary(payment),
        }

    def payment_methods(self) -> list[dict[str, object]]:
        channels = self.gateway.list_channels(retries=3)
        return [
            {
                "code": channel.get("code"),
                "name": format_payment_method_name(channel.get("code", "")),
                "provider_name": channel.get("name"),
                "group": channel.get("group"),
                "category": payment_method_category(channel.get("code", "")),
                "fee": _channel_fee(channel),
                "icon_url": channel.get("icon_url"),
                "supports_qr": supports_qr_code(channel.get("code", "")),
            }
            for channel in channels
            if channel.get("active", True)
        ]

    # --- owner actions -----------------------------------------------------

    def update_status(self, reservation_id: int, new_status: object) -> dict[str, object]:
        if new_status not in RESERVATION_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(RESERVATION_STATUSES)}")

        reservation = self.get_reservation(reservation_id)
        current = reservation.status
        if new_status not in OWNER_SETTABLE_STATUSES or not reservation.can_transition_to(new_status):
            raise InvalidTransition(f"Cannot change status from {current} to {new_status}")

        payment = reservation.payment
        payment_pending = payment is not None and payment.status == PAYMENT_PENDING
        session_id = reservation.session_id
        customer_id = reservation.customer_id
        baby_name = reservation.baby_name
        service_name = reservation.service.name if reservation.service else ""

        if new_status == RESERVATION_CANCELLED and payment_pending:
            self.scheduler.cancel_expiry(payment.payment_id)

        try:
            if not repository.transition_reservation(reservation, current, new_status):
                db.session.rollback()
                raise Conflict("Reservation status changed concurrently, please retry")
            if new_status == RESERVATION_CANCELLED:
                if payment_pending:
                    repository.transition_payment(payment, PAYMENT_FAILED)
                repository.sync_session_flag(session_id)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        log.info("Reservation %s moved from %s to %s", reservation_id, current, new_status)
        if new_status == RESERVATION_CANCELLED:
            self.events.publish(
                ReservationCancelled(
                    reservation_id=reservation_id,
                    customer_id=customer_id,
                    baby_name=baby_name,
                    service_name=service_name,
                    reason="cancelled by the spa",
                )
            )
        elif new_status == RESERVATION_COMPLETED:
            self.events.publish(
                ReservationCompleted(
                    reservation_id=reservation_id,
                    customer_id=customer_id,
                    baby_name=baby_name,
                    service_name=service_name,
                )
            )
        return reservation.to_dict()

    def verify_manual_payment(self, payment_id: int, is_verified: object) -> dict[str, object]:
        """Let an owner settle a payment that was confirmed outside the gateway."""
        if not isinstance(is_verified, bool):
            raise ValidationError("isVerified must be a boolean")

        payment = db.session.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.status != PAYMENT_PENDING:
            raise Conflict(f"Payment has already been processed ({payment.status})")

        status = ProviderStatus.PAID if is_verified else ProviderStatus.FAILED
        if not self.callbacks.settle(payment, status):
            raise Conflict("Payment has already been processed")

        log.info("Payment %s manually marked as %s", payment_id, OUTCOMES[status].payment_status)
        return self._payment_summary(payment)

    def update_manual_payment(
        self,
        reservation_id: int,
        payment_method: str | None = None,
        notes: str | None = None,
    ) -> dict[str, object]:
        """Record that a walk-in customer paid at the counter."""
        reservation = self.get_reservation(reservation_id)
        if reservation.reservation_type != RESERVATION_MANUAL:
            raise ValidationError("Only manual reservations can be paid at the counter")
        payment = reservation.payment
        if payment is None:
            raise NotFound("Payment not found")
        if payment.status != PAYMENT_PENDING:
            raise Conflict(f"Payment has already been processed ({payment.status})")

        updates: dict[str, object] = {"method": (payment_method or "CASH").strip().upper()}
        if notes:
            updates["notes"] = notes.strip()
        if not self.callbacks.settle(payment, ProviderStatus.PAID, updates=updates):
            raise Conflict("Payment has already been processed")

        log.info("Manual reservation %s paid by %s", reservation_id, updates["method"])
        return {
            "reservation": reservation.to_dict(),
            "payment": self._payment_summary(payment),
        }
