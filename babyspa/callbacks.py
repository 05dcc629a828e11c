"""Payment gateway webhook handling and the shared settlement routine."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Mapping

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from . import repository
from .errors import ValidationError
from .events import PaymentConfirmed, PaymentExpired, ReservationCancelled
from .extensions import db
from .models import (PAYMENT_EXPIRED, PAYMENT_FAILED, PAYMENT_PAID,
                     PAYMENT_PENDING, PAYMENT_REFUNDED, RESERVATION_CANCELLED,
                     RESERVATION_CONFIRMED, RESERVATION_EXPIRED, Payment,
                     utc_now)

if TYPE_CHECKING:
    from .events import EventBus
    from .scheduler import PaymentExpiryScheduler
    from .tripay import TripayClient

log = logging.getLogger(__name__)


class ProviderStatus(str, enum.Enum):
    PAID = "PAID"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"
    REFUND = "REFUND"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: object) -> "ProviderStatus":
        try:
            status = cls(str(raw).strip().upper())
        except ValueError:
            return cls.UNKNOWN
        return status


def _decimal_or_none(value: object) -> Decimal | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


@dataclass(frozen=True)
class CallbackPayload:
    reference: str
    merchant_ref: str
    status: ProviderStatus
    raw_status: str
    total_amount: Decimal | None = None
    fee_customer: Decimal | None = None
    fee_merchant: Decimal | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def decode(cls, data: object) -> "CallbackPayload":
        if not isinstance(data, dict):
            raise ValidationError("Callback body must be a JSON object")
        reference = data.get("reference")
        raw_status = data.get("status")
        if not reference or not raw_status:
            raise ValidationError("Missing reference or status")

        return cls(
            reference=str(reference),
            merchant_ref=str(data.get("merchant_ref") or ""),
            status=ProviderStatus.parse(raw_status),
            raw_status=str(raw_status),
            total_amount=_decimal_or_none(data.get("total_amount")),
            fee_customer=_decimal_or_none(data.get("fee_customer")),
            fee_merchant=_decimal_or_none(data.get("fee_merchant")),
            raw=dict(data),
        )

    @property
    def order_amount(self) -> Decimal | None:
        """Amount the order was opened for; ``total_amount`` includes the customer fee."""
        if self.total_amount is None:
            return None
        return self.total_amount - (self.fee_customer or Decimal("0"))


@dataclass(frozen=True)
class Outcome:
    payment_status: str
    reservation_status: str
    release_session: bool


OUTCOMES: dict[ProviderStatus, Outcome] = {
    ProviderStatus.PAID: Outcome(PAYMENT_PAID, RESERVATION_CONFIRMED, release_session=False),
    ProviderStatus.EXPIRED: Outcome(PAYMENT_EXPIRED, RESERVATION_EXPIRED, release_session=True),
    ProviderStatus.FAILED: Outcome(PAYMENT_FAILED, RESERVATION_CANCELLED, release_session=True),
    ProviderStatus.REFUND: Outcome(PAYMENT_REFUNDED, RESERVATION_CANCELLED, release_session=True),
}


class CallbackHandler:
    def __init__(
        self,
        gateway: "TripayClient",
        scheduler: "PaymentExpiryScheduler",
        events: "EventBus",
    ) -> None:
        self.gateway = gateway
        self.scheduler = scheduler
        self.events = events

    def _signature_valid(self, callback: CallbackPayload, raw_body: bytes, header_signature: str | None) -> bool:
        if current_app.config.get("CALLBACK_SIGNATURE_SCHEME") == "body":
            return self.gateway.verify_body_signature(header_signature, raw_body)
        return self.gateway.verify_signature(
            header_signature, callback.merchant_ref, callback.reference, callback.raw_status
        )

    def handle(
        self,
        raw_body: bytes,
        payload: object,
        header_signature: str | None,
    ) -> tuple[dict[str, object], int]:
        """Process one webhook delivery and return the response body and status.

        Anything past decoding is acknowledged with 200 so the provider stops
        retrying; failures are visible in the logs instead.
        """
        try:
            callback = CallbackPayload.decode(payload)
        except ValidationError as exc:
            log.warning("Rejected malformed payment callback: %s", exc.message)
            return {"success": False, "message": exc.message}, 400

        log.info("Payment callback for %s with status %s", callback.reference, callback.raw_status)

        if current_app.config.get("VERIFY_CALLBACK_SIGNATURE") and not self._signature_valid(
            callback, raw_body, header_signature
        ):
            log.error("Invalid callback signature for reference %s", callback.reference)
            return {"success": False, "message": "Invalid signature"}, 200

        try:
            return self._process(callback)
        except Exception:
            db.session.rollback()
            log.exception("Failed to process payment callback for %s", callback.reference)
            return {"success": False, "message": "Callback accepted"}, 200

    def _process(self, callback: CallbackPayload) -> tuple[dict[str, object], int]:
        payment = repository.get_payment_by_reference(callback.reference)
        if payment is None:
            log.error("Payment callback for unknown reference %s", callback.reference)
            return {"success": False, "message": "Payment not found"}, 200

        if payment.status != PAYMENT_PENDING:
            log.info("Payment %s already %s, ignoring callback", payment.payment_id, payment.status)
            return {"success": True, "message": "Payment already processed"}, 200

        if callback.status is ProviderStatus.UNKNOWN:
            log.warning("Ignoring unknown callback status %r for %s", callback.raw_status, callback.reference)
            return {"success": True, "message": "Status ignored"}, 200

        order_amount = callback.order_amount
        if order_amount is not None and order_amount != payment.amount:
            log.error(
                "Callback amount %s does not match payment %s amount %s",
                order_amount,
                payment.payment_id,
                payment.amount,
            )
            return {"success": True, "message": "Amount mismatch"}, 200

        if not self.settle(payment, callback.status, callback.raw, callback.fee_merchant):
            return {"success": True, "message": "Payment already processed"}, 200

        return {"success": True, "message": "Callback processed successfully"}, 200

    def settle(
        self,
        payment: Payment,
        status: ProviderStatus,
        provider_payload: Mapping[str, Any] | None = None,
        merchant_fee: Decimal | None = None,
        updates: Mapping[str, object] | None = None,
    ) -> bool:
        """Apply a provider status to a pending payment and its reservation.

        ``updates`` are extra payment columns written in the same conditional
        update. Returns False when another path settled the payment first.
        """
        outcome = OUTCOMES[status]
        reservation = payment.reservation
        payment_id = payment.payment_id
        session_id = reservation.session_id
        service_name = reservation.service.name if reservation.service else ""

        self.scheduler.cancel_expiry(payment_id)

        values: dict[str, object] = dict(updates or {})
        if provider_payload is not None:
            values["provider_response"] = dict(provider_payload)
        if merchant_fee is not None:
            values["merchant_fee"] = merchant_fee
        if outcome.payment_status == PAYMENT_PAID:
            values["paid_at"] = utc_now()

        try:
            if not repository.transition_payment(payment, outcome.payment_status, **values):
                db.session.rollback()
                log.info("Payment %s was settled concurrently", payment_id)
                return False

            current = reservation.status
            if reservation.can_transition_to(outcome.reservation_status):
                moved = repository.transition_reservation(reservation, current, outcome.reservation_status)
                if moved and outcome.release_session:
                    repository.sync_session_flag(session_id)
            else:
                log.warning(
                    "Reservation %s is %s, not moving it to %s",
                    reservation.reservation_id,
                    current,
                    outcome.reservation_status,
                )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        log.info("Payment %s settled as %s", payment_id, outcome.payment_status)
        self.events.publish(self._event_for(status, reservation, payment_id, service_name))
        return True

    @staticmethod
    def _event_for(status: ProviderStatus, reservation, payment_id: int, service_name: str) -> object:
        if status is ProviderStatus.PAID:
            return PaymentConfirmed(
                reservation_id=reservation.reservation_id,
                customer_id=reservation.customer_id,
                payment_id=payment_id,
                baby_name=reservation.baby_name,
                service_name=service_name,
                amount=float(reservation.total_price),
            )
        if status is ProviderStatus.EXPIRED:
            return PaymentExpired(
                reservation_id=reservation.reservation_id,
                customer_id=reservation.customer_id,
                payment_id=payment_id,
                baby_name=reservation.baby_name,
                service_name=service_name,
            )
        reason = "payment refunded" if status is ProviderStatus.REFUND else "payment failed"
        return ReservationCancelled(
            reservation_id=reservation.reservation_id,
            customer_id=reservation.customer_id,
            baby_name=reservation.baby_name,
            service_name=service_name,
            reason=reason,
        )
