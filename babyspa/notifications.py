"""Stores in-app notifications and fans them out to push and e-mail."""
from __future__ import annotations

import logging

import requests
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import Customer, Notification, Owner

log = logging.getLogger(__name__)

ONESIGNAL_URL = "https://onesignal.com/api/v1/notifications"
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class NotificationSender:
    """Delivery never raises: every failure is logged and dropped."""

    def __init__(self, session: requests.Session | None = None, timeout: float = 10) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def _store(self, rows: list[Notification]) -> bool:
        try:
            db.session.add_all(rows)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            log.exception("Failed to store %d notification(s)", len(rows))
            return False
        return True

    def notify_customer(
        self,
        customer_id: int,
        title: str,
        message: str,
        kind: str,
        reference_id: int | None = None,
        push: bool = False,
        email: bool = False,
    ) -> None:
        self._store([
            Notification(
                recipient_type="customer",
                recipient_id=customer_id,
                title=title,
                message=message,
                kind=kind,
                reference_id=reference_id,
            )
        ])
        if not (push or email):
            return

        customer = db.session.get(Customer, customer_id)
        if customer is None:
            log.warning("Customer %s not found, skipping delivery of %r", customer_id, title)
            return
        if push:
            self.send_push([customer.one_signal_player_id], title, message, {"reference_id": reference_id})
        if email and customer.email and not customer.is_manual:
            self.send_email(customer.email, title, message)

    def notify_all_owners(
        self,
        title: str,
        message: str,
        kind: str,
        reference_id: int | None = None,
        push: bool = False,
    ) -> None:
        owners = Owner.query.all()
        if not owners:
            log.info("No owners to notify for %r", title)
            return

        self._store([
            Notification(
                recipient_type="owner",
                recipient_id=owner.owner_id,
                title=title,
                message=message,
                kind=kind,
                reference_id=reference_id,
            )
            for owner in owners
        ])
        if push:
            self.send_push(
                [owner.one_signal_player_id for owner in owners],
                title,
                message,
                {"reference_id": reference_id},
            )

    def send_push(self, player_ids: list[str | None], title: str, message: str, data: dict | None = None) -> bool:
        player_ids = [player_id for player_id in player_ids if player_id]
        app_id = current_app.config.get("ONESIGNAL_APP_ID")
        api_key = current_app.config.get("ONESIGNAL_API_KEY")
        if not player_ids or not app_id or not api_key:
            log.debug("Push skipped for %r", title)
            return False

        try:
            response = self.session.post(
                ONESIGNAL_URL,
                json={
                    "app_id": app_id,
                    "include_player_ids": player_ids,
                    "headings": {"en": title},
                    "contents": {"en": message},
                    "data": data or {},
                },
                headers={"Authorization": f"Basic {api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException:
            log.exception("Push notification %r failed", title)
            return False
        return True

    def send_email(self, to_address: str, subject: str, body: str) -> bool:
        api_key = current_app.config.get("SENDGRID_API_KEY")
        if not api_key:
            log.debug("E-mail skipped for %r", subject)
            return False

        try:
            response = self.session.post(
                SENDGRID_URL,
                json={
                    "personalizations": [{"to": [{"email": to_address}]}],
                    "from": {"email": current_app.config.get("SENDGRID_FROM_EMAIL")},
                    "subject": subject,
                    "content": [{"type": "text/plain", "value": body}],
                },
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException:
            log.exception("E-mail %r to %s failed", subject, to_address)
            return False
        return True
