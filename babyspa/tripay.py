"""Client for the Tripay payment gateway HTTP API."""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import requests

from .errors import (GatewayUnavailable, TransactionCreationFailed,
                     TransactionNotFound, ValidationError)

log = logging.getLogger(__name__)

ORDER_FIELDS = (
    "reservation_id",
    "customer_name",
    "customer_email",
    "customer_phone",
    "payment_method",
    "amount",
    "service_name",
)

TRANSACTION_TTL_SECONDS = 24 * 60 * 60


def _hmac_sha256(message: str, private_key: str) -> str:
    return hmac.new(private_key.strip().encode(), message.encode(), hashlib.sha256).hexdigest()


def format_amount(amount: Decimal) -> str:
    """Render an amount the way it is signed: no trailing zeros, no exponent."""
    if amount == amount.to_integral_value():
        return str(int(amount))
    return format(amount.normalize(), "f")


def parse_amount(value: object) -> Decimal:
    """Return ``value`` as a positive Decimal with at most two decimal places."""
    if isinstance(value, bool):
        raise ValidationError("Invalid payment amount")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("Invalid payment amount") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Invalid payment amount")
    if amount != amount.quantize(Decimal("0.01")):
        raise ValidationError("Payment amount may have at most two decimal places")
    return amount


def expiry_timestamp(expiry_at: datetime | None) -> int:
    """Unix time the provider should close the transaction at."""
    if expiry_at is None:
        return int(time.time()) + TRANSACTION_TTL_SECONDS
    if expiry_at.tzinfo is None:
        expiry_at = expiry_at.replace(tzinfo=timezone.utc)
    return int(expiry_at.timestamp())


def sign_transaction(merchant_code: str, merchant_ref: str, amount: Decimal, private_key: str) -> str:
    return _hmac_sha256(f"{merchant_code}{merchant_ref}{format_amount(amount)}", private_key)


def sign_callback(merchant_ref: str, reference: str, status: str, private_key: str) -> str:
    return _hmac_sha256(f"{merchant_ref}{reference}{status}", private_key)


class TripayClient:
    """Thin wrapper over the Tripay merchant API.

    GET calls are retried on transport errors and 5xx responses.
    Transaction creation is never retried: a second POST could open a
    duplicate transaction at the provider.
    """

    def __init__(
        self,
        api_key: str,
        private_key: str,
        merchant_code: str,
        base_url: str,
        callback_url: str,
        frontend_url: str = "http://localhost:5173",
        merchant_ref_prefix: str = "BABYSPA",
        timeout: float = 10,
        create_timeout: float = 15,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.private_key = (private_key or "").strip()
        self.merchant_code = merchant_code
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self.frontend_url = frontend_url.rstrip("/")
        self.merchant_ref_prefix = merchant_ref_prefix
        self.timeout = timeout
        self.create_timeout = create_timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "TripayClient":
        production = config.get("TRIPAY_MODE") == "production"
        return cls(
            api_key=config.get("TRIPAY_API_KEY", ""),
            private_key=config.get("TRIPAY_PRIVATE_KEY", ""),
            merchant_code=config.get("TRIPAY_MERCHANT_CODE", ""),
            base_url=config["TRIPAY_API_URL_PRODUCTION"] if production else config["TRIPAY_API_URL"],
            callback_url=config.get("TRIPAY_CALLBACK_URL", ""),
            frontend_url=config.get("FRONTEND_URL", "http://localhost:5173"),
            merchant_ref_prefix=config.get("TRIPAY_MERCHANT_REF_PREFIX", "BABYSPA"),
            timeout=config.get("TRIPAY_TIMEOUT", 10),
            create_timeout=config.get("TRIPAY_CREATE_TIMEOUT", 15),
        )

    # --- helpers -----------------------------------------------------------

    def _ensure_configured(self) -> None:
        missing = [
            name
            for name, value in (
                ("TRIPAY_API_KEY", self.api_key),
                ("TRIPAY_PRIVATE_KEY", self.private_key),
                ("TRIPAY_MERCHANT_CODE", self.merchant_code),
            )
            if not value
        ]
        if missing:
            log.error("Tripay is not configured, missing: %s", ", ".join(missing))
            raise GatewayUnavailable("Payment gateway is not configured")

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def merchant_ref(self, reservation_id: object) -> str:
        return f"{self.merchant_ref_prefix}-{reservation_id}"

    def _get(self, path: str, params: dict[str, str] | None, retries: int) -> requests.Response:
        """GET with immediate retry on transient failures."""
        attempts = max(0, retries) + 1
        last_error = "unknown error"
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.get(
                    f"{self.base_url}{path}",
                    params=params,
                    headers=self._headers,
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                last_error = str(exc) or exc.__class__.__name__
            else:
                if response.status_code < 500:
                    return response
                last_error = f"HTTP {response.status_code}"
            if attempt < attempts:
                log.warning("Tripay GET %s failed (%s), retrying, %d attempt(s) left", path, last_error, attempts - attempt)

        log.error("Tripay GET %s failed after %d attempt(s): %s", path, attempts, last_error)
        raise GatewayUnavailable("Payment service is temporarily unavailable", details=last_error)

    @staticmethod
    def _body(response: requests.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    # --- API ---------------------------------------------------------------

    def list_channels(self, retries: int = 2) -> list[dict[str, Any]]:
        """Return the merchant's payment channels."""
        self._ensure_configured()
        response = self._get("/merchant/payment-channel", None, retries)
        body = self._body(response)
        if response.status_code >= 400 or not body.get("success"):
            log.error("Tripay rejected payment channel request: %s", body.get("message"))
            raise GatewayUnavailable(body.get("message") or "Failed to get payment channels")

        channels = body.get("data") or []
        log.info("Tripay returned %d payment channel(s)", len(channels))
        return channels

    def create_transaction(self, order: Mapping[str, Any]) -> dict[str, Any]:
        """Open a closed-payment transaction for a reservation.

        ``order`` carries reservation_id, customer_name, customer_email,
        customer_phone, payment_method, amount and service_name, plus an
        optional ``expiry_at`` that becomes the provider's ``expired_time``.
        Returns the provider's transaction record, which holds ``reference``
        and ``checkout_url``.
        """
        self._ensure_configured()

        missing = [field for field in ORDER_FIELDS if order.get(field) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required payment data: {', '.join(missing)}")

        amount = parse_amount(order["amount"])
        merchant_ref = self.merchant_ref(order["reservation_id"])
        expired_time = expiry_timestamp(order.get("expiry_at"))
        amount_value: int | float = int(amount) if amount == amount.to_integral_value() else float(amount)

        payload = {
            "method": order["payment_method"],
            "merchant_ref": merchant_ref,
            "amount": amount_value,
            "customer_name": order["customer_name"],
            "customer_email": order["customer_email"],
            "customer_phone": order["customer_phone"],
            "order_items": [
                {"name": order["service_name"], "price": amount_value, "quantity": 1},
            ],
            "callback_url": self.callback_url,
            "return_url": f"{self.frontend_url}/payment/status?reservation_id={order['reservation_id']}",
            "expired_time": expired_time,
            "signature": sign_transaction(self.merchant_code, merchant_ref, amount, self.private_key),
        }

        log.info("Creating Tripay transaction %s for amount %s", merchant_ref, format_amount(amount))
        try:
            response = self.session.post(
                f"{self.base_url}/transaction/create",
                json=payload,
                headers=self._headers,
                timeout=self.create_timeout,
            )
        except requests.RequestException as exc:
            log.error("Tripay transaction create for %s failed: %s", merchant_ref, exc)
            raise GatewayUnavailable(
                "Payment service is temporarily unavailable. Please try again in a few minutes."
            ) from exc

        body = self._body(response)
        data = body.get("data") if isinstance(body.get("data"), dict) else None
        if response.status_code >= 400 or not body.get("success") or not data or not data.get("reference"):
            message = body.get("message") or f"HTTP {response.status_code}"
            log.error("Tripay rejected transaction %s: %s", merchant_ref, message)
            raise TransactionCreationFailed(f"Failed to create payment transaction: {message}")

        data.setdefault("instructions", [])
        log.info("Tripay transaction created: %s", data["reference"])
        return data

    def get_transaction_detail(self, reference: str, retries: int = 2) -> dict[str, Any]:
        if not reference:
            raise ValidationError("Transaction reference is required")
        self._ensure_configured()

        response = self._get("/transaction/detail", {"reference": reference}, retries)
        body = self._body(response)
        if response.status_code == 404 or not body.get("success") or not body.get("data"):
            raise TransactionNotFound(body.get("message") or f"Transaction {reference} not found")
        return body["data"]

    def verify_signature(self, header_signature: str | None, merchant_ref: str, reference: str, status: str) -> bool:
        """Check a callback signature computed over merchant_ref + reference + status."""
        if not header_signature or not self.private_key:
            return False
        expected = sign_callback(merchant_ref or "", reference or "", status or "", self.private_key)
        valid = hmac.compare_digest(expected.encode(), header_signature.strip().encode())
        if not valid:
            log.warning("Callback signature mismatch for reference %s", reference)
        return valid

    def verify_body_signature(self, header_signature: str | None, raw_body: bytes | str) -> bool:
        """Check a callback signature computed over the raw JSON body."""
        if not header_signature or not self.private_key or not raw_body:
            return False
        message = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        expected = _hmac_sha256(message, self.private_key)
        return hmac.compare_digest(expected.encode(), header_signature.strip().encode())
