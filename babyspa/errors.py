"""Application error taxonomy mapped onto HTTP responses."""
from __future__ import annotations


class AppError(Exception):
    code = "server_error"
    status_code = 500

    def __init__(self, message: str, details: object | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, object]:
        body: dict[str, object] = {"error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    code = "invalid_payload"
    status_code = 400


class AuthError(AppError):
    code = "unauthorized"
    status_code = 401


class Forbidden(AppError):
    code = "forbidden"
    status_code = 403


class NotFound(AppError):
    code = "not_found"
    status_code = 404


class Conflict(AppError):
    code = "conflict"
    status_code = 409


class InvalidTransition(AppError):
    code = "invalid_transition"
    status_code = 400


class PriceUnavailable(AppError):
    code = "price_unavailable"
    status_code = 422


class GatewayError(AppError):
    """Base class for payment gateway failures."""

    code = "payment_error"
    status_code = 502


class GatewayUnavailable(GatewayError):
    code = "payment_unavailable"
    status_code = 503


class TransactionCreationFailed(GatewayError):
    code = "transaction_failed"
    status_code = 422


class TransactionNotFound(GatewayError):
    code = "transaction_not_found"
    status_code = 404
