"""Bearer tokens for customers and owners."""
from __future__ import annotations

from dataclasses import dataclass

from flask import current_app, request
from itsdangerous import BadSignature, URLSafeTimedSerializer

from .errors import AuthError, Forbidden

ROLE_CUSTOMER = "customer"
ROLE_OWNER = "owner"


@dataclass(frozen=True)
class Identity:
    account_id: int
    role: str

    @property
    def is_owner(self) -> bool:
        return self.role == ROLE_OWNER


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")


def issue_token(account_id: int, role: str) -> str:
    return _serializer().dumps({"account_id": account_id, "role": role})


def current_identity() -> Identity | None:
    """Decode the Authorization header; None when missing, expired or tampered."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None

    try:
        payload = _serializer().loads(
            auth_header[7:],
            max_age=current_app.config.get("AUTH_TOKEN_MAX_AGE", 86400),
        )
    except BadSignature:
        return None

    if not isinstance(payload, dict) or payload.get("role") not in (ROLE_CUSTOMER, ROLE_OWNER):
        return None
    try:
        return Identity(account_id=int(payload["account_id"]), role=payload["role"])
    except (KeyError, TypeError, ValueError):
        return None


def require_identity(*roles: str) -> Identity:
    identity = current_identity()
    if identity is None:
        raise AuthError("Authentication required")
    if roles and identity.role not in roles:
        raise Forbidden("You do not have access to this resource")
    return identity
