"""Environment-driven settings for the baby-spa backend."""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///babyspa.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    APP_ENV = os.environ.get("APP_ENV", "development")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    AUTH_TOKEN_MAX_AGE = _env_int("AUTH_TOKEN_MAX_AGE", 86400)

    # Tripay
    TRIPAY_MODE = os.environ.get("TRIPAY_MODE", "sandbox")
    TRIPAY_API_KEY = os.environ.get("TRIPAY_API_KEY", "")
    # Stripped once here; a trailing newline in the key breaks every signature.
    TRIPAY_PRIVATE_KEY = os.environ.get("TRIPAY_PRIVATE_KEY", "").strip()
    TRIPAY_MERCHANT_CODE = os.environ.get("TRIPAY_MERCHANT_CODE", "")
    TRIPAY_API_URL = os.environ.get("TRIPAY_API_URL", "https://tripay.co.id/api-sandbox")
    TRIPAY_API_URL_PRODUCTION = os.environ.get("TRIPAY_API_URL_PRODUCTION", "https://tripay.co.id/api")
    TRIPAY_CALLBACK_URL = os.environ.get(
        "TRIPAY_CALLBACK_URL", "http://localhost:5000/payment/callback"
    )
    TRIPAY_MERCHANT_REF_PREFIX = os.environ.get("TRIPAY_MERCHANT_REF_PREFIX", "BABYSPA")
    TRIPAY_TIMEOUT = _env_int("TRIPAY_TIMEOUT", 10)
    TRIPAY_CREATE_TIMEOUT = _env_int("TRIPAY_CREATE_TIMEOUT", 15)
    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")

    PAYMENT_EXPIRY_HOURS = _env_int("PAYMENT_EXPIRY_HOURS", 24)
    CALLBACK_SIGNATURE_SCHEME = os.environ.get("CALLBACK_SIGNATURE_SCHEME", "fields")
    VERIFY_CALLBACK_SIGNATURE = _env_bool("VERIFY_CALLBACK_SIGNATURE", APP_ENV == "production")

    # Shared secret for the externally triggered expiry sweep.
    SCHEDULER_SECRET = os.environ.get("SCHEDULER_SECRET", "")

    # Push (OneSignal) and e-mail (SendGrid) delivery; both optional.
    ONESIGNAL_APP_ID = os.environ.get("ONESIGNAL_APP_ID", "")
    ONESIGNAL_API_KEY = os.environ.get("ONESIGNAL_API_KEY", "")
    SENDGRID_API_KEY = os.environ.get("SENDGRID_API_KEY", "")
    SENDGRID_FROM_EMAIL = os.environ.get("SENDGRID_FROM_EMAIL", "noreply@babyspa.local")


class TestingConfig(Config):
    TESTING = True
    APP_ENV = "testing"
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    TRIPAY_API_KEY = "test-api-key"
    TRIPAY_PRIVATE_KEY = "test-private-key"
    TRIPAY_MERCHANT_CODE = "T0001"
    VERIFY_CALLBACK_SIGNATURE = False
    SCHEDULER_SECRET = "cron-secret"
    ONESIGNAL_APP_ID = ""
    ONESIGNAL_API_KEY = ""
    SENDGRID_API_KEY = ""
