"""Formatting helpers for gateway payment channels."""
from __future__ import annotations

import math
import re
from datetime import datetime

from .models import as_utc, utc_now

PAYMENT_METHOD_NAMES = {
    "BRIVA": "BRI Virtual Account",
    "BNIVA": "BNI Virtual Account",
    "BSIVA": "BSI Virtual Account",
    "MANDIRIVA": "Mandiri Virtual Account",
    "PERMATAVA": "Permata Virtual Account",
    "ALFAMART": "Alfamart",
    "ALFAMIDI": "Alfamidi",
    "OVO": "OVO",
    "DANA": "DANA",
    "SHOPEEPAY": "ShopeePay",
    "LINKAJA": "LinkAja",
    "GOPAY": "GoPay",
    "QRIS": "QRIS",
    "QRISC": "QRIS Customized",
    "QRISCVN": "QRIS CVN",
}

E_WALLETS = {"OVO", "DANA", "SHOPEEPAY", "LINKAJA", "GOPAY"}
QR_CODES = {"QRIS", "QRISC", "QRISCVN"}
RETAIL_OUTLETS = {"ALFAMART", "ALFAMIDI"}


def format_payment_method_name(code: str) -> str:
    return PAYMENT_METHOD_NAMES.get(code, code)


def payment_method_category(code: str) -> str:
    if "VA" in code:
        return "virtual_account"
    if code in E_WALLETS:
        return "e_wallet"
    if code in QR_CODES:
        return "qr_code"
    if code in RETAIL_OUTLETS:
        return "convenience_store"
    return "other"


def supports_qr_code(code: str) -> bool:
    return code in QR_CODES or code in E_WALLETS


def calculate_payment_fee(amount: float, fee_flat: float = 0, fee_percent: float = 0) -> dict[str, float]:
    """Split a channel fee into flat and percentage parts; the percentage rounds up."""
    percent_fee = math.ceil(amount * fee_percent / 100)
    total_fee = fee_flat + percent_fee
    return {
        "base_amount": amount,
        "fee_flat": fee_flat,
        "fee_percent": percent_fee,
        "total_fee": total_fee,
        "total_amount": amount + total_fee,
    }


def normalize_phone(phone: str) -> str:
    """Convert local Indonesian numbers (08xx, 8xx, 62xx) to +62 form."""
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if cleaned.startswith("08"):
        cleaned = "628" + cleaned[2:]
    if cleaned.startswith("8"):
        cleaned = "628" + cleaned[1:]
    if cleaned.startswith("62"):
        cleaned = "+" + cleaned
    return cleaned


def format_time_left(expiry_at: datetime | None, now: datetime | None = None) -> dict[str, object]:
    if expiry_at is None:
        return {"expired": False, "time_left": None, "hours": None, "minutes": None}

    now = now or utc_now()
    remaining = (as_utc(expiry_at) - now).total_seconds()
    if remaining <= 0:
        return {"expired": True, "time_left": "Expired", "hours": 0, "minutes": 0}

    hours = int(remaining // 3600)
    minutes = int(remaining % 3600 // 60)
    return {
        "expired": False,
        "time_left": f"{hours}h {minutes}m",
        "hours": hours,
        "minutes": minutes,
        "total_minutes": int(remaining // 60),
    }
