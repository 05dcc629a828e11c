"""Shared Flask extensions for the application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from flask import current_app
from flask_sqlalchemy import SQLAlchemy

if TYPE_CHECKING:
    from .callbacks import CallbackHandler
    from .events import EventBus
    from .reservations import ReservationService
    from .scheduler import PaymentExpiryScheduler
    from .tripay import TripayClient

# SQLAlchemy database instance shared across the app.
db = SQLAlchemy()


@dataclass
class Services:
    """Per-app collaborators wired by ``create_app``."""

    gateway: "TripayClient"
    events: "EventBus"
    scheduler: "PaymentExpiryScheduler"
    reservations: "ReservationService"
    callbacks: "CallbackHandler"


def get_services() -> Services:
    return current_app.extensions["babyspa"]
