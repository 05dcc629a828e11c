from __future__ import annotations

import logging
from collections.abc import Mapping

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .callbacks import CallbackHandler
from .config import Config
from .errors import AppError
from .events import EventBus, NotificationConsumer
from .extensions import Services, db, get_services
from .notifications import NotificationSender
from .reservations import ReservationService
from .routes import register_routes
from .scheduler import PaymentExpiryScheduler
from .tripay import TripayClient

__all__ = ["create_app", "db", "start_background_services"]


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    app.logger.setLevel(level)
    logging.getLogger(__name__).setLevel(level)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AppError)
    def handle_app_error(exc: AppError):
        if exc.status_code >= 500:
            app.logger.error("%s: %s", exc.code, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        db.session.rollback()
        app.logger.exception("Unhandled error", exc_info=exc)
        body = {"error": "server_error", "message": "An unexpected error occurred"}
        if app.config.get("APP_ENV") == "development":
            body["details"] = str(exc)
        return jsonify(body), 500


def _build_services(app: Flask) -> Services:
    gateway = TripayClient.from_config(app.config)
    events = EventBus()
    scheduler = PaymentExpiryScheduler(app, events)
    callbacks = CallbackHandler(gateway, scheduler, events)
    reservations = ReservationService(gateway, scheduler, events, callbacks)
    events.subscribe(NotificationConsumer(NotificationSender()))
    return Services(
        gateway=gateway,
        events=events,
        scheduler=scheduler,
        reservations=reservations,
        callbacks=callbacks,
    )


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_object(Config)
    if isinstance(config_object, Mapping):
        app.config.update(config_object)
    elif config_object is not None:
        app.config.from_object(config_object)
    app.config.from_envvar("APP_SETTINGS", silent=True)

    _configure_logging(app)
    db.init_app(app)

    # Allow frontend to talk to backend
    CORS(app,
         origins=["*"],
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization", "X-Callback-Signature"],
         methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    )

    app.extensions["babyspa"] = _build_services(app)
    _register_error_handlers(app)
    register_routes(app)

    return app


def start_background_services(app: Flask) -> None:
    """Re-arm expiry timers from the database and start the event consumer."""
    with app.app_context():
        services = get_services()
        services.scheduler.initialize_from_store()
    services.events.start(app)
