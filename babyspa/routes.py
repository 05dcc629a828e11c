"""HTTP routes for the baby-spa reservation backend."""
from __future__ import annotations

import hmac

from flask import Blueprint, Flask, current_app, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .auth import ROLE_CUSTOMER, ROLE_OWNER, require_identity
from .extensions import db, get_services

bp = Blueprint("api", __name__)


def _database_error(message: str, exc: SQLAlchemyError):
    db.session.rollback()
    current_app.logger.exception(message, exc_info=exc)
    return jsonify({"error": "database_error", "message": message}), 500


@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
        schema:
          type: object
          properties:
            status:
              type: string
              example: ok
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database.
    ---
    tags:
      - Health
    responses:
      200:
        description: Database connection is ok.
      500:
        description: Database connection failed.
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


@bp.post("/reservations")
def create_reservation() -> tuple[dict[str, object], int]:
    """Book a session and open a payment transaction for it.
    ---
    tags:
      - Reservations
    parameters:
      - name: Authorization
        in: header
        required: true
        type: string
        description: Customer bearer token
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [serviceId, sessionId, babyName, babyAge, paymentMethod]
          properties:
            serviceId:
              type: integer
            sessionId:
              type: integer
            babyName:
              type: string
            babyAge:
              type: integer
              description: Age in months
            priceTierId:
              type: integer
            parentNames:
              type: string
            notes:
              type: string
            paymentMethod:
              type: string
              example: BRIVA
    responses:
      201:
        description: Reservation created, payment pending
      400:
        description: Invalid payload or payment method
      401:
        description: Missing or invalid token
      404:
        description: Service, session or customer not found
      409:
        description: Session already booked
      422:
        description: No price for this age or transaction rejected by the gateway
      503:
        description: Payment gateway unavailable
    """
    identity = require_identity(ROLE_CUSTOMER)
    payload = request.get_json(silent=True) or {}

    try:
        result = get_services().reservations.create_reservation(
            customer_id=identity.account_id,
            service_id=payload.get("serviceId"),
            session_id=payload.get("sessionId"),
            baby_name=payload.get("babyName"),
            baby_age=payload.get("babyAge"),
            payment_method=payload.get("paymentMethod"),
            price_tier_id=payload.get("priceTierId"),
            notes=payload.get("notes"),
            parent_names=payload.get("parentNames"),
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to create reservation", exc)

    return jsonify({"message": "Reservation created, please complete the payment", **result}), 201


@bp.get("/reservations/payment-methods")
def list_payment_methods() -> tuple[dict[str, object], int]:
    """List the payment channels customers can choose from.
    ---
    tags:
      - Payments
    responses:
      200:
        description: Active payment channels
      401:
        description: Missing or invalid token
      503:
        description: Payment gateway unavailable
    """
    require_identity(ROLE_CUSTOMER, ROLE_OWNER)
    methods = get_services().reservations.payment_methods()
    return jsonify({"payment_methods": methods}), 200


def _list_reservations(customer_id: int | None, staff_id: object = None) -> tuple[dict[str, object], int]:
    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = min(50, max(1, int(request.args.get("limit", 10))))
    except (ValueError, TypeError):
        return jsonify({"error": "invalid_parameters", "message": "page and limit must be integers"}), 400

    try:
        result = get_services().reservations.list_reservations(
            customer_id=customer_id,
            staff_id=staff_id,
            status=request.args.get("status"),
            start_date=request.args.get("startDate"),
            end_date=request.args.get("endDate"),
            page=page,
            limit=limit,
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to fetch reservations", exc)

    return jsonify(result), 200


@bp.get("/reservations/customer")
def list_customer_reservations() -> tuple[dict[str, object], int]:
    """List the calling customer's reservations.
    ---
    tags:
      - Reservations
    parameters:
      - name: status
        in: query
        type: string
        description: One status or a comma-separated list
      - name: startDate
        in: query
        type: string
        format: date
      - name: endDate
        in: query
        type: string
        format: date
      - name: page
        in: query
        type: integer
      - name: limit
        in: query
        type: integer
    responses:
      200:
        description: Reservations with pagination
      400:
        description: Invalid filter
      401:
        description: Missing or invalid token
    """
    identity = require_identity(ROLE_CUSTOMER)
    return _list_reservations(identity.account_id)


@bp.get("/reservations/owner")
def list_all_reservations() -> tuple[dict[str, object], int]:
    """List every reservation (owner only), optionally for one staff member.
    ---
    tags:
      - Reservations
    parameters:
      - name: staffId
        in: query
        type: integer
      - name: status
        in: query
        type: string
      - name: startDate
        in: query
        type: string
        format: date
      - name: endDate
        in: query
        type: string
        format: date
      - name: page
        in: query
        type: integer
      - name: limit
        in: query
        type: integer
    responses:
      200:
        description: Reservations with pagination
      400:
        description: Invalid filter
      403:
        description: Caller is not an owner
    """
    require_identity(ROLE_OWNER)
    return _list_reservations(None, staff_id=request.args.get("staffId"))


@bp.post("/reservations/owner/manual")
def create_manual_reservation() -> tuple[dict[str, object], int]:
    """Book a session for a walk-in or phone customer (owner only).
    ---
    tags:
      - Reservations
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [customerName, customerPhone, serviceId, sessionId, babyName, babyAge]
          properties:
            customerName:
              type: string
            customerPhone:
              type: string
            serviceId:
              type: integer
            sessionId:
              type: integer
            babyName:
              type: string
            babyAge:
              type: integer
            priceTierId:
              type: integer
            parentNames:
              type: string
            notes:
              type: string
            paymentMethod:
              type: string
              example: CASH
            isPaid:
              type: boolean
            paymentNotes:
              type: string
    responses:
      201:
        description: Manual reservation created
      400:
        description: Invalid payload
      403:
        description: Caller is not an owner
      404:
        description: Service or session not found
      409:
        description: Session already booked
    """
    require_identity(ROLE_OWNER)
    payload = request.get_json(silent=True) or {}

    try:
        result = get_services().reservations.create_manual_reservation(
            customer_name=payload.get("customerName"),
            customer_phone=payload.get("customerPhone"),
            service_id=payload.get("serviceId"),
            session_id=payload.get("sessionId"),
            baby_name=payload.get("babyName"),
            baby_age=payload.get("babyAge"),
            price_tier_id=payload.get("priceTierId"),
            parent_names=payload.get("parentNames"),
            notes=payload.get("notes"),
            payment_method=payload.get("paymentMethod"),
            is_paid=payload.get("isPaid", False),
            payment_notes=payload.get("paymentNotes"),
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to create manual reservation", exc)

    return jsonify({"message": "Manual reservation created", **result}), 201


@bp.put("/reservations/owner/manual/<int:reservation_id>/payment")
def update_manual_payment(reservation_id: int) -> tuple[dict[str, object], int]:
    """Mark a manual reservation as paid at the counter (owner only).
    ---
    tags:
      - Payments
    parameters:
      - in: path
        name: reservation_id
        required: true
        type: integer
      - in: body
        name: body
        schema:
          properties:
            paymentMethod:
              type: string
              example: CASH
            notes:
              type: string
    responses:
      200:
        description: Payment recorded, reservation confirmed
      400:
        description: Reservation was booked online
      404:
        description: Reservation not found
      409:
        description: Payment already processed
    """
    require_identity(ROLE_OWNER)
    payload = request.get_json(silent=True) or {}

    try:
        result = get_services().reservations.update_manual_payment(
            reservation_id,
            payment_method=payload.get("paymentMethod"),
            notes=payload.get("notes"),
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to update manual payment", exc)

    return jsonify({"message": "Manual reservation payment recorded", **result}), 200


@bp.get("/reservations/<int:reservation_id>")
def get_reservation(reservation_id: int) -> tuple[dict[str, object], int]:
    """Return one reservation with its payment.
    ---
    tags:
      - Reservations
    parameters:
      - in: path
        name: reservation_id
        required: true
        type: integer
    responses:
      200:
        description: Reservation details
      403:
        description: Reservation belongs to another customer
      404:
        description: Reservation not found
    """
    identity = require_identity(ROLE_CUSTOMER, ROLE_OWNER)
    customer_id = None if identity.is_owner else identity.account_id

    reservation = get_services().reservations.get_reservation(reservation_id, customer_id)
    body = reservation.to_dict()
    body["payment"] = reservation.payment.to_dict() if reservation.payment else None
    return jsonify({"reservation": body}), 200


@bp.get("/reservations/<int:reservation_id>/payment")
def get_payment_details(reservation_id: int) -> tuple[dict[str, object], int]:
    """Return payment details, refreshing a pending payment from the gateway.
    ---
    tags:
      - Payments
    parameters:
      - in: path
        name: reservation_id
        required: true
        type: integer
    responses:
      200:
        description: Payment details
      403:
        description: Reservation belongs to another customer
      404:
        description: Reservation or payment not found
      500:
        description: Database error
    """
    identity = require_identity(ROLE_CUSTOMER, ROLE_OWNER)
    customer_id = None if identity.is_owner else identity.account_id

    try:
        details = get_services().reservations.get_payment_details(reservation_id, customer_id)
    except SQLAlchemyError as exc:
        return _database_error("Failed to load payment details", exc)

    return jsonify(details), 200


@bp.put("/reservations/<int:reservation_id>/status")
def update_reservation_status(reservation_id: int) -> tuple[dict[str, object], int]:
    """Move a reservation along its lifecycle (owner only).
    ---
    tags:
      - Reservations
    parameters:
      - in: path
        name: reservation_id
        required: true
        type: integer
      - in: body
        name: body
        required: true
        schema:
          properties:
            status:
              type: string
              enum: [IN_PROGRESS, COMPLETED, CANCELLED]
    responses:
      200:
        description: Status updated
      400:
        description: Unknown status or transition not allowed
      403:
        description: Caller is not an owner
      404:
        description: Reservation not found
      409:
        description: Status changed concurrently
    """
    require_identity(ROLE_OWNER)
    payload = request.get_json(silent=True) or {}

    if "status" not in payload:
        return jsonify({"error": "invalid_payload", "message": "status is required"}), 400

    try:
        reservation = get_services().reservations.update_status(reservation_id, payload["status"])
    except SQLAlchemyError as exc:
        return _database_error("Failed to update reservation status", exc)

    return jsonify({"message": "Reservation status updated", "reservation": reservation}), 200


@bp.put("/payments/<int:payment_id>/verify")
def verify_manual_payment(payment_id: int) -> tuple[dict[str, object], int]:
    """Confirm or reject a payment by hand (owner only).
    ---
    tags:
      - Payments
    parameters:
      - in: path
        name: payment_id
        required: true
        type: integer
      - in: body
        name: body
        required: true
        schema:
          properties:
            isVerified:
              type: boolean
    responses:
      200:
        description: Payment settled
      400:
        description: isVerified missing or not a boolean
      404:
        description: Payment not found
      409:
        description: Payment already processed
    """
    require_identity(ROLE_OWNER)
    payload = request.get_json(silent=True) or {}

    try:
        payment = get_services().reservations.verify_manual_payment(payment_id, payload.get("isVerified"))
    except SQLAlchemyError as exc:
        return _database_error("Failed to verify payment", exc)

    return jsonify({"message": "Payment verification recorded", "payment": payment}), 200


@bp.post("/payment/callback")
def payment_callback() -> tuple[dict[str, object], int]:
    """Receive asynchronous payment status updates from Tripay.
    ---
    tags:
      - Payments
    parameters:
      - name: X-Callback-Signature
        in: header
        type: string
        description: HMAC-SHA256 signature of the callback
      - name: body
        in: body
        required: true
        description: Tripay callback payload
    responses:
      200:
        description: Callback acknowledged
        schema:
          type: object
          properties:
            success:
              type: boolean
            message:
              type: string
      400:
        description: Payload is not a callback
    """
    raw_body = request.get_data()
    payload = request.get_json(silent=True)
    body, status = get_services().callbacks.handle(
        raw_body, payload, request.headers.get("X-Callback-Signature")
    )
    return jsonify(body), status


@bp.get("/scheduler/cron")
def run_expiry_sweep() -> tuple[dict[str, object], int]:
    """Expire every overdue pending payment; called by an external cron.
    ---
    tags:
      - Scheduler
    parameters:
      - name: secret
        in: query
        type: string
        description: Shared scheduler secret
    responses:
      200:
        description: Sweep finished
      403:
        description: Wrong secret, or no secret configured in production
    """
    expected = current_app.config.get("SCHEDULER_SECRET")
    if not expected and current_app.config.get("APP_ENV") == "production":
        current_app.logger.error("SCHEDULER_SECRET is not set, refusing expiry sweep in production")
        return jsonify({"error": "forbidden", "message": "Scheduler secret is not configured"}), 403
    if not expected:
        current_app.logger.warning("SCHEDULER_SECRET is not set, running expiry sweep unauthenticated")
    elif not hmac.compare_digest(request.args.get("secret", "").encode(), expected.encode()):
        current_app.logger.warning("Rejected expiry sweep with a wrong secret")
        return jsonify({"error": "forbidden", "message": "Invalid scheduler secret"}), 403

    result = get_services().scheduler.run_expiry_sweep()
    return jsonify({"success": True, "message": "Expiry sweep completed", "result": result}), 200


@bp.get("/scheduler/stats")
def scheduler_stats() -> tuple[dict[str, object], int]:
    """Show the in-process expiry timers (owner only).
    ---
    tags:
      - Scheduler
    responses:
      200:
        description: Timer statistics
    """
    require_identity(ROLE_OWNER)
    return jsonify(get_services().scheduler.stats()), 200


def register_routes(app: Flask) -> None:
    app.register_blueprint(bp)
