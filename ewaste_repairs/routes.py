from __future__ import annotations

import json
import logging
import sqlite3

from flask import Blueprint, abort, current_app, g, jsonify, request, session
from flask_sock import Sock
from werkzeug.exceptions import HTTPException

from ewaste_repairs.domain import Role, User
from ewaste_repairs.engine import RepairLifecycle
from ewaste_repairs.errors import RepairError, ValidationError
from ewaste_repairs.realtime import ConnectionRegistry, encode_event
from ewaste_repairs.stats import technician_summary
from ewaste_repairs.store import SqliteStore

logger = logging.getLogger(__name__)

bp = Blueprint("api", __name__)
sock = Sock()

POLICY_VIOLATION = 1008


def get_store() -> SqliteStore:
    store = current_app.extensions.get("store")
    if not isinstance(store, SqliteStore):
        raise RuntimeError("Store is not configured")
    return store


def get_registry() -> ConnectionRegistry:
    registry = current_app.extensions.get("registry")
    if not isinstance(registry, ConnectionRegistry):
        raise RuntimeError("Connection registry is not configured")
    return registry


def get_engine() -> RepairLifecycle:
    engine = current_app.extensions.get("engine")
    if not isinstance(engine, RepairLifecycle):
        raise RuntimeError("Repair lifecycle is not configured")
    return engine


@bp.before_app_request
def load_logged_in_user():
    user_id = session.get("user_id")
    user = get_store().get_user_by_id(user_id) if isinstance(user_id, int) else None
    if user is not None and not user.is_active:
        user = None
    if isinstance(user_id, int) and user is None:
        session.pop("user_id", None)
    g.user = user


def require_user() -> User:
    user = getattr(g, "user", None)
    if user is None:
        abort(401)
    return user


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict(flat=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


@bp.app_errorhandler(RepairError)
def handle_repair_error(error: RepairError):
    return jsonify(error=error.message), error.status_code


@bp.app_errorhandler(sqlite3.Error)
def handle_storage_error(error: sqlite3.Error):
    logger.exception("Storage failure while handling %s %s", request.method, request.path)
    return jsonify(error="Storage is temporarily unavailable, please retry."), 503


@bp.app_errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return jsonify(error=error.description), error.code


# session


@bp.post("/login")
def login():
    data = json_body()
    username = str(data.get("username") or "").strip()
    password = str(data.get("password") or "")
    store = get_store()
    if not username or not store.verify_password(username, password):
        return jsonify(error="Invalid username or password."), 401
    user = store.get_user(username)
    if user is None:
        abort(401)
    session.clear()
    session["user_id"] = user.id
    logger.info("User %s logged in", user.id)
    return jsonify(user.to_dict())


@bp.post("/logout")
def logout():
    session.clear()
    return "", 204


@bp.get("/api/me")
def me():
    return jsonify(require_user().to_dict())


# repair requests


@bp.post("/api/repair-requests")
def repair_create():
    user = require_user()
    data = json_body()
    created = get_engine().create_request(
        user,
        device_type=data.get("deviceType"),
        description=data.get("description"),
        customer_address=data.get("customerAddress"),
    )
    return jsonify(created.to_dict()), 201


@bp.get("/api/repair-requests/available")
def repair_available():
    user = require_user()
    return jsonify([r.to_dict() for r in get_engine().list_available(user)])


@bp.get("/api/repair-requests/user")
def repair_for_user():
    user = require_user()
    return jsonify([r.to_dict() for r in get_engine().list_for_user(user, user.id)])


@bp.get("/api/repair-requests/technician")
def repair_for_technician():
    user = require_user()
    technician_id = request.args.get("technicianId", type=int) or user.id
    requests_list = get_engine().list_for_technician(user, technician_id)
    return jsonify([r.to_dict() for r in requests_list])


@bp.get("/api/repair-requests/stats")
def repair_stats():
    user = require_user()
    technician_id = request.args.get("technicianId", type=int) or user.id
    requests_list = get_engine().list_for_technician(user, technician_id)
    return jsonify(technician_summary(requests_list))


@bp.get("/api/repair-requests/<int:request_id>")
def repair_detail(request_id: int):
    user = require_user()
    return jsonify(get_engine().get_request(user, request_id).to_dict())


@bp.post("/api/repair-requests/<int:request_id>/accept")
def repair_accept(request_id: int):
    user = require_user()
    data = json_body()
    updated = get_engine().accept_request(
        user,
        request_id,
        pickup_date=data.get("pickupDate"),
        pickup_address=data.get("pickupAddress"),
        technician_phone=data.get("technicianPhone"),
        technician_email=data.get("technicianEmail"),
        pickup_notes=data.get("pickupNotes"),
    )
    return jsonify(updated.to_dict())


@bp.patch("/api/repair-requests/<int:request_id>/status")
def repair_update_status(request_id: int):
    user = require_user()
    data = json_body()
    status = data.get("status")
    if not status:
        raise ValidationError("status is required.")
    updated = get_engine().update_status(
        user,
        request_id,
        status,
        estimated_cost=data.get("estimatedCost"),
        carbon_saved=data.get("carbonSaved"),
    )
    return jsonify(updated.to_dict())


@bp.post("/api/repair-requests/<int:request_id>/confirm-estimate")
def repair_confirm_estimate(request_id: int):
    user = require_user()
    return jsonify(get_engine().confirm_estimate(user, request_id).to_dict())


@bp.post("/api/repair-requests/<int:request_id>/cancel")
def repair_cancel(request_id: int):
    user = require_user()
    return jsonify(get_engine().cancel(user, request_id).to_dict())


# notifications


@bp.get("/api/notifications")
def notifications():
    user = require_user()
    return jsonify([n.to_dict() for n in get_engine().list_notifications(user)])


@bp.get("/api/notifications/unread-count")
def notifications_unread_count():
    user = require_user()
    return jsonify(count=get_engine().unread_notification_count(user))


@bp.post("/api/notifications/<int:notification_id>/read")
def notification_mark_read(notification_id: int):
    user = require_user()
    get_engine().mark_notification_read(user, notification_id)
    return "", 204


# impact


@bp.post("/api/impact")
def impact_record():
    user = require_user()
    data = json_body()
    try:
        target_id = int(data.get("userId"))
    except (TypeError, ValueError):
        raise ValidationError("userId must be an integer.") from None
    totals = get_engine().record_impact(user, target_id, data.get("carbonSaved"))
    return jsonify(totals.to_dict()), 201


@bp.get("/api/impact/<int:user_id>")
def impact_detail(user_id: int):
    user = require_user()
    return jsonify(get_engine().impact_for(user, user_id).to_dict())


# push channel


@sock.route("/ws", bp=bp)
def push_channel(ws):
    user = getattr(g, "user", None)
    if user is None:
        ws.close(reason=POLICY_VIOLATION, message="Authentication required")
        return
    requested = request.args.get("userId")
    if requested is not None and requested != str(user.id):
        ws.close(reason=POLICY_VIOLATION, message="userId does not match the session")
        return

    registry = get_registry()
    registry.register(user.id, ws, Role(user.role))
    logger.info("Push channel opened for user %s", user.id)
    try:
        while True:
            message = ws.receive()
            if message is None:
                continue
            if _is_ping(message):
                ws.send(encode_event("PONG", {}))
    finally:
        registry.unregister(user.id, ws)
        logger.info("Push channel closed for user %s", user.id)


def _is_ping(message: str | bytes) -> bool:
    try:
        payload = json.loads(message)
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("type") == "PING"
