"""Thin Flask surface over the circulation core.

Routes only parse input, resolve the caller and hand over to the coordinator;
``LibraryError`` subclasses are turned into JSON responses with their own
status code by the handlers registered in ``create_app``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from flask import Blueprint, Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from .api import LibrarySystem
from .domain import Principal, Role
from .errors import Forbidden, LibraryError, Unauthenticated, ValidationError
from .settings import HOST, PORT, Settings, configure_logging

LOGGER = logging.getLogger("circdesk.web")

Authenticate = Callable[[Any], Principal]


def header_authenticate(req) -> Principal:
    """Default auth: trust ``X-User-Id`` / ``X-User-Role`` set by a gateway."""
    user_id = (req.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise Unauthenticated("Access token required")
    role = (req.headers.get("X-User-Role") or "member").strip().lower()
    return Principal(user_id, Role.ADMIN if role == Role.ADMIN.value else Role.MEMBER)


# =========================
# helpers
# =========================

def _system() -> LibrarySystem:
    return current_app.extensions["circdesk"]


def _principal() -> Principal:
    return current_app.config["AUTHENTICATE"](request)


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _require(body: dict, *fields: str) -> None:
    missing = [f for f in fields if not body.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields ({', '.join(missing)})")


def _idempotency_key(body: dict) -> Optional[str]:
    return request.headers.get("Idempotency-Key") or body.get("idempotencyKey")


def _parse_date(value: Any, field: str) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def to_json(record: Any) -> dict:
    return _jsonable(asdict(record))


# =========================
# borrow requests
# =========================

borrow_bp = Blueprint("borrow_requests", __name__, url_prefix="/borrow-requests")


@borrow_bp.post("")
def create_borrow_request():
    principal = _principal()
    body = _body()
    _require(body, "materialId", "returnDate")
    record = _system().coordinator.create_borrow(
        principal,
        body["materialId"],
        _parse_date(body["returnDate"], "returnDate"),
        user_id=body.get("userId"),
        book_title=body.get("bookTitle"),
        borrow_date=_parse_date(body.get("borrowDate"), "borrowDate"),
        idempotency_key=_idempotency_key(body),
    )
    return (
        jsonify(
            {
                "message": "Borrow request submitted successfully",
                "request": to_json(record),
            }
        ),
        201,
    )


@borrow_bp.post("/admin")
def admin_borrow():
    principal = _principal()
    body = _body()
    _require(body, "materialId", "userId")
    record = _system().coordinator.admin_direct_borrow(
        principal,
        body["materialId"],
        body["userId"],
        _parse_date(body.get("returnDate"), "returnDate"),
    )
    return (
        jsonify({"message": "Material lent successfully", "request": to_json(record)}),
        201,
    )


@borrow_bp.get("")
def list_borrow_requests():
    records = _system().coordinator.list_borrows(_principal())
    return jsonify([to_json(r) for r in records])


@borrow_bp.get("/my-requests")
def my_borrow_requests():
    records = _system().coordinator.list_user_borrows(_principal())
    return jsonify([to_json(r) for r in records])


@borrow_bp.get("/check-overdue")
def check_overdue():
    if not _principal().is_admin:
        raise Forbidden("Admin access required")
    report = _system().sweep()
    return jsonify(
        {
            "message": "Overdue check completed",
            "updated": report.changed,
            "report": asdict(report),
        }
    )


@borrow_bp.patch("/<borrow_id>/return")
def return_borrow(borrow_id: str):
    system = _system()
    record = system.coordinator.return_borrow(_principal(), borrow_id)
    material = system.get_material(record.material_id)
    return jsonify(
        {
            "message": "Book returned successfully",
            "request": to_json(record),
            "materialStatus": {
                "availableCopies": material.available_copies,
                "status": material.status.value,
            },
        }
    )


@borrow_bp.patch("/<borrow_id>/cancel")
def cancel_borrow(borrow_id: str):
    record = _system().coordinator.cancel_borrow(_principal(), borrow_id)
    return jsonify(
        {
            "message": "Borrow request cancelled successfully",
            "request": to_json(record),
        }
    )


@borrow_bp.patch("/<borrow_id>/status")
def update_borrow_status(borrow_id: str):
    principal = _principal()
    body = _body()
    _require(body, "status")
    record = _system().coordinator.admin_set_borrow_status(
        principal, borrow_id, body["status"]
    )
    return jsonify(
        {
            "message": f"Borrow request {record.status.value} successfully",
            "request": to_json(record),
        }
    )


@borrow_bp.patch("/<borrow_id>/payment")
def update_payment(borrow_id: str):
    principal = _principal()
    body = _body()
    _require(body, "paymentStatus")
    record = _system().coordinator.update_payment_status(
        principal, borrow_id, body["paymentStatus"]
    )
    return jsonify({"message": "Payment status updated", "request": to_json(record)})


# =========================
# reserve requests
# =========================

reserve_bp = Blueprint("reserve_requests", __name__, url_prefix="/reserve-requests")


@reserve_bp.post("")
def create_reserve_request():
    principal = _principal()
    body = _body()
    material_id = body.get("bookId") or body.get("materialId")
    if not material_id:
        raise ValidationError("Missing required fields (bookId)")
    _require(body, "pickupDate")
    record = _system().coordinator.create_reservation(
        principal,
        material_id,
        _parse_date(body["pickupDate"], "pickupDate"),
        reservation_date=_parse_date(body.get("reservationDate"), "reservationDate"),
        user_id=body.get("userId"),
        book_title=body.get("bookTitle"),
        idempotency_key=_idempotency_key(body),
    )
    return (
        jsonify(
            {
                "message": "Reservation submitted successfully",
                "request": to_json(record),
            }
        ),
        201,
    )


@reserve_bp.get("/my-requests")
def my_reserve_requests():
    records = _system().coordinator.list_user_reservations(_principal())
    return jsonify([to_json(r) for r in records])


@reserve_bp.patch("/<reservation_id>/status")
def update_reserve_status(reservation_id: str):
    principal = _principal()
    body = _body()
    _require(body, "status")
    record = _system().coordinator.admin_set_reservation_status(
        principal, reservation_id, body["status"]
    )
    return jsonify(
        {"message": f"Reservation {record.status.value}", "request": to_json(record)}
    )


@reserve_bp.patch("/<reservation_id>/cancel")
def cancel_reserve_request(reservation_id: str):
    record = _system().coordinator.cancel_reservation(_principal(), reservation_id)
    return jsonify(
        {"message": "Reservation cancelled successfully", "request": to_json(record)}
    )


# =========================
# materials + ratings
# =========================

materials_bp = Blueprint("materials", __name__, url_prefix="/materials")


@materials_bp.get("")
def search_materials():
    materials = _system().search_materials(request.args.get("q", ""))
    return jsonify({"success": True, "data": [to_json(m) for m in materials]})


@materials_bp.get("/<material_id>")
def get_material(material_id: str):
    material = _system().get_material(material_id)
    return jsonify({"success": True, "data": to_json(material)})


@materials_bp.patch("/<material_id>/status")
def update_material_status(material_id: str):
    principal = _principal()
    body = _body()
    _require(body, "status")
    material = _system().coordinator.admin_set_material_status(
        principal, material_id, body["status"]
    )
    return jsonify({"success": True, "data": to_json(material)})


ratings_bp = Blueprint("ratings", __name__, url_prefix="/ratings")


@ratings_bp.post("")
def submit_rating():
    principal = _principal()
    body = _body()
    _require(body, "borrowId", "rating")
    rating = _system().rate(
        principal, body["borrowId"], body["rating"], body.get("review", "")
    )
    return (
        jsonify(
            {
                "success": True,
                "message": "Rating submitted successfully",
                "data": to_json(rating),
            }
        ),
        201,
    )


# =========================
# app factory
# =========================

def create_app(
    system: Optional[LibrarySystem] = None,
    authenticate: Optional[Authenticate] = None,
) -> Flask:
    """Build the Flask app around ``system`` (a fresh one by default)."""
    app = Flask(__name__)
    app.json.sort_keys = False
    system = system or LibrarySystem(Settings.from_env())
    app.extensions["circdesk"] = system
    app.config["AUTHENTICATE"] = authenticate or header_authenticate

    for bp in (borrow_bp, reserve_bp, materials_bp, ratings_bp):
        app.register_blueprint(bp)

    @app.errorhandler(LibraryError)
    def handle_library_error(err: LibraryError):
        if err.status_code >= 500:
            LOGGER.error("%s: %s", err.code, err.message)
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(err: Exception):
        if isinstance(err, HTTPException):
            return err
        LOGGER.exception("unhandled error on %s %s", request.method, request.path)
        body = {"success": False, "error": "unexpected", "message": "Something broke!"}
        return jsonify(body), 500

    if system.settings.scheduler_enabled:
        system.scheduler.start()
    return app


def main() -> None:
    configure_logging()
    app = create_app()
    LOGGER.info("serving on %s:%s", HOST, PORT)
    app.run(host=HOST, port=PORT)


if __name__ == "__main__":
    main()
