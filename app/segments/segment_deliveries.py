from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.extensions import db
from app.models import Delivery, DeliveryStatus
from app.services.delivery_orchestrator import (
    assign_rider,
    cancel_delivery,
    confirm_delivery,
    reassign_delivery,
    update_status,
)
from app.utils.admin_auth import require_admin
from app.utils.errors import NotFoundError, ValidationError

deliveries_bp = Blueprint("deliveries_bp", __name__, url_prefix="/api/deliveries")


def _int_arg(value, name: str):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None


@deliveries_bp.get("")
def list_deliveries():
    q = Delivery.query
    status = (request.args.get("status") or "").strip()
    if status:
        try:
            q = q.filter(Delivery.status == DeliveryStatus.parse(status).value)
        except ValueError as e:
            raise ValidationError(str(e)) from None
    rider_id = _int_arg(request.args.get("rider_id"), "rider_id")
    if rider_id is not None:
        q = q.filter(Delivery.rider_id == rider_id)
    limit = max(1, min(_int_arg(request.args.get("limit"), "limit") or 50, 200))
    rows = q.order_by(Delivery.id.desc()).limit(limit).all()
    return jsonify({"ok": True, "items": [d.to_dict() for d in rows]}), 200


@deliveries_bp.get("/<int:delivery_id>")
def get_delivery(delivery_id: int):
    delivery = db.session.get(Delivery, delivery_id)
    if delivery is None:
        raise NotFoundError(f"delivery {delivery_id} not found")
    return jsonify({"ok": True, "delivery": delivery.to_dict(include_events=True)}), 200


@deliveries_bp.post("/<int:delivery_id>/status")
def post_status(delivery_id: int):
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip()
    if not status:
        raise ValidationError("status is required")
    delivery = update_status(delivery_id, status, data.get("description"))
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 200


@deliveries_bp.post("/<int:delivery_id>/assign")
def post_assign(delivery_id: int):
    err = require_admin()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    delivery = assign_rider(delivery_id, _int_arg(data.get("rider_id"), "rider_id"))
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 200


@deliveries_bp.post("/<int:delivery_id>/reassign")
def post_reassign(delivery_id: int):
    err = require_admin()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    delivery = reassign_delivery(delivery_id, (data.get("reason") or "").strip() or "rider not responding")
    if delivery is None:
        return jsonify({"ok": False, "error": "NO_RIDER_AVAILABLE", "message": "No other rider is free"}), 409
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 200


@deliveries_bp.post("/<int:delivery_id>/confirm")
def post_confirm(delivery_id: int):
    result = confirm_delivery(delivery_id, source="customer")
    return jsonify({"ok": True, **result}), 200


@deliveries_bp.post("/<int:delivery_id>/cancel")
def post_cancel(delivery_id: int):
    err = require_admin()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    delivery = cancel_delivery(delivery_id, (data.get("reason") or "").strip() or "cancelled by admin")
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 200
