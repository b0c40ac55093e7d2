from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.services.delivery_orchestrator import set_rider_status
from app.utils.errors import ValidationError

riders_bp = Blueprint("riders_bp", __name__, url_prefix="/api/riders")


@riders_bp.post("/<int:rider_id>/status")
def post_rider_status(rider_id: int):
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip()
    if not status:
        raise ValidationError("status is required")
    try:
        lat = float(data["latitude"]) if data.get("latitude") is not None else None
        lng = float(data["longitude"]) if data.get("longitude") is not None else None
    except (TypeError, ValueError):
        raise ValidationError("latitude and longitude must be numbers") from None
    rider = set_rider_status(rider_id, status, latitude=lat, longitude=lng)
    return jsonify({"ok": True, "rider": rider.to_dict()}), 200
