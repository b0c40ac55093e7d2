from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.models import Delivery, Escrow
from app.services.delivery_orchestrator import create_delivery
from app.services.order_service import create_order, get_order_by_reference
from app.utils.errors import ValidationError
from app.utils.idempotency import discard_key, lookup_response, store_response

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api/orders")


def _float_or_none(value):
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError("coordinates must be numbers") from None


@orders_bp.post("")
def place_order():
    data = request.get_json(silent=True) or {}
    items = data.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    try:
        merchant_id = int(data.get("merchant_id"))
    except (TypeError, ValueError):
        raise ValidationError("merchant_id is required") from None

    idem = lookup_response("orders:create", data)
    if idem is not None and idem[0] != "miss":
        _, body, status = idem
        return jsonify(body), int(status)
    try:
        order = create_order(
            str(data.get("customer_phone") or ""),
            merchant_id,
            items,
            customer_email=data.get("customer_email"),
            delivery_address=data.get("delivery_address"),
            delivery_latitude=_float_or_none(data.get("delivery_latitude")),
            delivery_longitude=_float_or_none(data.get("delivery_longitude")),
        )
    except Exception:
        if idem is not None:
            discard_key(idem[1])
        raise
    body = {"ok": True, "order": order.to_dict()}
    if idem is not None:
        store_response(idem[1], body, 201)
    return jsonify(body), 201


@orders_bp.get("/<string:reference>")
def get_order(reference: str):
    order = get_order_by_reference(reference)
    delivery = Delivery.query.filter_by(order_id=int(order.id)).first()
    escrow = Escrow.query.filter_by(order_id=int(order.id)).first()
    return jsonify(
        {
            "ok": True,
            "order": order.to_dict(),
            "delivery": delivery.to_dict() if delivery else None,
            "escrow": escrow.to_dict() if escrow else None,
        }
    ), 200


@orders_bp.post("/<int:order_id>/delivery")
def create_order_delivery(order_id: int):
    delivery = create_delivery(order_id)
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 201
