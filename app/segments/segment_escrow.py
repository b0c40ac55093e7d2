from __future__ import annotations

from flask import Blueprint, jsonify

from app.extensions import db
from app.models import Escrow, Order, Payout
from app.services.settlement_service import merchant_balances, process_merchant_payouts, release_escrow
from app.utils.admin_auth import require_admin
from app.utils.errors import EscrowNotFound, NotFoundError

escrow_bp = Blueprint("escrow_bp", __name__, url_prefix="/api")


@escrow_bp.get("/escrow/<int:order_id>")
def get_escrow(order_id: int):
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"order {order_id} not found")
    escrow = Escrow.query.filter_by(order_id=order_id).first()
    if escrow is None:
        raise EscrowNotFound(f"no escrow for order {order_id}")
    payout = Payout.query.filter_by(order_id=order_id).first()
    return jsonify(
        {
            "ok": True,
            "escrow": escrow.to_dict(),
            "payout": payout.to_dict() if payout else None,
        }
    ), 200


@escrow_bp.post("/admin/escrow/<int:order_id>/release")
def admin_release_escrow(order_id: int):
    err = require_admin()
    if err:
        return err
    breakdown = release_escrow(order_id, source="admin")
    return jsonify({"ok": True, "settlement": breakdown.to_dict()}), 200


@escrow_bp.get("/admin/merchants/<int:merchant_id>/balances")
def admin_merchant_balances(merchant_id: int):
    err = require_admin()
    if err:
        return err
    return jsonify({"ok": True, **merchant_balances(merchant_id)}), 200


@escrow_bp.post("/admin/payouts/<int:merchant_id>/process")
def admin_process_payouts(merchant_id: int):
    err = require_admin()
    if err:
        return err
    return jsonify({"ok": True, **process_merchant_payouts(merchant_id)}), 200
