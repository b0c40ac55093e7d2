from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.services.wallet_service import request_withdrawal, wallet_summary
from app.utils.errors import DomainError, ValidationError
from app.utils.idempotency import discard_key, lookup_response, store_response

wallets_bp = Blueprint("wallets_bp", __name__, url_prefix="/api/wallets")


@wallets_bp.get("/<string:owner_type>/<int:owner_id>")
def get_wallet(owner_type: str, owner_id: int):
    try:
        limit = int(request.args.get("limit") or 50)
    except ValueError:
        raise ValidationError("limit must be an integer") from None
    return jsonify({"ok": True, **wallet_summary(owner_type, owner_id, limit=limit)}), 200


@wallets_bp.post("/<string:owner_type>/<int:owner_id>/withdrawals")
def post_withdrawal(owner_type: str, owner_id: int):
    data = request.get_json(silent=True) or {}
    scope = f"withdrawal:{owner_type}:{owner_id}"
    idem = lookup_response(scope, data)
    if idem is not None and idem[0] != "miss":
        _, body, status = idem
        return jsonify(body), int(status)

    try:
        withdrawal = request_withdrawal(
            owner_type,
            owner_id,
            data.get("amount_minor"),
            {"bank_name": data.get("bank_name"), "account_number": data.get("account_number")},
        )
    except DomainError as e:
        # A reversed transfer is a final answer for this key; input errors are not.
        if idem is not None:
            if isinstance(e, ValidationError):
                discard_key(idem[1])
            else:
                store_response(idem[1], e.to_dict(), e.http_status)
        raise
    except Exception:
        if idem is not None:
            discard_key(idem[1])
        raise

    body = {"ok": True, "withdrawal": withdrawal.to_dict()}
    if idem is not None:
        store_response(idem[1], body, 201)
    return jsonify(body), 201
