from __future__ import annotations

import hmac

from flask import Blueprint, current_app, jsonify, request

from app.extensions import db
from app.models import Delivery, Severity
from app.services.delivery_orchestrator import CONFIRM_BUTTON_PREFIX, REPORT_BUTTON_PREFIX, confirm_delivery
from app.utils.env import env_str
from app.utils.errors import DomainError
from app.utils.events import log_event
from app.utils.rate_limit import rate_limit

whatsapp_bp = Blueprint("whatsapp_bp", __name__, url_prefix="/api/webhooks")


def _digits(value: str | None) -> str:
    return "".join(ch for ch in str(value or "") if ch.isdigit())


def _same_number(a: str | None, b: str | None) -> bool:
    # Compare on the trailing ten digits so 0803... and 234803... match.
    da, db_ = _digits(a), _digits(b)
    if not da or not db_:
        return False
    return da[-10:] == db_[-10:]


def iter_button_replies(payload: dict):
    """Yield (sender, button_id) for every interactive button reply."""
    for entry in (payload or {}).get("entry") or []:
        for change in (entry or {}).get("changes") or []:
            value = (change or {}).get("value") or {}
            for message in value.get("messages") or []:
                if (message or {}).get("type") != "interactive":
                    continue
                reply = ((message.get("interactive") or {}).get("button_reply")) or {}
                button_id = str(reply.get("id") or "").strip()
                if button_id:
                    yield str(message.get("from") or ""), button_id


def _delivery_for_button(button_id: str, prefix: str) -> Delivery | None:
    try:
        delivery_id = int(button_id[len(prefix):])
    except ValueError:
        return None
    return db.session.get(Delivery, delivery_id)


def handle_button_reply(sender: str, button_id: str) -> str:
    if button_id.startswith(CONFIRM_BUTTON_PREFIX):
        delivery = _delivery_for_button(button_id, CONFIRM_BUTTON_PREFIX)
        if delivery is None:
            return "unknown_delivery"
        if not _same_number(sender, delivery.recipient_phone or delivery.order.customer_phone):
            current_app.logger.warning("whatsapp_confirm_sender_mismatch delivery_id=%s", delivery.id)
            return "sender_mismatch"
        try:
            result = confirm_delivery(int(delivery.id), source="customer")
        except DomainError as e:
            return e.code.lower()
        return "confirmed" if result.get("newly_confirmed") else "already_confirmed"

    if button_id.startswith(REPORT_BUTTON_PREFIX):
        delivery = _delivery_for_button(button_id, REPORT_BUTTON_PREFIX)
        if delivery is None:
            return "unknown_delivery"
        log_event(
            "delivery_issue_reported",
            severity=Severity.HIGH,
            actor="customer",
            message=f"customer reported a problem with delivery {delivery.delivery_number}",
            subject_type="delivery",
            subject_id=delivery.id,
            metadata={"order_id": int(delivery.order_id), "sender": _digits(sender)[-4:]},
        )
        return "issue_reported"

    return "ignored"


@whatsapp_bp.get("/whatsapp")
def whatsapp_verify():
    mode = request.args.get("hub.mode", "")
    token = request.args.get("hub.verify_token", "")
    challenge = request.args.get("hub.challenge", "")
    expected = env_str("WHATSAPP_VERIFY_TOKEN")
    if mode == "subscribe" and expected and hmac.compare_digest(token, expected):
        return challenge, 200
    return jsonify({"ok": False, "error": "VERIFICATION_FAILED"}), 403


@whatsapp_bp.post("/whatsapp")
@rate_limit("webhook:whatsapp", per_seconds=60, limit=600)
def whatsapp_webhook():
    payload = request.get_json(silent=True) or {}
    outcomes = []
    for sender, button_id in iter_button_replies(payload):
        try:
            outcomes.append({"button": button_id, "outcome": handle_button_reply(sender, button_id)})
        except Exception:
            db.session.rollback()
            current_app.logger.exception("whatsapp_reply_failed button=%s", button_id)
            outcomes.append({"button": button_id, "outcome": "error"})
    # Always 200 so the provider does not redeliver handled replies.
    return jsonify({"ok": True, "results": outcomes}), 200
