from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.extensions import db
from app.services.payment_confirmation import process_paystack_webhook, validate_webhook_request
from app.utils.env import env_bool
from app.utils.observability import get_request_id
from app.utils.rate_limit import rate_limit

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def webhook_queue_enabled() -> bool:
    return env_bool("PAYSTACK_WEBHOOK_QUEUE", False)


@webhooks_bp.post("/paystack")
@rate_limit("webhook:paystack", per_seconds=60, limit=600)
def paystack_webhook():
    # The signature covers the exact bytes received, so read the raw body
    # before any JSON parsing.
    raw = request.get_data(cache=True) or b""
    sig = request.headers.get("X-Paystack-Signature")
    payload = request.get_json(silent=True)

    if webhook_queue_enabled():
        rejected = validate_webhook_request(payload, raw, sig)
        if rejected is not None:
            body, status = rejected
            return jsonify(body), int(status)
        try:
            from app.tasks.fulfillment_tasks import process_paystack_event_task

            process_paystack_event_task.delay(payload=payload, trace_id=get_request_id())
            return jsonify({"ok": True, "queued": True, "trace_id": get_request_id()}), 200
        except Exception:
            current_app.logger.exception("paystack_webhook_enqueue_failed request_id=%s", get_request_id())

    try:
        body, status = process_paystack_webhook(payload, raw, sig)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("paystack_webhook_route_failed request_id=%s", get_request_id())
        return jsonify({"ok": False, "error": "WEBHOOK_HANDLER_FAILED"}), 500
    return jsonify(body), int(status)
