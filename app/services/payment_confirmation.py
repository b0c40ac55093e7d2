from __future__ import annotations

import hashlib
import json
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.integrations.payments.factory import build_payments_provider
from app.integrations.payments.signature import verify_webhook_signature
from app.models import Order, OrderStatus, PaymentStatus, Severity, WebhookEvent
from app.services import notification_service
from app.services.settlement_service import hold_escrow
from app.services.stock_service import check_availability, commit_stock, release_reserved_stock
from app.utils.commission import format_naira
from app.utils.errors import InsufficientStock
from app.utils.events import log_event
from app.utils.idempotency import claim_webhook_event, release_webhook_event
from app.utils.observability import get_request_id

EVENT_CHARGE_SUCCESS = "charge.success"
EVENT_CHARGE_FAILED = "charge.failed"


def _parse_amount_minor(data: dict) -> int | None:
    try:
        return int(data.get("amount"))
    except (TypeError, ValueError):
        return None


def _payload_hash(payload: dict) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def _notify_customer(order: Order, body: str, *, purpose: str) -> None:
    try:
        notification_service.send_text(order.customer_phone, body, purpose=purpose)
    except Exception:
        current_app.logger.exception("payment_notify_failed order_id=%s purpose=%s", order.id, purpose)


def request_refund(order: Order, *, reason: str, amount_minor: int | None = None) -> bool:
    """Ask the gateway for a refund. Failure is logged CRITICAL, never retried inline."""
    amount = int(amount_minor) if amount_minor is not None else int(order.total_amount_minor or 0)
    error = ""
    try:
        result = build_payments_provider().refund(order.payment_reference, amount)
        ok = bool(result.ok)
        if not ok:
            error = result.status or "refund_rejected"
    except Exception as e:
        ok = False
        error = f"{type(e).__name__}: {e}"

    if ok:
        log_event(
            "refund_requested",
            severity=Severity.MEDIUM,
            message=f"refund of {format_naira(amount)} requested for {order.order_number} ({reason})",
            subject_type="order",
            subject_id=order.id,
            metadata={"reference": order.payment_reference, "amount_minor": amount, "reason": reason},
        )
    else:
        log_event(
            "refund_failed",
            severity=Severity.CRITICAL,
            message=f"refund for {order.order_number} failed: {error[:200]}",
            subject_type="order",
            subject_id=order.id,
            metadata={"reference": order.payment_reference, "amount_minor": amount, "reason": reason, "error": error[:400]},
        )
    return ok


def _cancel_for_stock(order: Order, issues: list[dict]) -> dict:
    refunded = request_refund(order, reason="out_of_stock")
    try:
        result = db.session.execute(
            update(Order)
            .where(Order.id == int(order.id), Order.payment_status == PaymentStatus.PENDING.value)
            .values(
                payment_status=PaymentStatus.FAILED.value,
                status=OrderStatus.CANCELLED.value,
                cancel_reason="out_of_stock",
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) == 1:
            release_reserved_stock(order)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    log_event(
        "order_cancelled_out_of_stock",
        severity=Severity.MEDIUM,
        message=f"{order.order_number} cancelled at payment confirmation: stock no longer available",
        subject_type="order",
        subject_id=order.id,
        metadata={"issues": issues, "refund_requested": refunded},
    )
    _notify_customer(
        order,
        f"Sorry, some items in your order {order.order_number} sold out before your payment arrived. "
        "Your order has been cancelled and a full refund is on its way.",
        purpose="order_cancelled",
    )
    return {"outcome": "out_of_stock", "order_id": int(order.id), "issues": issues, "refund_requested": refunded}


def confirm_payment(reference: str, amount_minor: int | None) -> dict:
    """Turn a successful charge into PAID/PROCESSING plus a HELD escrow.

    Everything before the commit is a guard that leaves the order untouched;
    everything after it is best effort and never unwinds the payment.
    """
    ref = (reference or "").strip()
    order = Order.query.filter_by(payment_reference=ref).first()
    if order is None:
        current_app.logger.info("payment_reference_unknown reference=%s", ref)
        return {"outcome": "unknown_reference"}

    if order.payment_status == PaymentStatus.PAID.value:
        return {"outcome": "already_paid", "order_id": int(order.id)}

    if order.payment_status == PaymentStatus.FAILED.value or order.status == OrderStatus.CANCELLED.value:
        log_event(
            "payment_after_cancellation",
            severity=Severity.HIGH,
            message=f"payment arrived for {order.order_number} which is already {order.status}/{order.payment_status}",
            subject_type="order",
            subject_id=order.id,
            metadata={"reference": ref, "amount_minor": amount_minor},
        )
        refunded = request_refund(order, reason="payment_after_cancellation", amount_minor=amount_minor)
        return {"outcome": "late_payment_refunded", "order_id": int(order.id), "refund_requested": refunded}

    expected = int(order.total_amount_minor or 0)
    if amount_minor is None or int(amount_minor) != expected:
        log_event(
            "payment_amount_mismatch",
            severity=Severity.HIGH,
            message=f"{order.order_number} expected {format_naira(expected)}, gateway reported {format_naira(amount_minor or 0)}",
            subject_type="order",
            subject_id=order.id,
            metadata={"reference": ref, "expected_minor": expected, "paid_minor": amount_minor},
        )
        return {"outcome": "amount_mismatch", "order_id": int(order.id)}

    stock = check_availability(int(order.id))
    if not stock.available:
        return _cancel_for_stock(order, [i.to_dict() for i in stock.issues])

    try:
        now = datetime.utcnow()
        result = db.session.execute(
            update(Order)
            .where(Order.id == int(order.id), Order.payment_status == PaymentStatus.PENDING.value)
            .values(
                payment_status=PaymentStatus.PAID.value,
                status=OrderStatus.PROCESSING.value,
                paid_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            db.session.rollback()
            return {"outcome": "already_processed", "order_id": int(order.id)}
        commit_stock(order)
        hold_escrow(order)
        db.session.commit()
    except InsufficientStock as e:
        db.session.rollback()
        return _cancel_for_stock(order, [e.details] if e.details else [])
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        json.dumps({"event": "payment_confirmed", "order_id": int(order.id), "reference": ref, "amount_minor": expected})
    )
    side_effects = run_post_payment_side_effects(int(order.id))
    return {"outcome": "confirmed", "order_id": int(order.id), "side_effects": side_effects}


def fail_payment(reference: str) -> dict:
    ref = (reference or "").strip()
    order = Order.query.filter_by(payment_reference=ref).first()
    if order is None:
        return {"outcome": "unknown_reference"}
    if order.payment_status != PaymentStatus.PENDING.value:
        return {"outcome": "not_pending", "order_id": int(order.id)}
    try:
        result = db.session.execute(
            update(Order)
            .where(Order.id == int(order.id), Order.payment_status == PaymentStatus.PENDING.value)
            .values(payment_status=PaymentStatus.FAILED.value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            db.session.rollback()
            return {"outcome": "not_pending", "order_id": int(order.id)}
        release_reserved_stock(order)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    _notify_customer(
        order,
        f"Your payment for order {order.order_number} did not go through. Please try again.",
        purpose="payment_failed",
    )
    return {"outcome": "failed", "order_id": int(order.id)}


# -------------------------
# post-commit side effects
# -------------------------


def _isolated(step: str, order_id: int, fn) -> bool:
    try:
        result = fn()
        return result is not False
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("post_payment_step_failed step=%s order_id=%s error=%s", step, order_id, e)
        log_event(
            "post_payment_step_failed",
            severity=Severity.HIGH,
            message=f"{step} failed for order {order_id}: {type(e).__name__}: {e}"[:500],
            subject_type="order",
            subject_id=order_id,
            metadata={"step": step, "error": str(e)[:400]},
        )
        return False


def _send_confirmation(order_id: int) -> bool:
    order = db.session.get(Order, int(order_id))
    body = (
        f"Payment received for order {order.order_number} ({format_naira(order.total_amount_minor)}). "
        "We are preparing it for delivery."
    )
    return notification_service.send_text(order.customer_phone, body, purpose="payment_confirmed")


def perform_post_payment_side_effects(order_id: int) -> dict:
    """Invoice, confirmation text and delivery creation, each failing on its own."""
    from app.services.delivery_orchestrator import create_delivery
    from app.services.invoice_service import deliver_invoice

    return {
        "invoice": _isolated("invoice", order_id, lambda: deliver_invoice(order_id)),
        "confirmation": _isolated("confirmation_message", order_id, lambda: _send_confirmation(order_id)),
        "delivery": _isolated("delivery_creation", order_id, lambda: create_delivery(order_id)),
    }


def run_post_payment_side_effects(order_id: int) -> dict:
    if notification_service.side_effects_queued():
        try:
            from app.tasks.fulfillment_tasks import post_payment_side_effects_task

            post_payment_side_effects_task.delay(order_id=int(order_id))
            return {"queued": True}
        except Exception:
            current_app.logger.exception("post_payment_enqueue_failed order_id=%s", order_id)
    return perform_post_payment_side_effects(order_id)


# -------------------------
# webhook entry points
# -------------------------


def validate_webhook_request(payload, raw: bytes, signature: str | None) -> tuple[dict, int] | None:
    """Authenticity and shape checks. Returns an error response or None."""
    if not verify_webhook_signature(raw or b"", signature):
        current_app.logger.warning("paystack_webhook_rejected reason=invalid_signature request_id=%s", get_request_id())
        return {"ok": False, "error": "INVALID_SIGNATURE"}, 400
    if not isinstance(payload, dict):
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "payload must be an object"}, 400
    event = payload.get("event")
    data = payload.get("data")
    if not isinstance(event, str) or not event.strip():
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "event is required"}, 400
    if not isinstance(data, dict) or not str(data.get("reference") or "").strip():
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "data.reference is required"}, 400
    return None


def _record_webhook(event: str, reference: str, amount_minor: int | None, payload: dict) -> WebhookEvent | None:
    try:
        row = WebhookEvent(
            provider="paystack",
            event_type=event[:64],
            reference=reference[:128],
            amount_minor=amount_minor,
            status="received",
            request_id=(get_request_id() or "")[:64] or None,
            payload_hash=_payload_hash(payload),
        )
        db.session.add(row)
        db.session.commit()
        return row
    except IntegrityError:
        db.session.rollback()
        return WebhookEvent.query.filter_by(provider="paystack", event_type=event[:64], reference=reference[:128]).first()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("webhook_audit_write_failed reference=%s", reference)
        return None


def _finish_webhook(row: WebhookEvent | None, *, status: str, outcome: str = "", error: str = "") -> None:
    if row is None:
        return
    try:
        row.status = status
        row.outcome = (outcome or "")[:64] or None
        row.error = (error or "")[:1000] or None
        row.processed_at = datetime.utcnow()
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("webhook_audit_update_failed id=%s", getattr(row, "id", None))


def handle_paystack_event(payload: dict) -> tuple[dict, int]:
    """Process an authenticated gateway event exactly once per (event, reference)."""
    event = str(payload.get("event") or "").strip()
    data = payload.get("data") or {}
    reference = str(data.get("reference") or "").strip()
    amount_minor = _parse_amount_minor(data)

    try:
        claimed = claim_webhook_event(event, reference)
    except Exception:
        current_app.logger.exception("webhook_dedup_unavailable event=%s reference=%s", event, reference)
        return {"ok": False, "error": "DEDUP_UNAVAILABLE"}, 500
    if not claimed:
        return {"ok": True, "replayed": True}, 200

    row = _record_webhook(event, reference, amount_minor, payload)
    try:
        if event == EVENT_CHARGE_SUCCESS:
            result = confirm_payment(reference, amount_minor)
        elif event == EVENT_CHARGE_FAILED:
            result = fail_payment(reference)
        else:
            _finish_webhook(row, status="ignored", outcome="unhandled_event")
            return {"ok": True, "ignored": True, "event": event}, 200
    except Exception as e:
        db.session.rollback()
        release_webhook_event(event, reference)
        current_app.logger.exception("paystack_webhook_processing_failed event=%s reference=%s", event, reference)
        _finish_webhook(row, status="failed", outcome="exception", error=f"{type(e).__name__}: {e}")
        return {"ok": False, "error": "WEBHOOK_PROCESSING_FAILED", "message": type(e).__name__}, 500

    outcome = str(result.get("outcome") or "")
    _finish_webhook(row, status="processed", outcome=outcome)
    return {"ok": True, "event": event, "reference": reference, "outcome": outcome}, 200


def process_paystack_webhook(payload, raw: bytes, signature: str | None) -> tuple[dict, int]:
    rejected = validate_webhook_request(payload, raw, signature)
    if rejected is not None:
        return rejected
    return handle_paystack_event(payload)
