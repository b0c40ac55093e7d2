from __future__ import annotations

from datetime import datetime

from sqlalchemy import update

from app.extensions import db
from app.jobs.sweep_runner import run_sweep
from app.models import Order, OrderStatus, PaymentStatus
from app.services import notification_service

JOB_NAME = "payment_timeout"


def _candidates(limit: int) -> list[int]:
    rows = (
        db.session.query(Order.id)
        .filter(
            Order.payment_status == PaymentStatus.PENDING.value,
            Order.payment_expires_at.isnot(None),
            Order.payment_expires_at < datetime.utcnow(),
        )
        .order_by(Order.payment_expires_at.asc())
        .limit(limit)
        .all()
    )
    return [int(r[0]) for r in rows]


def expire_order(order_id: int) -> str:
    """Expire one unpaid order. No escrow exists yet, so nothing to reverse."""
    result = db.session.execute(
        update(Order)
        .where(
            Order.id == int(order_id),
            Order.payment_status == PaymentStatus.PENDING.value,
            Order.payment_expires_at < datetime.utcnow(),
        )
        .values(
            payment_status=PaymentStatus.FAILED.value,
            status=OrderStatus.CANCELLED.value,
            cancel_reason="payment_expired",
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        db.session.rollback()
        return "skipped"
    db.session.commit()

    order = db.session.get(Order, int(order_id))
    notification_service.send_text(
        order.customer_phone,
        f"Your payment window for order {order.order_number} has expired and the order was cancelled. "
        "Reply to start a new order.",
        purpose="payment_expired",
    )
    return "expired"


def run_payment_timeout_sweep(*, limit: int = 200) -> dict:
    return run_sweep(JOB_NAME, candidates=_candidates, process=expire_order, subject_type="order", limit=limit)
