from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import and_, or_, update

from app.extensions import db
from app.jobs.sweep_runner import run_sweep
from app.models import Order, OrderStatus, PaymentStatus
from app.services import notification_service
from app.services.stock_service import release_reserved_stock
from app.utils.env import env_int

JOB_NAME = "order_cleanup"


def abandon_hours() -> int:
    return env_int("ORDER_ABANDON_HOURS", 24, minimum=1, maximum=24 * 30)


def _expired_pending_clause(now: datetime):
    return and_(
        Order.payment_status == PaymentStatus.PENDING.value,
        or_(
            and_(Order.payment_expires_at.isnot(None), Order.payment_expires_at < now),
            and_(Order.payment_expires_at.is_(None), Order.created_at < now - timedelta(hours=abandon_hours())),
        ),
    )


def _candidates(limit: int) -> list[int]:
    now = datetime.utcnow()
    # Orders the timeout sweep already cancelled can still hold reserved stock.
    dead_with_stock = and_(
        Order.stock_reserved.is_(True),
        or_(Order.payment_status == PaymentStatus.FAILED.value, Order.status == OrderStatus.CANCELLED.value),
    )
    rows = (
        db.session.query(Order.id)
        .filter(or_(_expired_pending_clause(now), dead_with_stock))
        .order_by(Order.id.asc())
        .limit(limit)
        .all()
    )
    return [int(r[0]) for r in rows]


def cleanup_order(order_id: int) -> str:
    now = datetime.utcnow()
    order = db.session.get(Order, int(order_id))
    if order is None:
        return "skipped"

    newly_cancelled = False
    if order.payment_status == PaymentStatus.PENDING.value:
        result = db.session.execute(
            update(Order)
            .where(Order.id == int(order.id), _expired_pending_clause(now))
            .values(
                payment_status=PaymentStatus.FAILED.value,
                status=OrderStatus.CANCELLED.value,
                cancel_reason="abandoned",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            db.session.rollback()
            return "skipped"
        newly_cancelled = True
    elif order.payment_status == PaymentStatus.PAID.value:
        return "skipped"

    restored = release_reserved_stock(order)
    db.session.commit()

    if newly_cancelled:
        notification_service.send_text(
            order.customer_phone,
            f"Your order {order.order_number} was cancelled because payment was not completed.",
            purpose="order_abandoned",
        )
    return "restored" if restored else "cancelled"


def run_order_cleanup_sweep(*, limit: int = 200) -> dict:
    return run_sweep(JOB_NAME, candidates=_candidates, process=cleanup_order, subject_type="order", limit=limit)
