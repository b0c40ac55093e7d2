from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import and_, or_

from app.extensions import db
from app.jobs.sweep_runner import run_sweep
from app.models import Delivery, DeliveryStatus
from app.services.delivery_orchestrator import assign_rider, reassign_delivery
from app.utils.env import env_int
from app.utils.errors import RiderUnavailable

JOB_NAME = "delivery_retry"
STUCK_REASON = "rider not responding"


def stuck_assignment_minutes() -> int:
    return env_int("STUCK_ASSIGNMENT_MINUTES", 30, minimum=1, maximum=24 * 60)


def _candidates(limit: int) -> list[int]:
    cutoff = datetime.utcnow() - timedelta(minutes=stuck_assignment_minutes())
    rows = (
        db.session.query(Delivery.id)
        .filter(
            or_(
                and_(
                    Delivery.status == DeliveryStatus.ASSIGNED.value,
                    Delivery.assigned_at.isnot(None),
                    Delivery.assigned_at < cutoff,
                ),
                and_(Delivery.status == DeliveryStatus.PENDING.value, Delivery.rider_id.is_(None)),
            )
        )
        .order_by(Delivery.id.asc())
        .limit(limit)
        .all()
    )
    return [int(r[0]) for r in rows]


def retry_delivery(delivery_id: int) -> str:
    delivery = db.session.get(Delivery, int(delivery_id))
    if delivery is None:
        return "skipped"
    status = delivery.status_enum
    if status is DeliveryStatus.PENDING:
        try:
            assign_rider(int(delivery.id))
        except RiderUnavailable:
            return "still_pending"
        return "assigned"
    if status is DeliveryStatus.ASSIGNED:
        return "reassigned" if reassign_delivery(int(delivery.id), STUCK_REASON) is not None else "no_rider"
    return "skipped"


def run_stuck_delivery_sweep(*, limit: int = 100) -> dict:
    return run_sweep(JOB_NAME, candidates=_candidates, process=retry_delivery, subject_type="delivery", limit=limit)
