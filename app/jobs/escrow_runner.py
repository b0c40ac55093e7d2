from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_

from app.extensions import db
from app.jobs.sweep_runner import run_sweep
from app.models import Delivery, DeliveryStatus, Escrow, EscrowStatus
from app.services.delivery_orchestrator import confirm_delivery

JOB_NAME = "auto_release"


def _candidates(limit: int) -> list[int]:
    rows = (
        db.session.query(Delivery.id)
        .outerjoin(Escrow, Escrow.order_id == Delivery.order_id)
        .filter(
            Delivery.status == DeliveryStatus.DELIVERED.value,
            Delivery.auto_release_at.isnot(None),
            Delivery.auto_release_at < datetime.utcnow(),
            # Confirmed deliveries whose release failed earlier are retried too.
            or_(Delivery.customer_confirmed.is_(False), Escrow.status == EscrowStatus.HELD.value),
        )
        .order_by(Delivery.auto_release_at.asc())
        .limit(limit)
        .all()
    )
    return [int(r[0]) for r in rows]


def auto_release(delivery_id: int) -> str:
    result = confirm_delivery(int(delivery_id), source="auto_release")
    return "released" if result.get("settlement") is not None else "confirmed"


def run_auto_release_sweep(*, limit: int = 200) -> dict:
    """Treat silence past the confirmation window as receipt and release escrow."""
    return run_sweep(JOB_NAME, candidates=_candidates, process=auto_release, subject_type="delivery", limit=limit)
