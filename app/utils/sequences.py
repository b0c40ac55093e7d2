from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models import SequenceCounter

ORDER_PREFIX = "ORD"
DELIVERY_PREFIX = "DEL"
INVOICE_PREFIX = "INV"
WITHDRAWAL_PREFIX = "WDR"

_MAX_INSERT_ATTEMPTS = 3


def _period(now: datetime, period_format: str) -> str:
    return now.strftime(period_format)


def next_value(prefix: str, period: str) -> int:
    """Atomically increment and return the counter for (prefix, period).

    Runs inside the caller's transaction: the row lock taken by the UPDATE is
    held until the caller commits, so concurrent creators serialize on it
    instead of reading the same count.
    """
    for _ in range(_MAX_INSERT_ATTEMPTS):
        result = db.session.execute(
            update(SequenceCounter)
            .where(SequenceCounter.prefix == prefix, SequenceCounter.period == period)
            .values(value=SequenceCounter.value + 1, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) == 1:
            value = db.session.query(SequenceCounter.value).filter_by(prefix=prefix, period=period).scalar()
            return int(value or 0)
        try:
            with db.session.begin_nested():
                db.session.add(SequenceCounter(prefix=prefix, period=period, value=1))
            return 1
        except IntegrityError:
            # Another writer created the row first; increment theirs.
            continue
    raise RuntimeError(f"sequence_unavailable prefix={prefix} period={period}")


def next_number(prefix: str, *, period_format: str = "%Y%m%d", now: datetime | None = None, width: int = 4) -> str:
    """Return ``PREFIX-<period>-NNNN`` using the atomic per-period counter."""
    period = _period(now or datetime.utcnow(), period_format)
    value = next_value(prefix, period)
    return f"{prefix}-{period}-{value:0{int(width)}d}"
