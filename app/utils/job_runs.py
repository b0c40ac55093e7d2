from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime

from flask import current_app

from app.extensions import db
from app.models import JobRun
from app.utils import cache_layer
from app.utils.env import env_bool, env_int


def job_enabled(job_name: str) -> bool:
    return env_bool(f"JOB_{job_name.strip().upper()}_ENABLED", True)


def sweep_lock_ttl_seconds() -> int:
    return env_int("SWEEP_LOCK_TTL_SECONDS", 240, minimum=5, maximum=3600)


@contextmanager
def sweep_lock(job_name: str, *, ttl_seconds: int | None = None):
    """Leader lock for multi-instance deployments.

    Yields True when this process won the lock; other instances yield False
    and should skip the run. The TTL bounds how long a crashed holder can
    block the next cycle.
    """
    key = f"sweep-lock:{job_name}"
    acquired = cache_layer.set_if_absent(key, int(ttl_seconds or sweep_lock_ttl_seconds()))
    try:
        yield acquired
    finally:
        if acquired:
            cache_layer.delete(key)


def record_job_run(
    *,
    job_name: str,
    ok: bool,
    started_at: datetime,
    error: str | None = None,
    summary: dict | None = None,
    skipped: bool = False,
) -> JobRun | None:
    duration_ms: int | None = None
    try:
        duration_ms = max(0, int((datetime.utcnow() - started_at).total_seconds() * 1000))
    except Exception:
        duration_ms = None
    try:
        row = JobRun(
            job_name=(job_name or "unknown").strip()[:64],
            ran_at=datetime.utcnow(),
            ok=bool(ok),
            skipped=bool(skipped),
            duration_ms=duration_ms,
            summary_json=json.dumps(summary or {}, default=str)[:20000],
            error=(error or "")[:1000] or None,
        )
        db.session.add(row)
        db.session.commit()
    except Exception:
        try:
            db.session.rollback()
        except Exception:
            pass
        return None
    try:
        current_app.logger.info(json.dumps({"event": "job_run", **row.to_dict()}))
    except Exception:
        pass
    return row
