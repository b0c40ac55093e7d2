from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Callable

from flask import current_app

from app.extensions import db
from app.models import Severity
from app.utils.events import log_event
from app.utils.job_runs import job_enabled, record_job_run, sweep_lock


def _now():
    return datetime.utcnow()


def run_sweep(
    job_name: str,
    *,
    candidates: Callable[[int], list[int]],
    process: Callable[[int], str | None],
    subject_type: str,
    limit: int = 200,
) -> dict:
    """Shared loop for reconciliation sweeps.

    ``candidates`` returns ids to look at; ``process`` handles one id and
    returns an outcome label counted in the summary. One item failing rolls
    back that item only and the loop continues.
    """
    started_at = _now()
    if not job_enabled(job_name):
        result = {"ok": False, "job": job_name, "disabled": True, "processed": 0, "errors": 0, "ts": _now().isoformat()}
        record_job_run(job_name=job_name, ok=False, started_at=started_at, error="disabled_by_flag", summary=result, skipped=True)
        return result

    with sweep_lock(job_name) as acquired:
        if not acquired:
            result = {"ok": True, "job": job_name, "skipped": True, "reason": "locked", "processed": 0, "errors": 0, "ts": _now().isoformat()}
            record_job_run(job_name=job_name, ok=True, started_at=started_at, summary=result, skipped=True)
            return result

        counts: Counter = Counter()
        for item_id in candidates(int(limit)):
            counts["processed"] += 1
            try:
                outcome = process(int(item_id))
                counts[outcome or "done"] += 1
            except Exception as e:
                counts["errors"] += 1
                db.session.rollback()
                current_app.logger.warning("sweep_item_failed job=%s %s_id=%s error=%s", job_name, subject_type, item_id, e)
                log_event(
                    f"{job_name}_item_failed",
                    severity=Severity.HIGH,
                    message=f"{job_name} could not process {subject_type} {item_id}: {type(e).__name__}: {e}"[:500],
                    subject_type=subject_type,
                    subject_id=item_id,
                    actor=f"job:{job_name}",
                    metadata={"error": str(e)[:400]},
                )

    errors = int(counts.get("errors", 0))
    result = {
        "ok": True,
        "job": job_name,
        **dict(counts),
        "processed": int(counts.get("processed", 0)),
        "errors": errors,
        "ts": _now().isoformat(),
    }
    record_job_run(
        job_name=job_name,
        ok=errors == 0,
        started_at=started_at,
        error=None if errors == 0 else f"errors={errors}",
        summary=result,
    )
    return result
