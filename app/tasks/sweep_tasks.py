from __future__ import annotations

import time

from celery import shared_task

from app.tasks.task_support import can_retry, retry_countdown, task_log


def _run(task, name: str, runner, trace_id: str) -> dict:
    started = time.perf_counter()
    try:
        result = runner()
        task_log(
            name,
            status="ok" if bool(result.get("ok")) else "failed",
            started_at=started,
            trace_id=trace_id,
            processed=int(result.get("processed") or 0),
            errors=int(result.get("errors") or 0),
        )
        return result
    except Exception as exc:
        if can_retry(task):
            countdown = retry_countdown(int(task.request.retries or 0))
            task_log(name, status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown)
            raise task.retry(exc=exc, countdown=countdown)
        task_log(name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise


@shared_task(bind=True, name="app.tasks.sweep_tasks.payment_timeout", max_retries=3)
def payment_timeout_task(self, *, trace_id: str = ""):
    from app.jobs.payment_timeout import run_payment_timeout_sweep

    return _run(self, "payment_timeout", run_payment_timeout_sweep, trace_id)


@shared_task(bind=True, name="app.tasks.sweep_tasks.order_cleanup", max_retries=3)
def order_cleanup_task(self, *, trace_id: str = ""):
    from app.jobs.order_cleanup import run_order_cleanup_sweep

    return _run(self, "order_cleanup", run_order_cleanup_sweep, trace_id)


@shared_task(bind=True, name="app.tasks.sweep_tasks.delivery_retry", max_retries=3)
def delivery_retry_task(self, *, trace_id: str = ""):
    from app.jobs.delivery_retry import run_stuck_delivery_sweep

    return _run(self, "delivery_retry", run_stuck_delivery_sweep, trace_id)


@shared_task(bind=True, name="app.tasks.sweep_tasks.auto_release", max_retries=3)
def auto_release_task(self, *, trace_id: str = ""):
    from app.jobs.escrow_runner import run_auto_release_sweep

    return _run(self, "auto_release", run_auto_release_sweep, trace_id)
