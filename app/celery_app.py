from __future__ import annotations

import json
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry

from app.utils.env import env_int, env_str

FULFILLMENT_QUEUE = "fulfillment"
SWEEPS_QUEUE = "sweeps"

TASK_MODULES = (
    "app.tasks.fulfillment_tasks",
    "app.tasks.sweep_tasks",
)

# Beat never fires a sweep more often than this.
_MIN_INTERVAL_SECONDS = 30

_SIGNALS_BOUND = False


def _broker_url() -> str:
    return env_str("CELERY_BROKER_URL") or env_str("REDIS_URL") or "redis://localhost:6379/0"


def _result_backend(broker_url: str) -> str:
    return env_str("CELERY_RESULT_BACKEND") or env_str("REDIS_URL") or broker_url


def sweep_schedule() -> dict:
    """Beat entries for the four reconciliation sweeps, keyed by entry name."""
    entries = (
        ("payment-timeout-sweep", "payment_timeout", "PAYMENT_TIMEOUT_INTERVAL_SECONDS", 300),
        ("order-cleanup-sweep", "order_cleanup", "ORDER_CLEANUP_INTERVAL_SECONDS", 600),
        ("delivery-retry-sweep", "delivery_retry", "DELIVERY_RETRY_INTERVAL_SECONDS", 900),
        ("auto-release-sweep", "auto_release", "AUTO_RELEASE_INTERVAL_SECONDS", 3600),
    )
    return {
        entry: {
            "task": f"app.tasks.sweep_tasks.{task}",
            "schedule": float(env_int(interval_env, default, minimum=_MIN_INTERVAL_SECONDS)),
        }
        for entry, task, interval_env, default in entries
    }


def task_routes() -> dict:
    return {
        "app.tasks.fulfillment_tasks.*": {"queue": FULFILLMENT_QUEUE},
        "app.tasks.sweep_tasks.*": {"queue": SWEEPS_QUEUE},
    }


def _trace_id(kwargs) -> str:
    if isinstance(kwargs, dict):
        return str(kwargs.get("trace_id") or "").strip()
    return ""


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        task_name = getattr(sender, "name", "") if sender is not None else ""
        payload = {
            "event": "celery_task_failure",
            "task_name": task_name,
            "task_id": str(task_id or ""),
            "trace_id": _trace_id(kwargs),
            "exception": str(exception or ""),
            "timestamp": datetime.utcnow().isoformat(),
        }
        with flask_app.app_context():
            flask_app.logger.error(json.dumps(payload))
            from app.models import Severity
            from app.utils.events import log_event

            # A failure signal only arrives once retries are exhausted.
            log_event(
                "task_failed",
                severity=Severity.HIGH,
                message=f"{task_name} gave up: {exception}",
                subject_type="task",
                subject_id=str(task_id or ""),
                metadata={"kwargs": kwargs if isinstance(kwargs, dict) else {}},
                idempotency_key=f"task_failed:{task_id}" if task_id else None,
            )

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_retry",
            "task_name": str(getattr(request, "task", "") or ""),
            "task_id": str(getattr(request, "id", "") or ""),
            "trace_id": _trace_id(getattr(request, "kwargs", None)),
            "reason": str(reason or ""),
            "retry_count": int(getattr(request, "retries", 0) or 0),
            "timestamp": datetime.utcnow().isoformat(),
        }
        with flask_app.app_context():
            flask_app.logger.warning(json.dumps(payload))

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    broker = _broker_url()
    celery = Celery(flask_app.import_name, broker=broker, backend=_result_backend(broker))
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        imports=TASK_MODULES,
        task_routes=task_routes(),
        beat_schedule=sweep_schedule(),
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    _bind_task_observers(flask_app)
    return celery
