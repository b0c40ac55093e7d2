from __future__ import annotations

import time

from celery import shared_task

from app.tasks.task_support import can_retry, retry_countdown, task_log


@shared_task(bind=True, name="app.tasks.fulfillment_tasks.process_paystack_event", max_retries=5)
def process_paystack_event_task(self, *, payload: dict, trace_id: str = ""):
    """Process an already-authenticated gateway event; 5xx outcomes are retried."""
    from app.services.payment_confirmation import handle_paystack_event

    started = time.perf_counter()
    reference = str(((payload or {}).get("data") or {}).get("reference") or "")
    body, code = handle_paystack_event(payload if isinstance(payload, dict) else {})
    if int(code) >= 500 and can_retry(self):
        countdown = retry_countdown(int(self.request.retries or 0))
        task_log(
            "process_paystack_event",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            reference=reference,
            status_code=int(code),
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError(f"webhook_status_{int(code)}"), countdown=countdown)
    task_log(
        "process_paystack_event",
        status="ok" if int(code) < 500 else "failed",
        started_at=started,
        trace_id=trace_id,
        reference=reference,
        status_code=int(code),
    )
    return {"ok": int(code) < 500, "status_code": int(code), "body": body}


@shared_task(bind=True, name="app.tasks.fulfillment_tasks.post_payment_side_effects", max_retries=0)
def post_payment_side_effects_task(self, *, order_id: int, trace_id: str = ""):
    # Each step already isolates its own failures; recovery is via sweeps.
    from app.services.payment_confirmation import perform_post_payment_side_effects

    started = time.perf_counter()
    result = perform_post_payment_side_effects(int(order_id))
    task_log("post_payment_side_effects", status="ok", started_at=started, trace_id=trace_id, order_id=int(order_id), **result)
    return result


@shared_task(bind=True, name="app.tasks.fulfillment_tasks.send_notification", max_retries=3)
def send_notification_task(self, *, kind: str, recipient: str, payload: dict, purpose: str = "", trace_id: str = ""):
    from app.services.notification_service import deliver

    started = time.perf_counter()
    last_attempt = not can_retry(self)
    ok = deliver(kind, recipient, payload or {}, purpose=purpose, record_failures=last_attempt)
    if not ok and not last_attempt:
        countdown = retry_countdown(int(self.request.retries or 0))
        task_log("send_notification", status="retrying", started_at=started, trace_id=trace_id, kind=kind, purpose=purpose, countdown=countdown)
        raise self.retry(exc=RuntimeError("notification_send_failed"), countdown=countdown)
    task_log("send_notification", status="ok" if ok else "failed", started_at=started, trace_id=trace_id, kind=kind, purpose=purpose)
    return {"ok": bool(ok)}


@shared_task(bind=True, name="app.tasks.fulfillment_tasks.send_admin_alert", max_retries=0)
def send_admin_alert_task(self, *, phones: list, body: str, trace_id: str = ""):
    # Alert fan-out is best effort; a lost alert is still on the feed and the SSE stream.
    from app.services.notification_service import send_batch

    started = time.perf_counter()
    result = send_batch(list(phones or []), body, purpose="admin_alert", record_failures=False)
    task_log("send_admin_alert", status="ok", started_at=started, trace_id=trace_id, **result)
    return result
