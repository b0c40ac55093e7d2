from __future__ import annotations

import json
import time
from datetime import datetime

from flask import current_app

from app.extensions import db
from app.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from app.integrations.messaging.base import MessageResult, PromptButton
from app.integrations.messaging.factory import build_messaging_provider
from app.models import Notification, Severity
from app.utils.env import env_bool, env_int, env_str


KIND_TEXT = "text"
KIND_DOCUMENT = "document"
KIND_INTERACTIVE = "interactive"


def broadcast_delay_ms() -> int:
    return env_int("BROADCAST_DELAY_MS", 1000, minimum=0, maximum=60000)


def side_effects_queued() -> bool:
    # With a broker configured, backoff sleeps and broadcast gaps run on workers.
    return env_bool("SIDE_EFFECTS_QUEUE", bool(env_str("CELERY_BROKER_URL")))


def _call_provider(kind: str, recipient: str, payload: dict) -> tuple[MessageResult, str]:
    try:
        provider = build_messaging_provider()
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        return MessageResult(ok=False, code="INTEGRATION_UNAVAILABLE", message=str(e)[:200]), ""
    try:
        if kind == KIND_DOCUMENT:
            result = provider.send_document(
                to=recipient,
                url=payload.get("url", ""),
                caption=payload.get("caption", ""),
                filename=payload.get("filename", ""),
            )
        elif kind == KIND_INTERACTIVE:
            buttons = [PromptButton(id=str(b.get("id")), title=str(b.get("title"))) for b in payload.get("buttons") or []]
            result = provider.send_interactive(to=recipient, body=payload.get("body", ""), buttons=buttons)
        else:
            result = provider.send_text(to=recipient, body=payload.get("body", ""))
    except Exception as e:
        result = MessageResult(ok=False, code="PROVIDER_EXCEPTION", message=f"{type(e).__name__}: {e}"[:200])
    return result, provider.name


def _record(kind: str, recipient: str, payload: dict, result: MessageResult, provider_name: str, purpose: str) -> None:
    text = payload.get("body") or payload.get("caption") or payload.get("url") or ""
    meta = {"purpose": purpose}
    if kind == KIND_DOCUMENT:
        meta["url"] = payload.get("url", "")
    if kind == KIND_INTERACTIVE:
        meta["buttons"] = payload.get("buttons") or []
    if not result.ok:
        meta["error"] = result.message
    try:
        row = Notification(
            recipient=recipient[:32],
            channel="whatsapp",
            kind=kind,
            message=str(text),
            status="sent" if result.ok else "failed",
            provider=provider_name or None,
            provider_ref=(result.provider_ref or "")[:120] or None,
            error_code=None if result.ok else (result.code or "FAILED")[:64],
            sent_at=datetime.utcnow() if result.ok else None,
            meta=json.dumps(meta, separators=(",", ":"), default=str),
        )
        db.session.add(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("notification_record_failed recipient=%s", recipient)


def deliver(kind: str, recipient: str, payload: dict, *, purpose: str = "", record_failures: bool = True) -> bool:
    """Send one message now. Never raises; returns whether the provider accepted it."""
    to = (recipient or "").strip()
    if not to:
        return False
    result, provider_name = _call_provider(kind, to, payload)
    _record(kind, to, payload, result, provider_name, purpose)
    if not result.ok:
        current_app.logger.warning(
            json.dumps(
                {
                    "event": "notification_failed",
                    "kind": kind,
                    "recipient": to,
                    "code": result.code,
                    "purpose": purpose,
                }
            )
        )
        if record_failures:
            from app.utils.events import log_event

            log_event(
                "notification_failed",
                severity=Severity.MEDIUM,
                message=f"{kind} to {to} failed: {result.code}",
                subject_type="recipient",
                subject_id=to,
                metadata={"purpose": purpose, "code": result.code, "detail": result.message},
            )
    return bool(result.ok)


def _dispatch(kind: str, recipient: str, payload: dict, *, purpose: str) -> bool:
    if side_effects_queued():
        try:
            from app.tasks.fulfillment_tasks import send_notification_task

            send_notification_task.delay(kind=kind, recipient=recipient, payload=payload, purpose=purpose)
            return True
        except Exception:
            current_app.logger.exception("notification_enqueue_failed kind=%s", kind)
    return deliver(kind, recipient, payload, purpose=purpose)


def send_text(recipient: str, body: str, *, purpose: str = "") -> bool:
    return _dispatch(KIND_TEXT, recipient, {"body": body}, purpose=purpose)


def send_document(recipient: str, url: str, caption: str = "", filename: str = "", *, purpose: str = "") -> bool:
    return _dispatch(
        KIND_DOCUMENT,
        recipient,
        {"url": url, "caption": caption, "filename": filename},
        purpose=purpose,
    )


def send_interactive_prompt(recipient: str, body: str, buttons: list[PromptButton], *, purpose: str = "") -> bool:
    return _dispatch(
        KIND_INTERACTIVE,
        recipient,
        {"body": body, "buttons": [{"id": b.id, "title": b.title} for b in buttons]},
        purpose=purpose,
    )


def send_batch(
    recipients: list[str],
    body: str,
    *,
    delay_ms: int | None = None,
    purpose: str = "broadcast",
    record_failures: bool = True,
) -> dict:
    """Send the same text to many recipients with a fixed gap between sends."""
    gap = broadcast_delay_ms() if delay_ms is None else max(0, int(delay_ms))
    sent = 0
    failed = 0
    for i, recipient in enumerate(recipients):
        if i > 0 and gap > 0:
            time.sleep(gap / 1000.0)
        if deliver(KIND_TEXT, recipient, {"body": body}, purpose=purpose, record_failures=record_failures):
            sent += 1
        else:
            failed += 1
    return {"sent": sent, "failed": failed, "total": len(recipients)}
