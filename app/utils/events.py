from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models import PlatformEvent, Severity
from app.utils.connection_registry import ALERTS_TOPIC, registry
from app.utils.env import env_csv
from app.utils.observability import get_request_id


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    try:
        return str(value)
    except Exception:
        return "<unserializable>"


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    try:
        return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)
    except Exception:
        try:
            return json.dumps({"raw": str(normalized)})
        except Exception:
            return "{}"


def _normalize_severity(severity) -> Severity:
    if isinstance(severity, Severity):
        return severity
    try:
        return Severity(str(severity or "INFO").strip().upper())
    except ValueError:
        return Severity.INFO


def admin_alert_phones() -> list[str]:
    return env_csv("ADMIN_ALERT_PHONES")


def _publish_alert(event: PlatformEvent) -> None:
    payload = event.to_dict()
    try:
        current_app.logger.error(json.dumps({"event": "operational_alert", **payload}))
    except Exception:
        pass
    registry.broadcast(ALERTS_TOPIC, payload)

    phones = admin_alert_phones()
    if not phones:
        return
    from app.services.notification_service import send_batch, side_effects_queued

    body = f"[{payload['severity']}] {payload['event_type']}: {payload['message'] or payload['subject_id']}"[:900]
    if side_effects_queued():
        try:
            from app.tasks.fulfillment_tasks import send_admin_alert_task

            send_admin_alert_task.delay(phones=phones, body=body, trace_id=payload.get("request_id") or "")
            return
        except Exception:
            current_app.logger.exception("admin_alert_enqueue_failed event_id=%s", event.id)
    send_batch(phones, body, purpose="admin_alert", record_failures=False)


def log_event(
    event_type: str,
    *,
    severity: Severity | str = Severity.INFO,
    message: str = "",
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    actor: str | None = "system",
    request_id: str | None = None,
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> PlatformEvent | None:
    """Write an activity-feed row and raise live alerts for HIGH/CRITICAL.

    Commits its own row, so it must be called outside any open financial
    transaction. Never raises to the caller.
    """
    level = _normalize_severity(severity)
    try:
        if not request_id:
            request_id = get_request_id()
        key = (idempotency_key or "").strip()[:180] or None
        if key:
            existing = PlatformEvent.query.filter_by(idempotency_key=key).first()
            if existing:
                return existing

        event = PlatformEvent(
            event_type=(event_type or "unknown").strip()[:80],
            actor=(actor or "").strip()[:64] or None,
            subject_type=(subject_type or "").strip()[:40] or None,
            subject_id=str(subject_id)[:120] if subject_id is not None else None,
            request_id=(request_id or "").strip()[:80] or None,
            idempotency_key=key,
            severity=level.value,
            message=(message or "").strip()[:500] or None,
            metadata_json=_safe_json(metadata or {}),
        )
        db.session.add(event)
        db.session.commit()
    except IntegrityError:
        try:
            db.session.rollback()
        except Exception:
            pass
        if idempotency_key:
            try:
                return PlatformEvent.query.filter_by(idempotency_key=idempotency_key[:180]).first()
            except Exception:
                return None
        return None
    except Exception:
        try:
            db.session.rollback()
        except Exception:
            pass
        if has_app_context():
            current_app.logger.exception("platform_event_write_failed event_type=%s", event_type)
        return None

    if level.alerts:
        try:
            _publish_alert(event)
        except Exception:
            current_app.logger.exception("operational_alert_publish_failed event_id=%s", event.id)
    return event
