from __future__ import annotations

import json

from flask import Blueprint, Response, jsonify, request, stream_with_context

from app.models import PlatformEvent, Severity
from app.utils.admin_auth import require_admin
from app.utils.connection_registry import ALERTS_TOPIC, registry
from app.utils.env import env_int
from app.utils.errors import ValidationError

alerts_bp = Blueprint("alerts_bp", __name__, url_prefix="/api/admin/alerts")


def stream_heartbeat_seconds() -> int:
    return env_int("ALERT_STREAM_HEARTBEAT_SECONDS", 15, minimum=1, maximum=300)


@alerts_bp.get("")
def list_alerts():
    err = require_admin()
    if err:
        return err
    q = PlatformEvent.query
    severity = (request.args.get("severity") or "").strip().upper()
    if severity:
        try:
            q = q.filter(PlatformEvent.severity == Severity(severity).value)
        except ValueError:
            raise ValidationError(f"unknown severity {severity}") from None
    event_type = (request.args.get("event_type") or "").strip()
    if event_type:
        q = q.filter(PlatformEvent.event_type == event_type)
    try:
        limit = max(1, min(int(request.args.get("limit") or 50), 200))
    except ValueError:
        raise ValidationError("limit must be an integer") from None
    rows = q.order_by(PlatformEvent.id.desc()).limit(limit).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


def _sse(payload: dict, event: str = "alert") -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


@alerts_bp.get("/stream")
def alert_stream():
    err = require_admin()
    if err:
        return err
    sub = registry.subscribe(ALERTS_TOPIC, recipient_id=request.args.get("client_id"))
    heartbeat = stream_heartbeat_seconds()

    def generate():
        try:
            yield _sse({"subscription": sub.id}, event="ready")
            while True:
                item = sub.get(timeout=heartbeat)
                if item is None:
                    yield ": keepalive\n\n"
                    continue
                yield _sse(item)
        finally:
            registry.unsubscribe(sub)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-store", "X-Accel-Buffering": "no"},
    )
