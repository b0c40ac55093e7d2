from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models import IdempotencyKey
from app.utils import cache_layer
from app.utils.env import env_int


def webhook_dedup_ttl_seconds() -> int:
    return env_int("WEBHOOK_DEDUP_TTL_SECONDS", 86400, minimum=60, maximum=7 * 86400)


def webhook_dedup_key(event_type: str, reference: str, *, provider: str = "paystack") -> str:
    event = (event_type or "unknown").strip().lower()
    ref = (reference or "").strip()
    return f"webhook:{provider}:{event}:{ref}"


def claim_webhook_event(event_type: str, reference: str, *, provider: str = "paystack") -> bool:
    """Idempotency gate for gateway events.

    True means this delivery owns the event and must process it; False means
    an earlier delivery already claimed it within the dedup window.
    """
    key = webhook_dedup_key(event_type, reference, provider=provider)
    return cache_layer.set_if_absent(key, webhook_dedup_ttl_seconds())


def release_webhook_event(event_type: str, reference: str, *, provider: str = "paystack") -> None:
    cache_layer.delete(webhook_dedup_key(event_type, reference, provider=provider))


def _canonical_json(payload: Any) -> str:
    try:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except Exception:
        return str(payload)


def _hash_request(*, scope: str, payload: Any) -> str:
    raw = f"{scope.strip()}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def lookup_response(scope: str, payload: Any, *, idempotency_key: str | None = None):
    """Replay support for client-retried writes carrying an Idempotency-Key.

    Returns None when no key was supplied, ``("hit", body, status)`` for a
    replay, ``("conflict", body, 409)`` when the key was reused with another
    payload, and ``("miss", row, 0)`` when the caller should proceed and then
    call :func:`store_response`.
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not k:
        return None
    scope_key = (scope or "").strip()[:128]
    req_hash = _hash_request(scope=scope_key, payload=payload)
    row = IdempotencyKey.query.filter_by(scope=scope_key, key=k).first()
    if row is not None:
        if (row.request_hash or "") != req_hash:
            return (
                "conflict",
                {
                    "ok": False,
                    "error": "IDEMPOTENCY_KEY_REUSE",
                    "message": "This Idempotency-Key was already used with a different request payload.",
                },
                409,
            )
        try:
            body = json.loads(row.response_json) if row.response_json else {"ok": True, "pending": True}
        except Exception:
            body = {"ok": True}
        return ("hit", body, int(row.status_code or 200))

    row = IdempotencyKey(key=k, scope=scope_key, request_hash=req_hash)
    try:
        db.session.add(row)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return lookup_response(scope, payload, idempotency_key=k)
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    try:
        row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    except Exception:
        row.response_json = json.dumps({"ok": True})
    row.status_code = int(status_code or 200)
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


def discard_key(row: IdempotencyKey) -> None:
    """Forget a claimed key whose request failed so the client can retry."""
    try:
        db.session.delete(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
