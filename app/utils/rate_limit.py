from __future__ import annotations

import threading
import time
from functools import wraps

import redis
from flask import current_app, jsonify, request

from app.utils.env import env_bool, env_str


_LOCK = threading.Lock()
_WINDOWS: dict[str, list[float]] = {}
_CLIENT = None
_CLIENT_INIT = False
_STATS = {
    "redis_hits": 0,
    "redis_errors": 0,
    "memory_hits": 0,
}


def rate_limit_enabled(default: bool = True) -> bool:
    return env_bool("ENABLE_RATE_LIMIT", default)


def trust_proxy_headers(default: bool = False) -> bool:
    return env_bool("TRUST_PROXY_HEADERS", default)


def _rate_limit_redis_url() -> str:
    return env_str("RATE_LIMIT_REDIS_URL") or env_str("REDIS_URL")


def _get_client():
    global _CLIENT, _CLIENT_INIT
    with _LOCK:
        if _CLIENT_INIT:
            return _CLIENT
        _CLIENT_INIT = True
    url = _rate_limit_redis_url()
    if not url:
        return None
    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=0.75,
            socket_timeout=0.75,
            health_check_interval=30,
        )
        client.ping()
        with _LOCK:
            _CLIENT = client
        return client
    except Exception:
        with _LOCK:
            _CLIENT = None
        return None


def check_limit(key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    safe_window = max(1, int(window_seconds))
    safe_limit = max(1, int(limit))
    redis_client = _get_client()
    if redis_client is not None:
        now_sec = int(time.time())
        window_epoch = now_sec // safe_window
        counter_key = f"rl:v1:{key}:{window_epoch}"
        try:
            current = int(redis_client.incr(counter_key))
            if current == 1:
                redis_client.expire(counter_key, safe_window + 1)
            with _LOCK:
                _STATS["redis_hits"] = int(_STATS.get("redis_hits", 0) or 0) + 1
            if current <= safe_limit:
                return True, 0
            retry_after = int(max(1, safe_window - (now_sec % safe_window)))
            return False, retry_after
        except redis.RedisError:
            with _LOCK:
                _STATS["redis_errors"] = int(_STATS.get("redis_errors", 0) or 0) + 1
    return _check_limit_memory(key, limit=safe_limit, window_seconds=safe_window)


def _check_limit_memory(key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    now = time.time()
    start = now - max(1, int(window_seconds))
    safe_limit = max(1, int(limit))
    with _LOCK:
        bucket = [ts for ts in _WINDOWS.get(key, []) if ts >= start]
        if len(bucket) >= safe_limit:
            retry_after = int(max(1, window_seconds - (now - min(bucket))))
            _WINDOWS[key] = bucket
            _STATS["memory_hits"] = int(_STATS.get("memory_hits", 0) or 0) + 1
            return False, retry_after
        bucket.append(now)
        _WINDOWS[key] = bucket
    return True, 0


def resolve_client_ip(req, *, trusted_proxy: bool = True) -> str:
    if trusted_proxy:
        xff = (req.headers.get("X-Forwarded-For") or "").strip()
        if xff:
            first_hop = (xff.split(",")[0] or "").strip()
            if first_hop:
                return first_hop
        x_real_ip = (req.headers.get("X-Real-IP") or "").strip()
        if x_real_ip:
            return x_real_ip
    remote = (req.remote_addr or "").strip()
    return remote or "unknown"


def rate_limit(
    key: str,
    per_seconds: int,
    limit: int,
    *,
    message: str = "Too many requests. Please retry later.",
):
    """Per-IP fixed-window limit for inbound webhook endpoints."""
    safe_key = str(key or "rate_limit")
    safe_window = max(1, int(per_seconds or 1))
    safe_limit = max(1, int(limit or 1))

    def decorator(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if current_app.config.get("TESTING") and not env_bool("RATE_LIMIT_IN_TESTS", False):
                return fn(*args, **kwargs)
            if not rate_limit_enabled(True):
                return fn(*args, **kwargs)
            scope_key = f"{safe_key}:ip:{resolve_client_ip(request, trusted_proxy=trust_proxy_headers(False))}"
            ok, retry_after = check_limit(scope_key, limit=safe_limit, window_seconds=safe_window)
            if ok:
                return fn(*args, **kwargs)
            resp = jsonify(
                {
                    "ok": False,
                    "error": "RATE_LIMITED",
                    "message": message,
                    "retry_after": int(retry_after or 0),
                }
            )
            resp.status_code = 429
            resp.headers["Retry-After"] = str(int(retry_after or 1))
            return resp

        return wrapped

    return decorator


def limiter_stats() -> dict:
    with _LOCK:
        return {
            "enabled": bool(rate_limit_enabled(True)),
            "redis_configured": bool(_rate_limit_redis_url()),
            "redis_connected": bool(_CLIENT is not None),
            "redis_hits": int(_STATS.get("redis_hits", 0) or 0),
            "redis_errors": int(_STATS.get("redis_errors", 0) or 0),
            "memory_hits": int(_STATS.get("memory_hits", 0) or 0),
        }


def _reset_rate_limit_state_for_tests() -> None:
    global _CLIENT, _CLIENT_INIT
    with _LOCK:
        _WINDOWS.clear()
        _CLIENT = None
        _CLIENT_INIT = False
