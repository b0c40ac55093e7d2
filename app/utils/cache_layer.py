from __future__ import annotations

import threading
import time

import redis

from app.utils.env import env_str, is_production


_LOCK = threading.Lock()
_CLIENT = None
_CLIENT_INIT_ATTEMPTED = False
_CLIENT_RETRY_AT = 0.0
_CLIENT_RETRY_SECONDS = 5.0

# Process-local fallback used when no Redis URL is configured: key -> expires_at (epoch).
_MEMORY: dict[str, float] = {}

_STATS = {
    "claims": 0,
    "duplicates": 0,
    "deletes": 0,
    "errors": 0,
    "memory_fallbacks": 0,
}


def _cache_redis_url() -> str:
    return env_str("CACHE_REDIS_URL") or env_str("REDIS_URL")


def _bump_stat(name: str, delta: int = 1) -> None:
    with _LOCK:
        _STATS[name] = int(_STATS.get(name, 0) or 0) + int(delta)


def _get_client():
    global _CLIENT, _CLIENT_INIT_ATTEMPTED, _CLIENT_RETRY_AT
    with _LOCK:
        if _CLIENT is not None or (_CLIENT_INIT_ATTEMPTED and time.time() < _CLIENT_RETRY_AT):
            return _CLIENT
        _CLIENT_INIT_ATTEMPTED = True

    url = _cache_redis_url()
    if not url:
        return None
    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=0.75,
            socket_connect_timeout=0.75,
            health_check_interval=30,
        )
        client.ping()
        with _LOCK:
            _CLIENT = client
        return client
    except Exception:
        _bump_stat("errors")
        with _LOCK:
            _CLIENT = None
            _CLIENT_RETRY_AT = time.time() + _CLIENT_RETRY_SECONDS
        return None


def _memory_set_if_absent(key: str, ttl_seconds: int) -> bool:
    now = time.time()
    with _LOCK:
        expires_at = _MEMORY.get(key)
        if expires_at is not None and expires_at > now:
            return False
        _MEMORY[key] = now + max(1, int(ttl_seconds))
        if len(_MEMORY) > 50000:
            for stale in [k for k, exp in _MEMORY.items() if exp <= now]:
                _MEMORY.pop(stale, None)
    return True


def set_if_absent(key: str, ttl_seconds: int, value: str = "1") -> bool:
    """Atomically claim ``key`` for ``ttl_seconds``.

    Returns True when this caller created the key and False when it already
    existed. Backed by Redis ``SET NX EX``; without a configured Redis URL the
    claim is process-local, which only holds for single-process deployments.
    Production never falls back: with Redis unreachable the claim raises.
    """
    ttl = max(1, int(ttl_seconds or 1))
    client = _get_client()
    if client is not None:
        try:
            created = bool(client.set(str(key), str(value), nx=True, ex=ttl))
            _bump_stat("claims" if created else "duplicates")
            return created
        except redis.RedisError:
            _bump_stat("errors")
            raise
    if is_production():
        _bump_stat("errors")
        raise redis.ConnectionError("cache redis is not available; refusing a process-local claim in production")
    _bump_stat("memory_fallbacks")
    created = _memory_set_if_absent(str(key), ttl)
    _bump_stat("claims" if created else "duplicates")
    return created


def exists(key: str) -> bool:
    client = _get_client()
    if client is not None:
        try:
            return bool(client.exists(str(key)))
        except redis.RedisError:
            _bump_stat("errors")
            return False
    with _LOCK:
        expires_at = _MEMORY.get(str(key))
        return expires_at is not None and expires_at > time.time()


def delete(key: str) -> int:
    client = _get_client()
    if client is not None:
        try:
            removed = int(client.delete(str(key)) or 0)
            if removed > 0:
                _bump_stat("deletes", removed)
            return removed
        except redis.RedisError:
            _bump_stat("errors")
            return 0
    with _LOCK:
        removed = 1 if _MEMORY.pop(str(key), None) is not None else 0
    if removed:
        _bump_stat("deletes")
    return removed


def cache_stats() -> dict:
    client = _get_client()
    base = {
        "backend": "redis" if client is not None else "memory",
        "url_configured": bool(_cache_redis_url()),
    }
    with _LOCK:
        base.update({name: int(value or 0) for name, value in _STATS.items()})
        base["memory_keys"] = len(_MEMORY)
    return base


def _reset_cache_state_for_tests() -> None:
    global _CLIENT, _CLIENT_INIT_ATTEMPTED, _CLIENT_RETRY_AT
    with _LOCK:
        _CLIENT = None
        _CLIENT_INIT_ATTEMPTED = False
        _CLIENT_RETRY_AT = 0.0
        _MEMORY.clear()
        for key in _STATS:
            _STATS[key] = 0
