from __future__ import annotations

import os


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def env_int(name: str, default: int, *, minimum: int = 0, maximum: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if maximum is not None and value > maximum:
        value = maximum
    return value


def env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else float(default)
    except Exception:
        value = float(default)
    return value if value >= minimum else minimum


def env_csv(name: str) -> list[str]:
    raw = (os.getenv(name) or "").strip()
    return [part.strip() for part in raw.split(",") if part.strip()]


def app_env() -> str:
    return (os.getenv("SWIFTCART_ENV", "dev") or "dev").strip().lower()


def is_production() -> bool:
    return app_env() in ("prod", "production")
