from __future__ import annotations

from app.utils.env import env_str


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


def integrations_mode() -> str:
    mode = (env_str("INTEGRATIONS_MODE", "sandbox") or "sandbox").lower()
    if mode not in ("disabled", "sandbox", "live"):
        return "sandbox"
    return mode
