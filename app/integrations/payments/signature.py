from __future__ import annotations

import hashlib
import hmac

from app.utils.env import env_str


def webhook_secret() -> str:
    return env_str("PAYSTACK_WEBHOOK_SECRET") or env_str("PAYSTACK_SECRET_KEY")


def compute_signature(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw or b"", hashlib.sha512).hexdigest()


def verify_webhook_signature(raw: bytes, signature: str | None, *, secret: str | None = None) -> bool:
    """HMAC-SHA512 over the raw request body, compared in constant time."""
    key = secret if secret is not None else webhook_secret()
    sig = (signature or "").strip().lower()
    if not key or not sig:
        return False
    expected = compute_signature(raw or b"", key)
    return hmac.compare_digest(expected, sig)
