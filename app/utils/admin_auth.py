from __future__ import annotations

import hmac

from flask import jsonify, request

from app.utils.env import env_str, is_production


def _bearer() -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header.replace("Bearer ", "", 1).strip() or None


def require_admin():
    """Return an error response unless the caller presents the admin token.

    Without ``ADMIN_API_TOKEN`` configured, admin routes are open in dev and
    closed in production.
    """
    expected = env_str("ADMIN_API_TOKEN")
    if not expected:
        if is_production():
            return jsonify({"ok": False, "error": "ADMIN_DISABLED", "message": "Admin token not configured"}), 403
        return None
    supplied = _bearer() or (request.headers.get("X-Admin-Token") or "").strip()
    if not supplied or not hmac.compare_digest(supplied, expected):
        return jsonify({"ok": False, "error": "FORBIDDEN", "message": "Admin required"}), 403
    return None
