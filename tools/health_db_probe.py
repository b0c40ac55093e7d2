import json

from sqlalchemy import text
from sqlalchemy.engine.url import make_url

from app import create_app
from app.extensions import db


def _safe_uri(uri: str) -> str:
    if not uri:
        return "unknown"
    try:
        return make_url(uri).render_as_string(hide_password=True)
    except Exception:
        return "unknown"


def main():
    """Print what a deployed instance can reach: database, cache and gateway config."""
    from app.integrations.messaging.factory import messaging_health
    from app.integrations.payments.factory import payment_health
    from app.utils import cache_layer

    app = create_app()
    with app.app_context():
        uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
        print("SQLALCHEMY_DATABASE_URI:", _safe_uri(uri))
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            print("SELECT 1: success")
        except Exception as e:
            print("SELECT 1: fail")
            msg = str(e)
            if msg:
                msg = (msg[:300] + "...") if len(msg) > 300 else msg
                print("error:", msg)

        probe_key = "health-probe:lock"
        acquired = cache_layer.set_if_absent(probe_key, 5)
        if acquired:
            cache_layer.delete(probe_key)
        print("cache:", json.dumps({"set_if_absent": bool(acquired), **cache_layer.cache_stats()}))
        print("payments:", json.dumps(payment_health()))
        print("messaging:", json.dumps(messaging_health()))


if __name__ == "__main__":
    main()
