import os
import subprocess
import json
import click
from pathlib import Path
from flask import Flask, jsonify, request, g
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from app.extensions import db, migrate, cors
from app.segments.segment_payment_webhooks import webhooks_bp
from app.segments.segment_whatsapp_webhooks import whatsapp_bp
from app.segments.segment_orders_api import orders_bp
from app.segments.segment_deliveries import deliveries_bp
from app.segments.segment_riders import riders_bp
from app.segments.segment_escrow import escrow_bp
from app.segments.segment_wallets import wallets_bp
from app.segments.segment_reconciliation_admin import recon_bp
from app.segments.segment_alerts import alerts_bp
from app.segments.segment_invoices import invoices_bp
from app.utils.env import app_env, env_int
from app.utils.errors import DomainError
from app.utils.observability import init_sentry, install_request_observers


def _resolve_git_sha() -> str:
    for env_key in ("RENDER_GIT_COMMIT", "GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except Exception:
        return "unknown"


def _error_payload(error: str, message: str, status: int) -> dict:
    payload = {"ok": False, "error": error, "message": message, "status": int(status)}
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = app_env()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        if not (os.getenv("PAYSTACK_WEBHOOK_SECRET") or os.getenv("PAYSTACK_SECRET_KEY") or "").strip():
            raise RuntimeError("PAYSTACK_WEBHOOK_SECRET (or PAYSTACK_SECRET_KEY) must be set in production")
        # Webhook dedup and sweep locks must be shared across workers.
        if not (os.getenv("CACHE_REDIS_URL") or os.getenv("REDIS_URL") or "").strip():
            raise RuntimeError("REDIS_URL (or CACHE_REDIS_URL) must be set in production")

    # Basic config
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # Database config
    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'swiftcart.db').replace(os.sep, '/')}"
    # Heroku-style URLs still say postgres://
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            int(engine_options.get("pool_size", 0) or 0),
            int(engine_options.get("max_overflow", 0) or 0),
            int(engine_options.get("pool_timeout", 0) or 0),
            int(engine_options.get("pool_recycle", 0) or 0),
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # CORS configuration
    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    @app.errorhandler(DomainError)
    def _api_domain_error(error: DomainError):
        payload = error.to_dict()
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            payload["trace_id"] = rid
        app.logger.info("domain_error code=%s status=%s path=%s", error.code, error.http_status, request.path)
        return jsonify(payload), int(error.http_status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        status = int(error.code or 500)
        return jsonify(_error_payload(error.name, error.description or error.name, status)), status

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        try:
            db.session.rollback()
        except Exception:
            pass
        if not request.path.startswith("/api/"):
            return jsonify({"ok": False, "error": "InternalServerError", "message": "Internal server error"}), 500
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    # Register API routes
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(whatsapp_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(deliveries_bp)
    app.register_blueprint(riders_bp)
    app.register_blueprint(escrow_bp)
    app.register_blueprint(wallets_bp)
    app.register_blueprint(recon_bp)
    app.register_blueprint(alerts_bp)
    app.register_blueprint(invoices_bp)

    # Health check
    @app.get("/api/health")
    def health():
        from app.integrations.messaging.factory import messaging_health
        from app.integrations.payments.factory import payment_health
        from app.utils.cache_layer import cache_stats
        from app.utils.rate_limit import limiter_stats

        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": db_state == "ok",
            "service": "swiftcart-backend",
            "env": env,
            "db": db_state,
            "git_sha": _resolve_git_sha(),
            "payments": payment_health(),
            "messaging": messaging_health(),
            "cache": cache_stats(),
            "rate_limit": limiter_stats(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload), 200 if db_state == "ok" else 503

    @app.get("/")
    def root():
        return jsonify({"ok": True, "service": "swiftcart-backend", "env": env})

    @app.before_request
    def _reset_db_session():
        try:
            db.session.rollback()
        except Exception:
            pass

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("init-db")
    def init_db():
        """Create all tables for a fresh database."""
        import app.models  # noqa: F401

        db.create_all()
        click.echo("init_db_ok")

    @app.cli.command("run-sweep")
    @click.argument("name")
    def run_sweep_command(name: str):
        """Run one reconciliation sweep now (payment_timeout, order_cleanup, delivery_retry, auto_release)."""
        from app.jobs.registry import SWEEPS, run_named_sweep

        try:
            result = run_named_sweep(name)
        except KeyError:
            raise click.ClickException(f"Unknown sweep {name!r}; expected one of {', '.join(sorted(SWEEPS))}.")
        click.echo(json.dumps(result, default=str))

    return app
