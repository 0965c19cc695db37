"""
Performance Indicator Platform
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.timing import init_request_timing
from app.middleware.actor_context import init_actor_context
from app.middleware.rate_limiter import init_rate_limits

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit — apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def init_collaborators(app):
    """Install the default collaborators unless something is already registered.

    Keys:
        category_directory  get_by_id(id) -> CategoryRef | None
        blob_storage        store(data, folder, name) / fetch(public_id, kind) / delete(public_id, kind)
        notification_sink   notify(...) / emit_to_role(role, payload)
        mailer              send(...) / send_from_template(...)
    """
    from app.services.blob_storage import build_blob_storage
    from app.services.category_directory import SqlCategoryDirectory
    from app.services.email_service import EmailService
    from app.services.notification import NotificationService

    app.extensions.setdefault("category_directory", SqlCategoryDirectory())
    app.extensions.setdefault("blob_storage", build_blob_storage(app))
    app.extensions.setdefault("notification_sink", NotificationService)
    app.extensions.setdefault("mailer", EmailService)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing & actor resolution ────────────────────────────────
    init_request_timing(app)
    init_actor_context(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    @app.before_request
    def _guard_request():
        from flask import request as _req, abort
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.content_length and "json" not in ct and "multipart/form-data" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import auth as _auth_models               # noqa: F401
    from app.models import category as _category_models       # noqa: F401
    from app.models import indicator as _indicator_models     # noqa: F401
    from app.models import notification as _notification_models  # noqa: F401
    from app.models import audit as _audit_models             # noqa: F401
    from app.models import scheduling as _scheduling_models   # noqa: F401

    # ── Auto-create tables (safe for production — CREATE IF NOT EXISTS) ──
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Collaborators (swappable via app.extensions) ─────────────────────
    init_collaborators(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.health_bp import health_bp
    from app.blueprints.indicator_bp import indicator_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(indicator_bp)

    # ── Health check (short alias of /health/ready) ──────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Performance Indicator Platform"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(415)
    def unsupported_media(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("app.services.scheduled_jobs")  # registers @register_job handlers
    from app.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run a registered job once (for the external scheduler)."""
        result = _SchedulerSvc.run_job(job_name)
        click.echo(f"{job_name}: {result['status']} {result.get('result') or result.get('error') or ''}")
        if result["status"] in ("failed", "error"):
            raise SystemExit(1)

    @app.cli.command("toggle-job")
    @click.argument("job_name")
    @click.option("--enable/--disable", default=True, help="Resume or pause the job.")
    def toggle_job_cmd(job_name, enable):
        """Pause or resume a registered job; run-job skips paused ones."""
        record = _SchedulerSvc.toggle_job(job_name, enable)
        if record is None:
            click.echo(f"{job_name}: unknown job")
            raise SystemExit(1)
        click.echo(f"{job_name}: {record['status']}")

    return app
