"""
Collection Workflow Platform
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from app.auth import init_auth
from app.config import config
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing
from app.models import db
from app.utils.errors import register_error_handlers

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
    default_limits=[],                     # no global limit: apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)

# Modules whose import registers signal receivers or scheduled jobs
_RECEIVER_MODULES = (
    "app.services.checklist_lifecycle",
    "app.services.request_lifecycle",
    "app.services.reminder_service",
    "app.services.approval_service",
    "app.services.task_service",
    "app.services.escalation",
    "app.services.scheduled_jobs",
)


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
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

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

    # ── Actor resolution & request timing ────────────────────────────────
    init_auth(app)
    init_request_timing(app)
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import approval as _approval_models          # noqa: F401
    from app.models import audit as _audit_models                # noqa: F401
    from app.models import auth as _auth_models                  # noqa: F401
    from app.models import notification as _notification_models  # noqa: F401
    from app.models import reminder as _reminder_models          # noqa: F401
    from app.models import request as _request_models            # noqa: F401
    from app.models import scheduling as _scheduling_models      # noqa: F401
    from app.models import task as _task_models                  # noqa: F401
    from app.models import template as _template_models          # noqa: F401
    from app.models import verification as _verification_models  # noqa: F401

    # ── Signal receivers & scheduled jobs ────────────────────────────────
    for module in _RECEIVER_MODULES:
        importlib.import_module(module)

    # ── Auto-create tables (safe for production: CREATE IF NOT EXISTS) ──
    with app.app_context():
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    # ── Error handlers & blueprints ──────────────────────────────────────
    register_error_handlers(app)
    from app.blueprints import register_blueprints
    register_blueprints(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run one scheduled sweep now and print its result."""
        from app.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job(job_name)
        click.echo(f"{result['job_name']}: {result['status']} ({result.get('duration_ms', 0)} ms)")
        if result.get("error"):
            click.echo(result["error"], err=True)
            raise SystemExit(1)

    # ── Scheduler initialization ─────────────────────────────────────────
    from app.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app
