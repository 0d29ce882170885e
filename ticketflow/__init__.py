"""
Ticketflow: ticket lifecycle service.

The factory wires the lifecycle services to their collaborators (database,
document store, user directory) and exposes them under /api/v1.

    from ticketflow import create_app
    app = create_app("testing")   # APP_ENV decides when omitted
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from werkzeug.exceptions import HTTPException

from ticketflow.config import config
from ticketflow.integrations.document_store import init_document_store
from ticketflow.integrations.user_directory import init_user_directory
from ticketflow.middleware.diagnostics import run_startup_diagnostics
from ticketflow.middleware.logging_config import configure_logging
from ticketflow.middleware.rate_limiter import init_rate_limits
from ticketflow.middleware.timing import init_request_timing
from ticketflow.models import db
from ticketflow.utils.errors import E, api_error, http_error_response

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
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL") or "memory://",
)


def create_app(config_name=None):
    """Build the app for ``config_name`` ("development", "testing", "production").

    Tables are created on startup when missing; schema changes go through
    ``flask db migrate`` / ``flask db upgrade``.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    os.makedirs(app.instance_path, exist_ok=True)

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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    @app.before_request
    def _guard_request():
        from flask import abort, request as _req
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            # Transitions and documents accept multipart file uploads
            if _req.data and "json" not in ct and "multipart/form-data" not in ct:
                abort(415, description="Content-Type must be application/json or multipart/form-data")

    # ── Import all models so Alembic can detect them ─────────────────────
    from ticketflow.models import audit as _audit_models        # noqa: F401
    from ticketflow.models import document as _document_models  # noqa: F401
    from ticketflow.models import finance as _finance_models    # noqa: F401
    from ticketflow.models import ticket as _ticket_models      # noqa: F401
    from ticketflow.models import user as _user_models          # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db.create_all()

    # ── Collaborator adapters ────────────────────────────────────────────
    init_document_store(app)
    init_user_directory(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from ticketflow.blueprints.audit_bp import audit_bp
    from ticketflow.blueprints.document_bp import document_bp
    from ticketflow.blueprints.finance_bp import finance_bp
    from ticketflow.blueprints.health_bp import health_bp
    from ticketflow.blueprints.step_bp import step_bp
    from ticketflow.blueprints.ticket_bp import ticket_bp

    app.register_blueprint(ticket_bp)
    app.register_blueprint(step_bp)
    app.register_blueprint(finance_bp)
    app.register_blueprint(document_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(health_bp)

    # ── Error handlers (unrouted paths and request guards) ───────────────
    app.register_error_handler(HTTPException, http_error_response)

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error", status=500)

    # ── Startup diagnostics ──────────────────────────────────────────────
    run_startup_diagnostics(app)

    # ── Rate limits (after blueprints are registered) ────────────────────
    init_rate_limits(app, limiter)

    return app
