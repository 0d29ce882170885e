"""
Dependency checks shared by the startup banner and ``/health/live``.

``check_dependencies`` checks the database, the document store and the
user directory and returns one dict per dependency::

    {"database":       {"status": "ok", "latency_ms": 0.4, "engine": "sqlite"},
     "document_store": {"status": "ok", "backend": "LocalDocumentStore"},
     "user_directory": {"status": "ok", "backend": "SqlUserDirectory"}}

Only the database and the document store count towards ``healthy``; a
missing directory degrades reads of actor names but not the lifecycle.
"""

import logging
import sys
import time

from flask import Flask
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from ticketflow.models import db

logger = logging.getLogger(__name__)

CRITICAL_CHECKS = ("database", "document_store")


def _check_database() -> dict:
    t0 = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Database check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {
        "status": "ok",
        "latency_ms": round((time.perf_counter() - t0) * 1000, 1),
        "engine": db.engine.dialect.name,
    }


def _check_extension(app: Flask, key: str) -> dict:
    backend = app.extensions.get(key)
    if backend is None:
        return {"status": "error", "detail": "not configured"}
    return {"status": "ok", "backend": type(backend).__name__}


def check_dependencies(app: Flask) -> tuple[bool, dict]:
    """Return ``(healthy, checks)``. Must run inside an app context."""
    checks = {
        "database": _check_database(),
        "document_store": _check_extension(app, "ticketflow.document_store"),
        "user_directory": _check_extension(app, "ticketflow.user_directory"),
    }
    healthy = all(checks[name]["status"] == "ok" for name in CRITICAL_CHECKS)
    return healthy, checks


def run_startup_diagnostics(app: Flask):
    """Log a one-off summary of dependencies and lifecycle settings."""
    if app.config.get("TESTING"):
        return

    with app.app_context():
        healthy, checks = check_dependencies(app)
        issues = [
            f"{name}: {result.get('detail', 'unavailable')}"
            for name, result in checks.items()
            if result["status"] != "ok"
        ]
        if checks["database"]["status"] == "ok":
            tables = sa_inspect(db.engine).get_table_names()
            if "tickets" not in tables:
                issues.append("tickets table missing; run 'flask db upgrade'")

        db_line = checks["database"].get("engine", "unreachable")
        store_line = checks["document_store"].get("backend", "NOT CONFIGURED")
        cert_roles = ",".join(app.config.get("COMPLETION_CERTIFICATE_ROLES", ())) or "none"
        limiter = "redis" if app.config.get("REDIS_URL") else "memory"
        py = ".".join(str(p) for p in sys.version_info[:3])

        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  Ticketflow                                                  ║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Database    : {db_line:<46s}║
║  Documents   : {store_line:<46s}║
║  Cert roles  : {cert_roles:<46s}║
║  Rate limits : {limiter:<46s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        for issue in issues:
            logger.warning("Startup issue: %s", issue)
        if healthy and not issues:
            logger.info("All startup checks passed")
