"""
Request context and timing middleware.

Every request gets a request id (taken from ``X-Request-ID`` when the
caller supplies one) and the acting user id from ``X-User-Id``. Both are
exposed to log records through ``RequestContextFilter`` so that service
log lines about a ticket can be joined to the HTTP call that caused them.

Response headers added: X-Request-ID, X-Request-Duration-Ms.
"""

import logging
import time
import uuid

from flask import Flask, g, has_request_context, request

logger = logging.getLogger(__name__)

_QUIET_PATHS = frozenset({"/api/v1/health/ready", "/api/v1/health/live"})

SLOW_THRESHOLD_MS = 1000


class RequestContextFilter(logging.Filter):
    """Stamp request_id / actor_id onto records emitted inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = getattr(g, "request_id", None)
            if getattr(record, "actor_id", None) is None:
                record.actor_id = getattr(g, "actor_header", None)
        return True


def _outcome_level(status_code: int, duration_ms: float) -> int:
    if status_code >= 500:
        return logging.ERROR
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING
    if status_code in (409, 422):
        # Refused transitions are routine but worth seeing at INFO
        return logging.INFO
    return logging.DEBUG


def init_request_timing(app: Flask):
    """Register before/after hooks that time requests and tag log context."""

    @app.before_request
    def _open_request_context():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.actor_header = request.headers.get("X-User-Id")

    @app.after_request
    def _close_request_context(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"

        if request.path in _QUIET_PATHS:
            return response

        level = _outcome_level(response.status_code, duration_ms)
        view_args = request.view_args or {}
        logger.log(
            level,
            "%s %s -> %d (%.0fms)",
            request.method, request.path, response.status_code, duration_ms,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "remote_addr": request.remote_addr,
                "ticket_id": view_args.get("ticket_id"),
                "step_id": view_args.get("step_id"),
            },
        )
        return response
