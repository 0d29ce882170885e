"""Standardised API error responses.

Usage
-----
    from ticketflow.utils.errors import api_error, E, register_error_handlers

    return api_error(E.VALIDATION_REQUIRED, "new_status is required")

    bp = Blueprint(...)
    register_error_handlers(bp)   # maps core exceptions to JSON once per blueprint
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from ticketflow.core.exceptions import (
    DependencyUnavailable,
    InvalidState,
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    PreconditionFailed,
    StaleStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    INVALID_STATE = "ERR_INVALID_STATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Request shape – HTTP 405 / 413 / 415 / 429
    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"
    PAYLOAD_TOO_LARGE = "ERR_PAYLOAD_TOO_LARGE"
    UNSUPPORTED_MEDIA = "ERR_UNSUPPORTED_MEDIA"
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Gates – HTTP 422
    PRECONDITION_FAILED = "ERR_PRECONDITION_FAILED"

    # Server – HTTP 500 / 503
    INTERNAL = "ERR_INTERNAL"
    DEPENDENCY_UNAVAILABLE = "ERR_DEPENDENCY_UNAVAILABLE"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.INVALID_TRANSITION: 409,
    E.INVALID_STATE: 409,
    E.CONFLICT_STATE: 409,
    E.METHOD_NOT_ALLOWED: 405,
    E.PAYLOAD_TOO_LARGE: 413,
    E.UNSUPPORTED_MEDIA: 415,
    E.RATE_LIMITED: 429,
    E.PRECONDITION_FAILED: 422,
    E.INTERNAL: 500,
    E.DEPENDENCY_UNAVAILABLE: 503,
}

# Core exception → error code
_EXCEPTION_CODES = (
    (ValidationError, E.VALIDATION_INVALID),
    (PermissionDenied, E.FORBIDDEN),
    (NotFoundError, E.NOT_FOUND),
    (InvalidTransition, E.INVALID_TRANSITION),
    (StaleStateError, E.CONFLICT_STATE),
    (InvalidState, E.INVALID_STATE),
    (PreconditionFailed, E.PRECONDITION_FAILED),
    (DependencyUnavailable, E.DEPENDENCY_UNAVAILABLE),
)


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Structured context: entity id, expected vs actual state, blocking
        step and requirement.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


_HTTP_CODES = {
    404: E.NOT_FOUND,
    405: E.METHOD_NOT_ALLOWED,
    413: E.PAYLOAD_TOO_LARGE,
    415: E.UNSUPPORTED_MEDIA,
    429: E.RATE_LIMITED,
}


def http_error_response(error: HTTPException):
    """JSON body for werkzeug errors raised by routing, guards or the limiter."""
    code = _HTTP_CODES.get(error.code)
    if code is None:
        return error
    return api_error(code, error.description or error.name, status=error.code,
                     details={"path": request.path})


def register_error_handlers(bp) -> None:
    """Attach one handler per core exception type to ``bp``."""

    def _make_handler(code):
        def _handle(error):
            status = _DEFAULT_STATUS[code]
            log = logger.warning if status >= 500 else logger.info
            log("%s in %s: %s", type(error).__name__, request.endpoint, error)
            return api_error(code, str(error), details=getattr(error, "details", None))
        return _handle

    for exc_type, code in _EXCEPTION_CODES:
        bp.register_error_handler(exc_type, _make_handler(code))

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return http_error_response(error)
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
