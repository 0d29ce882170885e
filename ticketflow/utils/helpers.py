"""Shared helpers for services and blueprints.

get_or_raise:     primary-key lookup raising NotFoundError
parse_date:       lenient date parsing for request payloads
min_length:       trimmed-length validation for remarks / reasons
unit_of_work:     one commit per operation; typed errors and blob cleanup on failure
current_actor_id, request_payload, request_file: request parsing for blueprints
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ticketflow.core.exceptions import (
    DependencyUnavailable,
    InvalidState,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from ticketflow.models import db

logger = logging.getLogger(__name__)


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    label = label or model.__name__
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None:
        raise NotFoundError(resource=label, resource_id=pk)
    return obj


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty input; raises ValidationError for garbage so a
    typo in a due date is not silently dropped.
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        raise ValidationError(
            "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY.", {"date": str(value)}
        ) from None


def min_length(value, minimum: int, field: str) -> str:
    """Return ``value`` stripped, or raise ValidationError when shorter than ``minimum``."""
    text = str(value or "").strip()
    if len(text) < minimum:
        raise ValidationError(
            f"{field} must be at least {minimum} characters",
            {field: f"min_length={minimum}", "length": len(text)},
        )
    return text


# ── Transaction helper ───────────────────────────────────────────────────────


@contextmanager
def unit_of_work(resource: str = "Ticket", resource_id=None):
    """Run one mutating operation as a single transaction.

    Yields a list the body appends document-store keys to. On success the
    session is committed. On any failure the session is rolled back, the
    listed blobs are deleted again, and database errors are translated:

        StaleDataError   → StaleStateError      (409)
        IntegrityError   → InvalidState         (409)
        OperationalError → DependencyUnavailable (503)

    Usage::

        with unit_of_work("Ticket", ticket_id) as uploaded:
            ...mutate, write_audit(...)...
    """
    uploaded: list[str] = []
    try:
        yield uploaded
        db.session.commit()
    except StaleDataError as exc:
        _abort(uploaded)
        logger.warning("Concurrent modification of %s id=%s", resource, resource_id)
        raise StaleStateError(resource, resource_id) from exc
    except IntegrityError as exc:
        _abort(uploaded)
        logger.warning("Integrity error on %s id=%s: %s", resource, resource_id, exc.orig)
        raise InvalidState(
            f"{resource} id={resource_id} violates a constraint",
            {"resource": resource, "resource_id": resource_id},
        ) from exc
    except OperationalError as exc:
        _abort(uploaded)
        logger.exception("Database operational error on %s id=%s", resource, resource_id)
        raise DependencyUnavailable("database") from exc
    except Exception:
        _abort(uploaded)
        raise


def _abort(uploaded: list[str]) -> None:
    db.session.rollback()
    discard_blobs(uploaded)


def discard_blobs(keys) -> None:
    """Best-effort removal of blobs whose rows are gone (or never committed).

    Store failures are logged, not raised: the database is already final.
    """
    if not keys:
        return
    from ticketflow.integrations.document_store import get_document_store

    store = get_document_store()
    for key in keys:
        try:
            store.delete(key)
        except DependencyUnavailable:
            logger.error("Could not remove orphaned document blob key=%s", key)


# ── Request helpers (blueprints) ─────────────────────────────────────────────


def current_actor_id() -> int:
    """Acting user id from the ``X-User-Id`` header."""
    from flask import request

    raw = request.headers.get("X-User-Id", "").strip()
    if not raw:
        raise ValidationError("X-User-Id header is required", {"X-User-Id": "required"})
    try:
        return int(raw)
    except ValueError:
        raise ValidationError("X-User-Id must be an integer", {"X-User-Id": raw}) from None


def request_payload() -> dict:
    """Form fields for multipart requests, otherwise the JSON body."""
    from flask import request

    if request.mimetype == "multipart/form-data":
        return request.form.to_dict()
    return request.get_json(silent=True) or {}


def request_file(field: str):
    """Return the uploaded ``field`` as an UploadedFile, or None when absent."""
    from flask import request

    from ticketflow.integrations.document_store import UploadedFile

    storage = request.files.get(field)
    if storage is None or not storage.filename:
        return None
    return UploadedFile.from_storage(storage)


def as_bool(value, default: bool = False) -> bool:
    """Interpret form/JSON flags ("true", "1", True ...)."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")
