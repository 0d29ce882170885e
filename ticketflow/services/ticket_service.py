"""
Ticket service — creation, lookup, field edits and snapshots.

Status changes do not happen here; see ``ticket_lifecycle`` and
``finance_service``. This module also provides the per-request building
blocks the lifecycle services share: locking a ticket row, resolving the
actor through the user directory, and the caller-supplied stale check.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select

from ticketflow.core.exceptions import (
    InvalidState,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from ticketflow.integrations.user_directory import DirectoryUser, get_user_directory
from ticketflow.models import db
from ticketflow.models.audit import write_audit
from ticketflow.models.finance import FinanceApproval
from ticketflow.models.ticket import TICKET_PRIORITIES, TICKET_STATUSES, Ticket
from ticketflow.services.permission import check_ticket_permission
from ticketflow.utils.helpers import parse_date, unit_of_work

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = (
    "title", "description", "priority", "category", "due_date", "assigned_to_id",
    "requires_finance_approval", "completion_documents_required",
)


# ── Shared building blocks ───────────────────────────────────────────────────


def lock_ticket(ticket_id) -> Ticket:
    """Load a ticket with a row lock (``SELECT ... FOR UPDATE``).

    ``populate_existing`` refreshes an instance already in the identity map
    so decisions are made on the committed row, not a cached copy.
    """
    ticket = db.session.execute(
        select(Ticket)
        .where(Ticket.id == ticket_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if ticket is None:
        raise NotFoundError(resource="Ticket", resource_id=ticket_id)
    return ticket


def resolve_actor(actor_id) -> DirectoryUser:
    return get_user_directory().require_user(actor_id)


def check_current_status(ticket: Ticket, current_status: str | None) -> None:
    """Reject the request when the caller's view of the status is outdated."""
    if current_status and current_status != ticket.status:
        raise StaleStateError("Ticket", ticket.id, expected=current_status, actual=ticket.status)


def touch_ticket(ticket: Ticket) -> None:
    """Force an UPDATE of the ticket row so its version counter moves."""
    ticket.updated_at = datetime.now(timezone.utc)


def _ticket_number(ticket_id: int) -> str:
    return f"TKT-{ticket_id:05d}"


def _bool(value, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false", "1", "0"):
        return value.lower() in ("true", "1")
    raise ValidationError(f"{field} must be a boolean", {field: "boolean"})


def _resolve_assignee(assigned_to_id):
    if assigned_to_id in (None, ""):
        return None
    return get_user_directory().require_user(assigned_to_id).id


# ── Public API ───────────────────────────────────────────────────────────────


def create_ticket(actor_id, data: dict) -> dict:
    """Create a DRAFT ticket owned by the actor.

    ``department`` defaults to the actor's department.
    """
    actor = resolve_actor(actor_id)

    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", {"title": "required"})
    department = (data.get("department") or actor.department or "").strip()
    if not department:
        raise ValidationError("department is required", {"department": "required"})
    priority = (data.get("priority") or "MEDIUM").upper()
    if priority not in TICKET_PRIORITIES:
        raise ValidationError(
            f"priority must be one of {', '.join(TICKET_PRIORITIES)}", {"priority": priority},
        )

    with unit_of_work("Ticket"):
        ticket = Ticket(
            # Placeholder until the insert assigns the id the number derives from
            ticket_number=f"PENDING-{uuid.uuid4().hex[:12]}",
            title=title,
            description=data.get("description") or "",
            status="DRAFT",
            priority=priority,
            department=department,
            category=data.get("category"),
            created_by_id=actor.id,
            assigned_to_id=_resolve_assignee(data.get("assigned_to_id")),
            due_date=parse_date(data.get("due_date")),
            requires_finance_approval=_bool(data.get("requires_finance_approval", True), "requires_finance_approval"),
            completion_documents_required=_bool(
                data.get("completion_documents_required", True), "completion_documents_required",
            ),
        )
        db.session.add(ticket)
        db.session.flush()
        ticket.ticket_number = _ticket_number(ticket.id)
        write_audit(
            ticket_id=ticket.id,
            action="TICKET_CREATED",
            category="ticket_action",
            actor_id=actor.id,
            actor_name=actor.name,
            new_value=ticket.status,
            description=f"Ticket {ticket.ticket_number} created",
            metadata={"title": title, "department": department, "priority": priority},
        )

    logger.info(
        "Ticket created",
        extra={"ticket_id": ticket.id, "actor_id": actor.id, "status": ticket.status},
    )
    return ticket_snapshot(ticket)


def get_ticket(ticket_id) -> Ticket:
    ticket = db.session.get(Ticket, ticket_id)
    if ticket is None:
        raise NotFoundError(resource="Ticket", resource_id=ticket_id)
    return ticket


def list_tickets(department=None, status=None, created_by_id=None) -> list[dict]:
    stmt = select(Ticket)
    if department:
        stmt = stmt.where(Ticket.department == department)
    if status:
        if status not in TICKET_STATUSES:
            raise ValidationError(f"Unknown status: {status}", {"status": status})
        stmt = stmt.where(Ticket.status == status)
    if created_by_id:
        stmt = stmt.where(Ticket.created_by_id == created_by_id)
    stmt = stmt.order_by(Ticket.created_at.desc(), Ticket.id.desc())
    return [t.to_dict() for t in db.session.execute(stmt).scalars().all()]


def update_ticket(ticket_id, actor_id, data: dict, *, current_status: str | None = None) -> dict:
    """Edit non-status fields. One audit entry lists every changed field."""
    ticket = lock_ticket(ticket_id)
    actor = resolve_actor(actor_id)
    check_ticket_permission(actor, ticket, "edit")
    check_current_status(ticket, current_status)

    changes: dict[str, dict] = {}
    with unit_of_work("Ticket", ticket.id):
        for field in _EDITABLE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if field == "title":
                value = (value or "").strip()
                if not value:
                    raise ValidationError("title cannot be empty", {"title": "required"})
            elif field == "priority":
                value = (value or "").upper()
                if value not in TICKET_PRIORITIES:
                    raise ValidationError(f"Invalid priority: {value}", {"priority": value})
            elif field == "due_date":
                value = parse_date(value)
            elif field == "assigned_to_id":
                value = _resolve_assignee(value)
            elif field in ("requires_finance_approval", "completion_documents_required"):
                value = _bool(value, field)
                if field == "requires_finance_approval" and ticket.status == "SENT_TO_FINANCE":
                    raise InvalidState(
                        "Finance requirement cannot change while the ticket is with finance",
                        {"ticket_id": ticket.id, "status": ticket.status},
                    )
                if field == "requires_finance_approval" and not value and ticket.finance_submission_count:
                    # latest_finance_status would outlive the requirement it belongs to
                    raise InvalidState(
                        "Finance requirement cannot be dropped once the ticket has been submitted to finance",
                        {
                            "ticket_id": ticket.id,
                            "finance_submission_count": ticket.finance_submission_count,
                            "latest_finance_status": ticket.latest_finance_status,
                        },
                    )

            old = getattr(ticket, field)
            if old != value:
                changes[field] = {"old": old, "new": value}
                setattr(ticket, field, value)

        if not changes:
            return ticket_snapshot(ticket)

        only_assignment = set(changes) == {"assigned_to_id"}
        write_audit(
            ticket_id=ticket.id,
            action="TICKET_ASSIGNED" if only_assignment else "TICKET_UPDATED",
            category="assignment_change" if only_assignment else "ticket_action",
            actor_id=actor.id,
            actor_name=actor.name,
            old_value=changes["assigned_to_id"]["old"] if only_assignment else None,
            new_value=changes["assigned_to_id"]["new"] if only_assignment else None,
            description="Ticket reassigned" if only_assignment else f"Updated {', '.join(sorted(changes))}",
            metadata={"changes": changes},
        )

    logger.info(
        "Ticket updated",
        extra={"ticket_id": ticket.id, "actor_id": actor.id, "fields": sorted(changes)},
    )
    return ticket_snapshot(ticket)


def ticket_snapshot(ticket: Ticket) -> dict:
    """Authoritative read-after-write view: ticket, steps, documents, latest approval."""
    data = ticket.to_dict(include_steps=True)
    data["documents"] = [d.to_dict() for d in ticket.documents if d.step_id is None]
    latest = db.session.execute(
        select(FinanceApproval)
        .where(FinanceApproval.ticket_id == ticket.id)
        .order_by(FinanceApproval.submitted_at.desc(), FinanceApproval.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    data["latest_finance_approval"] = latest.to_dict() if latest else None
    return data
