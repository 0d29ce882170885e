"""
Workflow Step Service — step CRUD, dependency edges and step transitions.

Every mutation locks the owning ticket row and touches it, so step changes
serialize with ticket transitions on the same version counter.

Business rules:
    - Dependency edges stay inside one ticket and must keep the graph acyclic.
    - Steps are frozen while the ticket is SENT_TO_FINANCE.
    - Completing a step requires its dependency and document gates.
    - A step other steps depend on is only deleted with force=True; the
      dependents that lose an edge are recorded in the audit entry.
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select

from ticketflow.core.exceptions import (
    InvalidState,
    InvalidTransition,
    PreconditionFailed,
    ValidationError,
)
from ticketflow.integrations.user_directory import get_user_directory
from ticketflow.models import db
from ticketflow.models.audit import write_audit
from ticketflow.models.ticket import (
    DEPENDENCY_MODES,
    STEP_STATUSES,
    StepDependency,
    WorkflowStep,
    validate_step_transition,
)
from ticketflow.services.dependency_resolver import (
    evaluate_step_dependencies,
    format_dependency_status,
    would_create_cycle,
)
from ticketflow.services.document_gate import evaluate_step_documents
from ticketflow.services.permission import check_step_permission
from ticketflow.services.ticket_service import lock_ticket, resolve_actor, touch_ticket
from ticketflow.utils.helpers import discard_blobs, get_or_raise, parse_date, unit_of_work

logger = logging.getLogger(__name__)

# Steps are the basis of a finance decision or of a finished ticket; reopening thaws them
FROZEN_TICKET_STATUSES = ("SENT_TO_FINANCE", "APPROVED_BY_FINANCE", "COMPLETED", "CLOSED", "CANCELLED")

_STRUCTURE_FIELDS = (
    "title", "description", "level_1", "level_2", "level_3",
    "is_parallel", "dependency_mode", "mandatory_documents",
    "completion_certificate_required", "due_date",
)


# ── Private helpers ──────────────────────────────────────────────────────────


def _load_step_for_update(step_id):
    step = get_or_raise(WorkflowStep, step_id)
    ticket = lock_ticket(step.ticket_id)
    return step, ticket


def _ensure_not_frozen(ticket):
    if ticket.status in FROZEN_TICKET_STATUSES:
        raise InvalidState(
            f"Steps of ticket {ticket.ticket_number} cannot change while it is {ticket.status}",
            {"ticket_id": ticket.id, "status": ticket.status},
        )


def _clean_field(field, value):
    if field == "title":
        value = (value or "").strip()
        if not value:
            raise ValidationError("title is required", {"title": "required"})
    elif field in ("level_1", "level_2", "level_3"):
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be an integer", {field: value}) from None
        if value < 0:
            raise ValidationError(f"{field} must be >= 0", {field: value})
    elif field in ("is_parallel", "completion_certificate_required"):
        if not isinstance(value, bool):
            raise ValidationError(f"{field} must be a boolean", {field: value})
    elif field == "dependency_mode":
        if value not in DEPENDENCY_MODES:
            raise ValidationError(
                f"dependency_mode must be one of {', '.join(DEPENDENCY_MODES)}", {field: value},
            )
    elif field == "mandatory_documents":
        if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
            raise ValidationError("mandatory_documents must be a list of names", {field: value})
        value = [v.strip() for v in value]
    elif field == "due_date":
        value = parse_date(value)
    return value


def _clean_dependency_ids(step_id, ticket, depends_on_step_ids) -> list[int]:
    """Validate new edges: same ticket, no self-reference, no cycle."""
    try:
        ids = list(dict.fromkeys(int(i) for i in depends_on_step_ids or []))
    except (TypeError, ValueError):
        raise ValidationError(
            "depends_on_step_ids must be a list of step ids",
            {"depends_on_step_ids": depends_on_step_ids},
        ) from None

    ticket_step_ids = {s.id for s in ticket.steps}
    foreign = [i for i in ids if i not in ticket_step_ids]
    if foreign:
        raise ValidationError(
            "Dependencies must reference steps of the same ticket",
            {"unknown_step_ids": foreign},
        )
    if step_id is not None and step_id in ids:
        raise ValidationError("A step cannot depend on itself", {"step_id": step_id})

    if step_id is not None:
        edges = {s.id: s.dependency_ids for s in ticket.steps}
        if would_create_cycle(step_id, ids, edges):
            raise ValidationError(
                "Adding these dependencies would create a circular dependency",
                {"step_id": step_id, "depends_on_step_ids": ids},
            )
    return ids


def _replace_dependencies(step, ids, actor_id):
    current = {d.depends_on_step_id: d for d in step.dependencies}
    for dep_id, edge in current.items():
        if dep_id not in ids:
            # Edges have two orphan-cascading parents; delete explicitly
            step.dependencies.remove(edge)
            db.session.delete(edge)
    for dep_id in ids:
        if dep_id not in current:
            step.dependencies.append(
                StepDependency(depends_on_step_id=dep_id, created_by_id=actor_id)
            )


def _resolve_assignee(value):
    if value in (None, ""):
        return None
    return get_user_directory().require_user(value).id


# ── Public API ───────────────────────────────────────────────────────────────


def create_step(ticket_id, actor_id, data: dict) -> dict:
    ticket = lock_ticket(ticket_id)
    actor = resolve_actor(actor_id)
    check_step_permission(actor, ticket, "manage_steps")
    _ensure_not_frozen(ticket)

    fields = {f: _clean_field(f, data[f]) for f in _STRUCTURE_FIELDS if f in data}
    if "title" not in fields:
        raise ValidationError("title is required", {"title": "required"})
    dep_ids = _clean_dependency_ids(None, ticket, data.get("depends_on_step_ids"))
    assignee = _resolve_assignee(data.get("assigned_to_id"))

    with unit_of_work("Ticket", ticket.id):
        step = WorkflowStep(
            ticket_id=ticket.id,
            status="CREATED",
            assigned_to_id=assignee,
            created_by_id=actor.id,
            **fields,
        )
        ticket.steps.append(step)
        db.session.flush()
        _replace_dependencies(step, dep_ids, actor.id)
        touch_ticket(ticket)
        write_audit(
            ticket_id=ticket.id,
            step_id=step.id,
            action="STEP_CREATED",
            category="workflow_action",
            actor_id=actor.id,
            actor_name=actor.name,
            new_value=step.title,
            description=f"Workflow step {step.code} '{step.title}' created",
            metadata={"depends_on_step_ids": dep_ids, "assigned_to_id": assignee},
        )

    logger.info("Workflow step created", extra={"ticket_id": ticket.id, "step_id": step.id, "actor_id": actor.id})
    return step.to_dict()


def update_step(step_id, actor_id, data: dict) -> dict:
    """Edit step fields. Assignees may only report progress; managers may edit anything."""
    step, ticket = _load_step_for_update(step_id)
    actor = resolve_actor(actor_id)
    _ensure_not_frozen(ticket)

    structural = [f for f in _STRUCTURE_FIELDS if f in data] + (
        ["assigned_to_id"] if "assigned_to_id" in data else []
    )
    if structural:
        check_step_permission(actor, ticket, "manage_steps", step)
    else:
        check_step_permission(actor, ticket, "progress_step", step)

    changes = {}
    with unit_of_work("Ticket", ticket.id):
        for field in _STRUCTURE_FIELDS:
            if field in data:
                value = _clean_field(field, data[field])
                if getattr(step, field) != value:
                    changes[field] = {"old": getattr(step, field), "new": value}
                    setattr(step, field, value)
        if "assigned_to_id" in data:
            value = _resolve_assignee(data["assigned_to_id"])
            if step.assigned_to_id != value:
                changes["assigned_to_id"] = {"old": step.assigned_to_id, "new": value}
                step.assigned_to_id = value
        if "progress" in data:
            try:
                progress = int(data["progress"])
            except (TypeError, ValueError):
                raise ValidationError("progress must be an integer", {"progress": data["progress"]}) from None
            if not 0 <= progress <= 100:
                raise ValidationError("progress must be between 0 and 100", {"progress": progress})
            if step.progress != progress:
                changes["progress"] = {"old": step.progress, "new": progress}
                step.progress = progress

        if not changes:
            return step.to_dict()

        if set(changes) == {"progress"}:
            action, category = "STEP_PROGRESS_UPDATED", "progress_update"
        elif set(changes) == {"assigned_to_id"}:
            action, category = "STEP_ASSIGNED", "assignment_change"
        else:
            action, category = "STEP_UPDATED", "workflow_action"

        touch_ticket(ticket)
        write_audit(
            ticket_id=ticket.id,
            step_id=step.id,
            action=action,
            category=category,
            actor_id=actor.id,
            actor_name=actor.name,
            description=f"Step {step.code} updated: {', '.join(sorted(changes))}",
            metadata={"changes": changes, "remarks": (data.get("remarks") or "").strip() or None},
        )

    logger.info("Workflow step updated", extra={"ticket_id": ticket.id, "step_id": step.id, "actor_id": actor.id})
    return step.to_dict()


def set_step_dependencies(step_id, actor_id, depends_on_step_ids) -> dict:
    """Replace the step's prerequisite set."""
    step, ticket = _load_step_for_update(step_id)
    actor = resolve_actor(actor_id)
    check_step_permission(actor, ticket, "manage_steps", step)
    _ensure_not_frozen(ticket)
    if step.is_dependency_locked:
        raise InvalidState(
            f"Dependencies of step {step.code} are locked",
            {"step_id": step.id, "is_dependency_locked": True},
        )

    ids = _clean_dependency_ids(step.id, ticket, depends_on_step_ids)
    old_ids = step.dependency_ids

    with unit_of_work("Ticket", ticket.id):
        _replace_dependencies(step, ids, actor.id)
        touch_ticket(ticket)
        write_audit(
            ticket_id=ticket.id,
            step_id=step.id,
            action="DEPENDENCIES_UPDATED",
            category="workflow_action",
            actor_id=actor.id,
            actor_name=actor.name,
            old_value=",".join(str(i) for i in sorted(old_ids)),
            new_value=",".join(str(i) for i in sorted(ids)),
            description=f"Dependencies of step {step.code} updated",
            metadata={"old": sorted(old_ids), "new": sorted(ids)},
        )
    return step.to_dict()


def lock_step_dependencies(step_id, actor_id) -> dict:
    """Mark the step's dependency set as final (advisory flag for requesters)."""
    step, ticket = _load_step_for_update(step_id)
    actor = resolve_actor(actor_id)
    check_step_permission(actor, ticket, "manage_steps", step)
    if step.is_dependency_locked:
        return step.to_dict()

    with unit_of_work("Ticket", ticket.id):
        step.is_dependency_locked = True
        touch_ticket(ticket)
        write_audit(
            ticket_id=ticket.id,
            step_id=step.id,
            action="DEPENDENCIES_LOCKED",
            category="workflow_action",
            actor_id=actor.id,
            actor_name=actor.name,
            description=f"Dependencies of step {step.code} locked",
            metadata={"depends_on_step_ids": step.dependency_ids},
        )
    return step.to_dict()


def transition_step(step_id, new_status, actor_id, remarks=None) -> dict:
    """Move a step through CREATED → ACTIVE → COMPLETED → CLOSED (and reopen)."""
    if new_status not in STEP_STATUSES:
        raise ValidationError(f"Unknown step status: {new_status}", {"new_status": new_status})

    step, ticket = _load_step_for_update(step_id)
    actor = resolve_actor(actor_id)
    check_step_permission(actor, ticket, "progress_step", step)
    _ensure_not_frozen(ticket)

    old_status = step.status
    if not validate_step_transition(old_status, new_status):
        raise InvalidTransition("WorkflowStep", old_status, new_status)

    if new_status == "COMPLETED":
        dep = evaluate_step_dependencies(step, ticket.steps)
        if not dep.can_proceed:
            raise PreconditionFailed(
                f"Step '{step.title}' has incomplete dependencies. {dep.message}",
                requirement="dependencies",
                step_id=step.id,
                details={"dependencies": dep.to_dict()},
            )
        docs = evaluate_step_documents(
            step, step.documents, actor.role,
            waived=not ticket.completion_documents_required,
            certificate_roles=current_app.config.get("COMPLETION_CERTIFICATE_ROLES", ("DO", "EO")),
        )
        if not docs.satisfied:
            raise PreconditionFailed(
                f"Step '{step.title}' is missing documents: {', '.join(docs.missing)}",
                requirement="documents",
                step_id=step.id,
                details={"documents": docs.to_dict()},
            )

    with unit_of_work("Ticket", ticket.id):
        now = datetime.now(timezone.utc)
        step.status = new_status
        if new_status == "ACTIVE":
            step.start_date = step.start_date or now
            step.completed_at = None
        elif new_status == "COMPLETED":
            step.progress = 100
            step.completed_at = now
        touch_ticket(ticket)
        write_audit(
            ticket_id=ticket.id,
            step_id=step.id,
            action="STEP_STATUS_CHANGED",
            category="status_change",
            actor_id=actor.id,
            actor_name=actor.name,
            old_value=old_status,
            new_value=new_status,
            description=f"Step {step.code} moved from {old_status} to {new_status}",
            metadata={"remarks": (remarks or "").strip() or None},
        )

    logger.info(
        "Workflow step transitioned",
        extra={"ticket_id": ticket.id, "step_id": step.id, "actor_id": actor.id, "status": new_status},
    )
    return step.to_dict()


def delete_step(step_id, actor_id, *, force: bool = False) -> dict:
    """Delete a step, its edges and its documents.

    Refused with PreconditionFailed when other steps depend on it, unless
    ``force`` is set.

    Returns:
        {"deleted_step_id", "loosened_step_ids"}
    """
    step, ticket = _load_step_for_update(step_id)
    actor = resolve_actor(actor_id)
    check_step_permission(actor, ticket, "manage_steps", step)
    _ensure_not_frozen(ticket)

    dependents = sorted(d.step_id for d in step.dependents)
    if dependents and not force:
        raise PreconditionFailed(
            f"Step {step.code} is a prerequisite of other steps",
            requirement="no_dependents",
            step_id=step.id,
            details={"dependent_step_ids": dependents},
        )

    storage_keys = [d.storage_key for d in step.documents]
    title, code, sid = step.title, step.code, step.id
    with unit_of_work("Ticket", ticket.id):
        ticket.steps.remove(step)
        touch_ticket(ticket)
        write_audit(
            ticket_id=ticket.id,
            step_id=sid,
            action="STEP_DELETED",
            category="workflow_action",
            actor_id=actor.id,
            actor_name=actor.name,
            old_value=title,
            description=f"Workflow step {code} '{title}' deleted",
            metadata={
                "forced": bool(dependents),
                "loosened_step_ids": dependents,
                "deleted_document_count": len(storage_keys),
            },
        )

    discard_blobs(storage_keys)

    logger.info(
        "Workflow step deleted",
        extra={"ticket_id": ticket.id, "step_id": sid, "actor_id": actor.id, "forced": bool(dependents)},
    )
    return {"deleted_step_id": sid, "loosened_step_ids": dependents}


def get_step_gate_status(step_id, actor_id) -> dict:
    """Advisory view of both gates for a step, as seen by ``actor``."""
    step = get_or_raise(WorkflowStep, step_id)
    actor = resolve_actor(actor_id)
    ticket = step.ticket
    dep = evaluate_step_dependencies(step, ticket.steps)
    docs = evaluate_step_documents(
        step, step.documents, actor.role,
        waived=not ticket.completion_documents_required,
        certificate_roles=current_app.config.get("COMPLETION_CERTIFICATE_ROLES", ("DO", "EO")),
    )
    return {
        "step": step.to_dict(),
        "dependencies": dep.to_dict(),
        "dependency_status": format_dependency_status(dep),
        "documents": docs.to_dict(),
        "can_complete": dep.can_proceed and docs.satisfied,
    }


def list_steps(ticket_id) -> list[dict]:
    rows = db.session.execute(
        select(WorkflowStep)
        .where(WorkflowStep.ticket_id == ticket_id)
        .order_by(WorkflowStep.level_1, WorkflowStep.level_2, WorkflowStep.level_3, WorkflowStep.id)
    ).scalars().all()
    return [r.to_dict() for r in rows]
