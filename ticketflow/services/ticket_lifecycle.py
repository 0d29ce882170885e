"""
Ticket Lifecycle Service

Executes ticket status transitions through the general transition path:

    1. Input validation        (known status, remarks ≥ 10 chars)
    2. Load + lock ticket, resolve actor
    3. Role gate               (permission table) → PermissionDenied
    4. Stale check             (caller's current_status) → StaleStateError
    5. Transition table        → InvalidTransition
    6. COMPLETED gates         finance approval, then per open step the
                               dependency resolver and document gate,
                               then the ticket completion certificate
                               → PreconditionFailed
    7. Mutation + exactly one audit entry, one commit

SENT_TO_FINANCE is not executed here; it is a compound operation owned by
``finance_service.submit_to_finance``.

Usage:
    from ticketflow.services.ticket_lifecycle import transition_ticket

    snapshot = transition_ticket(
        ticket_id=7,
        new_status="COMPLETED",
        actor_id=3,
        remarks="All site work signed off",
        current_status="APPROVED_BY_FINANCE",
    )
"""

import logging
from datetime import datetime, timezone

from flask import current_app

from ticketflow.core.exceptions import (
    InvalidTransition,
    PreconditionFailed,
    ValidationError,
)
from ticketflow.models.audit import write_audit
from ticketflow.models.ticket import (
    FINANCE_SUBMITTABLE_FROM,
    STEP_DONE_STATUSES,
    TICKET_STATUSES,
    TICKET_TRANSITIONS,
    validate_ticket_transition,
)
from ticketflow.services.dependency_resolver import (
    all_steps_completed,
    evaluate_step_dependencies,
)
from ticketflow.services.document_gate import (
    evaluate_step_documents,
    evaluate_ticket_certificate,
)
from ticketflow.services.document_service import store_document
from ticketflow.services.permission import (
    check_ticket_permission,
    has_ticket_permission,
    transition_verb,
)
from ticketflow.services.ticket_service import (
    check_current_status,
    lock_ticket,
    resolve_actor,
    ticket_snapshot,
)
from ticketflow.utils.helpers import min_length, unit_of_work

logger = logging.getLogger(__name__)


def _certificate_roles():
    return current_app.config.get("COMPLETION_CERTIFICATE_ROLES", ("DO", "EO"))


def _min_remarks():
    return current_app.config.get("MIN_REMARKS_LENGTH", 10)


# ── Offer ────────────────────────────────────────────────────────────────────


def can_send_to_finance(ticket) -> bool:
    """SENT_TO_FINANCE is offered only for finance-gated tickets whose steps are all COMPLETED."""
    return (
        ticket.requires_finance_approval
        and ticket.status in FINANCE_SUBMITTABLE_FROM
        and all_steps_completed(ticket.steps)
    )


def get_available_transitions(ticket, user) -> list[str]:
    """Statuses ``user`` may request from the ticket's current status."""
    targets = [
        to for to in TICKET_TRANSITIONS.get(ticket.status, [])
        if has_ticket_permission(user, ticket, transition_verb(ticket.status, to))
    ]
    if can_send_to_finance(ticket) and has_ticket_permission(user, ticket, "send_to_finance"):
        targets.append("SENT_TO_FINANCE")
    return targets


# ── Completion gates ─────────────────────────────────────────────────────────


def _check_completion_gates(ticket, actor, certificate_supplied: bool) -> list:
    """Raise PreconditionFailed for the first unmet gate; return the steps to close out."""
    if ticket.requires_finance_approval and ticket.latest_finance_status != "approved":
        raise PreconditionFailed(
            f"Ticket {ticket.ticket_number} requires finance approval before completion",
            requirement="finance_approval",
            details={
                "ticket_id": ticket.id,
                "latest_finance_status": ticket.latest_finance_status,
            },
        )

    steps = list(ticket.steps)
    waived = not ticket.completion_documents_required
    closing = [s for s in steps if s.status != "CLOSED"]

    for step in closing:
        dep = evaluate_step_dependencies(step, steps)
        if not dep.can_proceed:
            raise PreconditionFailed(
                f"Step '{step.title}' has incomplete dependencies. {dep.message}",
                requirement="dependencies",
                step_id=step.id,
                details={"dependencies": dep.to_dict()},
            )
        docs = evaluate_step_documents(
            step, step.documents, actor.role,
            waived=waived, certificate_roles=_certificate_roles(),
        )
        if not docs.satisfied:
            raise PreconditionFailed(
                f"Step '{step.title}' is missing documents: {', '.join(docs.missing)}",
                requirement="documents",
                step_id=step.id,
                details={"documents": docs.to_dict()},
            )

    ticket_docs = [d for d in ticket.documents if d.step_id is None]
    cert = evaluate_ticket_certificate(
        ticket, ticket_docs, actor.role,
        certificate_roles=_certificate_roles(),
        certificate_supplied=certificate_supplied,
    )
    if not cert.satisfied:
        raise PreconditionFailed(
            f"A completion certificate is required to complete ticket {ticket.ticket_number}",
            requirement="completion_certificate",
            details={"documents": cert.to_dict()},
        )

    return [s for s in closing if s.status not in STEP_DONE_STATUSES]


# ── Transition ───────────────────────────────────────────────────────────────


def transition_ticket(
    ticket_id,
    new_status: str,
    actor_id,
    remarks: str,
    *,
    current_status: str | None = None,
    completion_certificate=None,
) -> dict:
    """
    Execute a ticket status transition through the general path.

    Args:
        ticket_id: Ticket to move.
        new_status: Target status.
        actor_id: Directory id of the user requesting the change.
        remarks: Mandatory, at least 10 characters after trimming.
        current_status: The status the caller believes the ticket is in;
            a mismatch is rejected as stale.
        completion_certificate: Optional UploadedFile recorded as the
            ticket completion certificate (COMPLETED only).

    Returns:
        Ticket snapshot after the commit.

    Raises:
        ValidationError, NotFoundError, PermissionDenied, StaleStateError,
        InvalidTransition, PreconditionFailed, DependencyUnavailable
    """
    # 1. Input validation
    if new_status not in TICKET_STATUSES:
        raise ValidationError(f"Unknown status: {new_status}", {"new_status": new_status})
    remarks = min_length(remarks, _min_remarks(), "remarks")
    if completion_certificate is not None and new_status != "COMPLETED":
        raise ValidationError(
            "A completion certificate can only accompany a COMPLETED transition",
            {"new_status": new_status},
        )

    # 2. Load
    ticket = lock_ticket(ticket_id)
    actor = resolve_actor(actor_id)
    old_status = ticket.status

    # 3. Role gate
    check_ticket_permission(actor, ticket, transition_verb(old_status, new_status))

    # 4. Stale check
    check_current_status(ticket, current_status)

    # 5. Table
    if new_status == "SENT_TO_FINANCE":
        raise InvalidTransition(
            "Ticket", old_status, new_status,
            "use the finance submission, which records cost and officer",
        )
    if not validate_ticket_transition(old_status, new_status):
        raise InvalidTransition("Ticket", old_status, new_status)

    # 6. Gates
    closing_steps = []
    if new_status == "COMPLETED":
        closing_steps = _check_completion_gates(ticket, actor, completion_certificate is not None)

    # 7. Mutate + audit
    with unit_of_work("Ticket", ticket.id) as uploaded:
        now = datetime.now(timezone.utc)
        certificate_id = None
        if completion_certificate is not None:
            doc = store_document(
                ticket, completion_certificate, actor, uploaded,
                is_completion_certificate=True,
                requirement_name="Completion certificate",
            )
            certificate_id = doc.id

        for step in closing_steps:
            step.status = "COMPLETED"
            step.progress = 100
            step.completed_at = now

        ticket.status = new_status
        ticket.updated_at = now

        write_audit(
            ticket_id=ticket.id,
            action="STATUS_CHANGED",
            category="status_change",
            actor_id=actor.id,
            actor_name=actor.name,
            old_value=old_status,
            new_value=new_status,
            description=f"Status changed from {old_status} to {new_status}",
            metadata={
                "remarks": remarks,
                "closed_step_ids": [s.id for s in closing_steps],
                "completion_certificate_id": certificate_id,
            },
        )

    logger.info(
        "Ticket %s transitioned %s → %s", ticket.ticket_number, old_status, new_status,
        extra={"ticket_id": ticket.id, "actor_id": actor.id, "status": new_status},
    )
    return ticket_snapshot(ticket)
