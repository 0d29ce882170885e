"""
Finance Approval Service — two-party submitter / finance officer workflow.

    ticket ACTIVE | REJECTED_BY_FINANCE
        └─ submit_to_finance ─▶ SENT_TO_FINANCE   (new approval: pending)
              ├─ approve ─▶ APPROVED_BY_FINANCE   (approval: approved)
              └─ reject  ─▶ REJECTED_BY_FINANCE   (approval: rejected)

Design decisions:
    - FinanceApproval rows are append-only history: re-submission after a
      rejection creates a new row and increments finance_submission_count.
    - At most one pending approval per ticket (service check + partial
      unique index).
    - Each operation is one transaction: approval row, ticket fields,
      optional document and the single audit entry persist together or not
      at all.
    - Only the officer named on the approval may decide it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import select

from ticketflow.core.exceptions import (
    InvalidState,
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    PreconditionFailed,
    ValidationError,
)
from ticketflow.integrations.user_directory import get_user_directory
from ticketflow.models import db
from ticketflow.models.audit import write_audit
from ticketflow.models.finance import COST_BEARERS, FinanceApproval
from ticketflow.models.ticket import FINANCE_SUBMITTABLE_FROM
from ticketflow.services.dependency_resolver import all_steps_completed
from ticketflow.services.document_service import store_document
from ticketflow.services.permission import check_ticket_permission
from ticketflow.services.ticket_service import (
    check_current_status,
    lock_ticket,
    resolve_actor,
    ticket_snapshot,
)
from ticketflow.utils.helpers import get_or_raise, min_length, unit_of_work

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _parse_cost(value) -> Decimal:
    try:
        cost = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("tentative_cost must be a number", {"tentative_cost": value}) from None
    if not cost.is_finite() or cost <= 0:
        raise ValidationError("tentative_cost must be greater than 0", {"tentative_cost": str(value)})
    return cost.quantize(Decimal("0.01"))


def _pending_approval(ticket_id: int) -> FinanceApproval | None:
    return db.session.execute(
        select(FinanceApproval).where(
            FinanceApproval.ticket_id == ticket_id,
            FinanceApproval.status == "pending",
        )
    ).scalar_one_or_none()


def _load_decidable(approval_id, ticket_id, actor):
    """Load the approval and its ticket for a decision, checking in order:
    existence, pending status, assigned officer, ticket state."""
    approval = get_or_raise(FinanceApproval, approval_id)
    if ticket_id not in (None, "") and _as_int(ticket_id, "ticket_id") != approval.ticket_id:
        raise NotFoundError(resource="FinanceApproval", resource_id=approval_id)

    ticket = lock_ticket(approval.ticket_id)
    db.session.refresh(approval)

    if approval.status != "pending":
        raise InvalidState(
            f"Finance approval {approval.id} is already {approval.status}",
            {"approval_id": approval.id, "expected": "pending", "actual": approval.status},
        )
    if approval.finance_officer_id != actor.id:
        raise PermissionDenied(
            actor.id, "decide_finance_approval",
            f"approval {approval.id} is assigned to user {approval.finance_officer_id}",
        )
    if ticket.status != "SENT_TO_FINANCE":
        raise InvalidState(
            f"Ticket {ticket.ticket_number} is not awaiting finance",
            {"ticket_id": ticket.id, "expected": "SENT_TO_FINANCE", "actual": ticket.status},
        )
    return approval, ticket


# ── Public API ─────────────────────────────────────────────────────────────────


def submit_to_finance(
    ticket_id,
    actor_id,
    *,
    tentative_cost,
    cost_deducted_from: str,
    finance_officer_id,
    remarks: str,
    current_status: str | None = None,
) -> dict:
    """Create a pending FinanceApproval and move the ticket to SENT_TO_FINANCE.

    Returns:
        {"ticket": snapshot, "approval": approval_dict}
    """
    # Input validation
    cost = _parse_cost(tentative_cost)
    if cost_deducted_from not in COST_BEARERS:
        raise ValidationError(
            "cost_deducted_from must be one of: " + ", ".join(COST_BEARERS),
            {"cost_deducted_from": cost_deducted_from},
        )
    remarks = min_length(remarks, current_app.config.get("MIN_REMARKS_LENGTH", 10), "remarks")
    if finance_officer_id in (None, ""):
        raise ValidationError("finance_officer_id is required", {"finance_officer_id": "required"})
    officer = get_user_directory().get_user(_as_int(finance_officer_id, "finance_officer_id"))
    if officer is None or officer.role != "FINANCE":
        raise ValidationError(
            "finance_officer_id must reference an active finance officer",
            {"finance_officer_id": finance_officer_id},
        )

    ticket = lock_ticket(ticket_id)
    actor = resolve_actor(actor_id)
    check_ticket_permission(actor, ticket, "send_to_finance")
    check_current_status(ticket, current_status)

    old_status = ticket.status
    if old_status not in FINANCE_SUBMITTABLE_FROM:
        raise InvalidTransition("Ticket", old_status, "SENT_TO_FINANCE")
    if not ticket.requires_finance_approval:
        raise PreconditionFailed(
            f"Ticket {ticket.ticket_number} does not require finance approval",
            requirement="requires_finance_approval",
            details={"ticket_id": ticket.id},
        )
    if not all_steps_completed(ticket.steps):
        open_steps = [s.id for s in ticket.steps if s.status != "COMPLETED"]
        raise PreconditionFailed(
            "All workflow steps must be completed before sending to finance",
            requirement="all_steps_completed",
            step_id=open_steps[0],
            details={"open_step_ids": open_steps},
        )
    if _pending_approval(ticket.id) is not None:
        raise InvalidState(
            f"Ticket {ticket.ticket_number} already has a pending finance approval",
            {"ticket_id": ticket.id},
        )

    with unit_of_work("Ticket", ticket.id):
        approval = FinanceApproval(
            ticket=ticket,
            tentative_cost=cost,
            cost_deducted_from=cost_deducted_from,
            finance_officer_id=officer.id,
            remarks=remarks,
            status="pending",
            submitted_by_id=actor.id,
        )
        db.session.add(approval)
        db.session.flush()

        ticket.finance_submission_count = (ticket.finance_submission_count or 0) + 1
        ticket.status = "SENT_TO_FINANCE"
        ticket.latest_finance_status = "pending"
        ticket.finance_officer_id = officer.id

        write_audit(
            ticket_id=ticket.id,
            action="FINANCE_SUBMITTED",
            category="finance_action",
            actor_id=actor.id,
            actor_name=actor.name,
            old_value=old_status,
            new_value="SENT_TO_FINANCE",
            description="Submitted to Finance Department",
            metadata={
                "approval_id": approval.id,
                "tentative_cost": str(cost),
                "cost_deducted_from": cost_deducted_from,
                "finance_officer_id": officer.id,
                "finance_officer_name": officer.name,
                "submission_number": ticket.finance_submission_count,
                "remarks": remarks,
            },
        )

    logger.info(
        "Ticket sent to finance",
        extra={
            "ticket_id": ticket.id,
            "approval_id": approval.id,
            "actor_id": actor.id,
            "finance_officer_id": officer.id,
        },
    )
    return {"ticket": ticket_snapshot(ticket), "approval": approval.to_dict()}


def approve_finance_request(
    approval_id,
    actor_id,
    *,
    ticket_id=None,
    remarks: str | None = None,
    approval_document=None,
) -> dict:
    """Approve a pending request; the ticket moves to APPROVED_BY_FINANCE."""
    actor = resolve_actor(actor_id)
    approval, ticket = _load_decidable(approval_id, ticket_id, actor)
    remarks = (remarks or "").strip() or None
    return _decide(approval, ticket, actor, "approved", remarks=remarks, document=approval_document)


def reject_finance_request(
    approval_id,
    actor_id,
    *,
    rejection_reason: str,
    ticket_id=None,
    approval_document=None,
) -> dict:
    """Reject a pending request; the ticket moves to REJECTED_BY_FINANCE.

    The reason is validated before anything is loaded.
    """
    reason = min_length(
        rejection_reason,
        current_app.config.get("MIN_REJECTION_REASON_LENGTH", 20),
        "rejection_reason",
    )
    actor = resolve_actor(actor_id)
    approval, ticket = _load_decidable(approval_id, ticket_id, actor)
    return _decide(approval, ticket, actor, "rejected", reason=reason, document=approval_document)


def _decide(approval, ticket, actor, decision, *, remarks=None, reason=None, document=None) -> dict:
    new_status = "APPROVED_BY_FINANCE" if decision == "approved" else "REJECTED_BY_FINANCE"

    with unit_of_work("Ticket", ticket.id) as uploaded:
        document_id = None
        if document is not None:
            doc = store_document(
                ticket, document, actor, uploaded,
                requirement_name="Finance approval document",
            )
            document_id = doc.id
            approval.approval_document_id = doc.id

        approval.status = decision
        approval.decided_at = datetime.now(timezone.utc)
        if decision == "approved":
            approval.approval_remarks = remarks
        else:
            approval.rejection_reason = reason

        ticket.status = new_status
        ticket.latest_finance_status = decision

        write_audit(
            ticket_id=ticket.id,
            action="FINANCE_APPROVED" if decision == "approved" else "FINANCE_REJECTED",
            category="finance_action",
            actor_id=actor.id,
            actor_name=actor.name,
            old_value="SENT_TO_FINANCE",
            new_value=new_status,
            description=(
                "Finance Approval Granted" if decision == "approved" else "Finance Approval Rejected"
            ),
            metadata={
                "approval_id": approval.id,
                "remarks": remarks,
                "rejection_reason": reason,
                "approval_document_id": document_id,
            },
        )

    logger.info(
        "Finance approval %s", decision,
        extra={"ticket_id": ticket.id, "approval_id": approval.id, "actor_id": actor.id},
    )
    return {"ticket": ticket_snapshot(ticket), "approval": approval.to_dict()}


def get_finance_history(ticket_id) -> list[dict]:
    """All approvals of a ticket, newest submission first."""
    rows = db.session.execute(
        select(FinanceApproval)
        .where(FinanceApproval.ticket_id == ticket_id)
        .order_by(FinanceApproval.submitted_at.desc(), FinanceApproval.id.desc())
    ).scalars().all()
    return [r.to_dict() for r in rows]


def get_pending_approvals(finance_officer_id=None) -> list[dict]:
    """Pending work queue, oldest submission first."""
    stmt = select(FinanceApproval).where(FinanceApproval.status == "pending")
    if finance_officer_id is not None:
        stmt = stmt.where(FinanceApproval.finance_officer_id == finance_officer_id)
    stmt = stmt.order_by(FinanceApproval.submitted_at, FinanceApproval.id)
    return [r.to_dict() for r in db.session.execute(stmt).scalars().all()]


def list_finance_officers() -> list[dict]:
    return [u.to_dict() for u in get_user_directory().list_by_role("FINANCE")]


def _as_int(value, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", {field: value}) from None
