"""
Finance approval sub-process tests.

    submit  ACTIVE | REJECTED_BY_FINANCE → SENT_TO_FINANCE   (approval pending)
    approve SENT_TO_FINANCE → APPROVED_BY_FINANCE
    reject  SENT_TO_FINANCE → REJECTED_BY_FINANCE
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from ticketflow.core.exceptions import (
    InvalidState,
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    PreconditionFailed,
    StaleStateError,
    ValidationError,
)
from ticketflow.integrations.document_store import UploadedFile
from ticketflow.models import db
from ticketflow.models.audit import AuditLog
from ticketflow.models.finance import FinanceApproval
from ticketflow.services import finance_service, ticket_service
from ticketflow.services.step_service import create_step
from ticketflow.services.ticket_lifecycle import transition_ticket

REMARKS = "Replace pump"          # 12 characters
REASON = "Quote exceeds the budget."  # 25 characters


@pytest.fixture()
def active_ticket(make_ticket, make_step, employee):
    ticket = make_ticket(employee, status="ACTIVE")
    make_step(ticket, "Repair pump", status="COMPLETED")
    return ticket


def _submit(ticket, actor, officer, **overrides):
    kwargs = {
        "tentative_cost": 1500,
        "cost_deducted_from": "Borne by Management",
        "finance_officer_id": officer.id,
        "remarks": REMARKS,
    }
    kwargs.update(overrides)
    return finance_service.submit_to_finance(ticket.id, actor.id, **kwargs)


# ═════════════════════════════════════════════════════════════════════════
# Round trip
# ═════════════════════════════════════════════════════════════════════════


class TestRoundTrip:
    def test_submit_reject_resubmit_approve_complete(self, active_ticket, do_user, finance_officer):
        result = _submit(active_ticket, do_user, finance_officer)
        ticket = result["ticket"]
        first = result["approval"]
        assert ticket["status"] == "SENT_TO_FINANCE"
        assert ticket["latest_finance_status"] == "pending"
        assert ticket["finance_submission_count"] == 1
        assert ticket["finance_officer_id"] == finance_officer.id
        assert first["status"] == "pending"
        assert first["tentative_cost"] == "1500.00"
        assert first["finance_officer_name"] == "Fatma Kaya"

        result = finance_service.reject_finance_request(
            first["id"], finance_officer.id, rejection_reason=REASON,
        )
        assert result["ticket"]["status"] == "REJECTED_BY_FINANCE"
        assert result["ticket"]["latest_finance_status"] == "rejected"
        assert result["approval"]["rejection_reason"] == REASON
        assert result["approval"]["decided_at"] is not None

        result = _submit(active_ticket, do_user, finance_officer, tentative_cost="1200.50")
        second = result["approval"]
        assert result["ticket"]["finance_submission_count"] == 2
        assert second["id"] != first["id"]

        result = finance_service.approve_finance_request(
            second["id"], finance_officer.id, remarks="Within budget",
        )
        assert result["ticket"]["status"] == "APPROVED_BY_FINANCE"
        assert result["ticket"]["latest_finance_status"] == "approved"
        assert result["approval"]["approval_remarks"] == "Within budget"

        snapshot = transition_ticket(active_ticket.id, "COMPLETED", do_user.id, "Work signed off")
        assert snapshot["status"] == "COMPLETED"

        history = finance_service.get_finance_history(active_ticket.id)
        assert [h["status"] for h in history] == ["approved", "rejected"]

    def test_audit_entries_for_each_step(self, active_ticket, do_user, finance_officer):
        approval = _submit(active_ticket, do_user, finance_officer)["approval"]
        finance_service.reject_finance_request(approval["id"], finance_officer.id, rejection_reason=REASON)

        entries = db.session.execute(
            select(AuditLog).where(AuditLog.ticket_id == active_ticket.id).order_by(AuditLog.id)
        ).scalars().all()
        assert [e.action for e in entries] == ["FINANCE_SUBMITTED", "FINANCE_REJECTED"]
        assert {e.category for e in entries} == {"finance_action"}
        assert entries[0].description == "Submitted to Finance Department"
        assert entries[0].meta["tentative_cost"] == "1500.00"
        assert entries[0].meta["finance_officer_name"] == "Fatma Kaya"
        assert entries[1].description == "Finance Approval Rejected"
        assert entries[1].actor_name == "Fatma Kaya"

    def test_snapshot_shows_latest_approval(self, active_ticket, do_user, finance_officer):
        approval = _submit(active_ticket, do_user, finance_officer)["approval"]
        snapshot = ticket_service.ticket_snapshot(ticket_service.get_ticket(active_ticket.id))
        assert snapshot["latest_finance_approval"]["id"] == approval["id"]

    def test_approval_document_is_recorded(self, active_ticket, do_user, finance_officer, document_store):
        approval = _submit(active_ticket, do_user, finance_officer)["approval"]
        result = finance_service.approve_finance_request(
            approval["id"], finance_officer.id,
            approval_document=UploadedFile("approval.pdf", b"%PDF approval", "application/pdf"),
        )
        doc_id = result["approval"]["approval_document_id"]
        assert doc_id is not None
        assert any(d["id"] == doc_id for d in result["ticket"]["documents"])
        assert len(document_store.keys()) == 1


# ═════════════════════════════════════════════════════════════════════════
# Submission refusals
# ═════════════════════════════════════════════════════════════════════════


class TestSubmitRefusals:
    @pytest.mark.parametrize("cost", [0, -5, "abc", None])
    def test_invalid_cost(self, active_ticket, do_user, finance_officer, cost):
        with pytest.raises(ValidationError):
            _submit(active_ticket, do_user, finance_officer, tentative_cost=cost)

    def test_unknown_cost_bearer(self, active_ticket, do_user, finance_officer):
        with pytest.raises(ValidationError):
            _submit(active_ticket, do_user, finance_officer, cost_deducted_from="Landlord")

    def test_short_remarks(self, active_ticket, do_user, finance_officer):
        with pytest.raises(ValidationError):
            _submit(active_ticket, do_user, finance_officer, remarks="too short")

    def test_officer_must_hold_finance_role(self, active_ticket, do_user, employee):
        with pytest.raises(ValidationError):
            _submit(active_ticket, do_user, employee)

    def test_requester_cannot_submit(self, active_ticket, employee, finance_officer):
        with pytest.raises(PermissionDenied):
            _submit(active_ticket, employee, finance_officer)

    def test_wrong_status(self, make_ticket, employee, do_user, finance_officer):
        ticket = make_ticket(employee, status="CREATED")
        with pytest.raises(InvalidTransition):
            _submit(ticket, do_user, finance_officer)

    def test_ticket_without_finance_gate(self, make_ticket, employee, do_user, finance_officer):
        ticket = make_ticket(employee, status="ACTIVE", requires_finance_approval=False)
        with pytest.raises(PreconditionFailed) as exc_info:
            _submit(ticket, do_user, finance_officer)
        assert exc_info.value.requirement == "requires_finance_approval"

    def test_open_steps_block(self, make_ticket, make_step, employee, do_user, finance_officer):
        ticket = make_ticket(employee, status="ACTIVE")
        done = make_step(ticket, "Survey", status="COMPLETED", level_1=1)
        closed = make_step(ticket, "Permit", status="CLOSED", level_1=2)
        with pytest.raises(PreconditionFailed) as exc_info:
            _submit(ticket, do_user, finance_officer)
        assert exc_info.value.requirement == "all_steps_completed"
        assert exc_info.value.step_id == closed.id
        assert done.id not in exc_info.value.details["open_step_ids"]

    def test_second_submission_while_pending(self, active_ticket, do_user, finance_officer):
        _submit(active_ticket, do_user, finance_officer)
        with pytest.raises(InvalidTransition):
            _submit(active_ticket, do_user, finance_officer)
        pending = db.session.execute(
            select(FinanceApproval).where(FinanceApproval.status == "pending")
        ).scalars().all()
        assert len(pending) == 1

    def test_stale_current_status(self, active_ticket, do_user, finance_officer):
        with pytest.raises(StaleStateError):
            _submit(active_ticket, do_user, finance_officer, current_status="REJECTED_BY_FINANCE")


# ═════════════════════════════════════════════════════════════════════════
# Decision refusals
# ═════════════════════════════════════════════════════════════════════════


class TestDecisionRefusals:
    @pytest.fixture()
    def pending(self, active_ticket, do_user, finance_officer):
        return _submit(active_ticket, do_user, finance_officer)["approval"]

    def test_other_officer_cannot_decide(self, pending, finance_officer_2):
        with pytest.raises(PermissionDenied):
            finance_service.approve_finance_request(pending["id"], finance_officer_2.id)
        approval = db.session.get(FinanceApproval, pending["id"])
        assert approval.status == "pending"

    def test_short_rejection_reason(self, pending, finance_officer):
        with pytest.raises(ValidationError):
            finance_service.reject_finance_request(
                pending["id"], finance_officer.id, rejection_reason="Too expensive here",
            )
        assert db.session.get(FinanceApproval, pending["id"]).status == "pending"

    def test_already_decided(self, pending, finance_officer):
        finance_service.approve_finance_request(pending["id"], finance_officer.id)
        with pytest.raises(InvalidState):
            finance_service.reject_finance_request(
                pending["id"], finance_officer.id, rejection_reason=REASON,
            )

    def test_ticket_mismatch_is_not_found(self, pending, finance_officer):
        with pytest.raises(NotFoundError):
            finance_service.approve_finance_request(
                pending["id"], finance_officer.id, ticket_id=pending["ticket_id"] + 100,
            )

    def test_non_numeric_ticket_id_is_invalid(self, pending, finance_officer):
        with pytest.raises(ValidationError):
            finance_service.approve_finance_request(
                pending["id"], finance_officer.id, ticket_id="abc",
            )
        assert db.session.get(FinanceApproval, pending["id"]).status == "pending"

    def test_unknown_approval(self, finance_officer):
        with pytest.raises(NotFoundError):
            finance_service.approve_finance_request(999, finance_officer.id)

    def test_steps_frozen_while_with_finance(self, pending, do_user):
        with pytest.raises(InvalidState):
            create_step(pending["ticket_id"], do_user.id, {"title": "Extra work"})

    def test_finance_flag_frozen_while_with_finance(self, pending, do_user):
        with pytest.raises(InvalidState):
            ticket_service.update_ticket(
                pending["ticket_id"], do_user.id, {"requires_finance_approval": False},
            )

    def test_finance_flag_kept_after_a_decision(self, pending, do_user, finance_officer):
        finance_service.reject_finance_request(pending["id"], finance_officer.id, rejection_reason=REASON)
        with pytest.raises(InvalidState):
            ticket_service.update_ticket(
                pending["ticket_id"], do_user.id, {"requires_finance_approval": False},
            )
        ticket = ticket_service.get_ticket(pending["ticket_id"])
        assert ticket.requires_finance_approval is True
        assert ticket.latest_finance_status == "rejected"

    def test_general_path_cannot_leave_finance(self, pending, do_user):
        with pytest.raises(InvalidTransition):
            transition_ticket(pending["ticket_id"], "ACTIVE", do_user.id, "Pull it back please")


# ═════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════


class TestQueries:
    def test_pending_queue_per_officer(self, make_ticket, employee, do_user, finance_officer, finance_officer_2):
        first = make_ticket(employee, status="ACTIVE")
        second = make_ticket(employee, status="ACTIVE")
        _submit(first, do_user, finance_officer)
        _submit(second, do_user, finance_officer_2)

        assert len(finance_service.get_pending_approvals()) == 2
        mine = finance_service.get_pending_approvals(finance_officer_id=finance_officer.id)
        assert [a["ticket_id"] for a in mine] == [first.id]

    def test_list_finance_officers(self, finance_officer, finance_officer_2, do_user):
        names = [o["name"] for o in finance_service.list_finance_officers()]
        assert names == ["Burak Demir", "Fatma Kaya"]

    def test_cost_is_stored_exactly(self, active_ticket, do_user, finance_officer):
        approval = _submit(active_ticket, do_user, finance_officer, tentative_cost="99.99")["approval"]
        assert db.session.get(FinanceApproval, approval["id"]).tentative_cost == Decimal("99.99")
