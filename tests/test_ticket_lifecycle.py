"""
Ticket lifecycle tests.

Covers the general transition path in ``ticket_lifecycle.transition_ticket``:
    - Table edges executed by the right roles
    - Validation, permission, stale and table errors in that order
    - COMPLETED gates: finance approval, step dependencies, step documents,
      ticket completion certificate
    - Close-out of open steps on completion
    - Optimistic concurrency through the version counter
    - Failed operations leave the ticket snapshot untouched
"""

import pytest
from sqlalchemy import select, text

from ticketflow.core.exceptions import (
    InvalidTransition,
    PermissionDenied,
    PreconditionFailed,
    StaleStateError,
    ValidationError,
)
from ticketflow.integrations.document_store import UploadedFile
from ticketflow.models import db
from ticketflow.models.audit import AuditLog
from ticketflow.models.document import Document
from ticketflow.models.ticket import TICKET_TRANSITIONS, Ticket
from ticketflow.services import ticket_service
from ticketflow.services.ticket_lifecycle import (
    can_send_to_finance,
    get_available_transitions,
    transition_ticket,
)
from ticketflow.utils.helpers import unit_of_work

REMARKS = "Checked with the requester"


def _audit_count(ticket_id):
    return len(db.session.execute(
        select(AuditLog).where(AuditLog.ticket_id == ticket_id)
    ).scalars().all())


def _certificate():
    return UploadedFile("handover.pdf", b"%PDF-1.4 handover", "application/pdf")


# ═════════════════════════════════════════════════════════════════════════
# Creation and the happy path
# ═════════════════════════════════════════════════════════════════════════


class TestCreateAndAdvance:
    def test_create_ticket_starts_in_draft(self, employee):
        snapshot = ticket_service.create_ticket(employee.id, {"title": "Broken window"})
        assert snapshot["status"] == "DRAFT"
        assert snapshot["department"] == "Facilities"
        assert snapshot["ticket_number"] == "TKT-00001"
        assert snapshot["steps"] == []
        assert snapshot["latest_finance_approval"] is None

    def test_ticket_number_follows_the_row_id(self, make_ticket, employee):
        make_ticket(employee, status="ACTIVE")
        first = ticket_service.create_ticket(employee.id, {"title": "Broken window"})
        second = ticket_service.create_ticket(employee.id, {"title": "Leaking tap"})

        assert first["ticket_number"] == f"TKT-{first['id']:05d}"
        assert second["ticket_number"] == f"TKT-{second['id']:05d}"
        assert not db.session.execute(
            select(Ticket).where(Ticket.ticket_number.like("PENDING-%"))
        ).first()

    def test_create_requires_title(self, employee):
        with pytest.raises(ValidationError):
            ticket_service.create_ticket(employee.id, {"title": "  "})

    def test_create_rejects_unknown_priority(self, employee):
        with pytest.raises(ValidationError):
            ticket_service.create_ticket(employee.id, {"title": "Leak", "priority": "URGENT"})

    def test_requester_submits_and_officer_activates(self, employee, do_user):
        ticket_id = ticket_service.create_ticket(employee.id, {"title": "Broken window"})["id"]

        snapshot = transition_ticket(ticket_id, "CREATED", employee.id, REMARKS)
        assert snapshot["status"] == "CREATED"

        snapshot = transition_ticket(ticket_id, "ACTIVE", do_user.id, REMARKS, current_status="CREATED")
        assert snapshot["status"] == "ACTIVE"

    def test_cancel_and_reinstate(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="CREATED")
        assert transition_ticket(ticket.id, "CANCELLED", do_user.id, REMARKS)["status"] == "CANCELLED"
        assert transition_ticket(ticket.id, "CREATED", do_user.id, REMARKS)["status"] == "CREATED"

    def test_reopen_completed_ticket(self, make_ticket, employee, eo):
        ticket = make_ticket(employee, status="COMPLETED")
        assert transition_ticket(ticket.id, "ACTIVE", eo.id, REMARKS)["status"] == "ACTIVE"

    def test_each_transition_writes_one_audit_entry(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="CREATED")
        transition_ticket(ticket.id, "APPROVED", do_user.id, REMARKS)

        entries = db.session.execute(
            select(AuditLog).where(AuditLog.ticket_id == ticket.id)
        ).scalars().all()
        assert len(entries) == 1
        entry = entries[0]
        assert entry.action == "STATUS_CHANGED"
        assert entry.category == "status_change"
        assert (entry.old_value, entry.new_value) == ("CREATED", "APPROVED")
        assert entry.actor_name == "Deniz Aksoy"
        assert entry.meta["remarks"] == REMARKS


# ═════════════════════════════════════════════════════════════════════════
# Refusals
# ═════════════════════════════════════════════════════════════════════════


class TestRefusals:
    def test_short_remarks(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="CREATED")
        with pytest.raises(ValidationError):
            transition_ticket(ticket.id, "ACTIVE", do_user.id, "   ok     ")

    def test_unknown_status(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="CREATED")
        with pytest.raises(ValidationError):
            transition_ticket(ticket.id, "ARCHIVED", do_user.id, REMARKS)

    def test_requester_cannot_activate(self, make_ticket, employee):
        ticket = make_ticket(employee, status="CREATED")
        with pytest.raises(PermissionDenied):
            transition_ticket(ticket.id, "ACTIVE", employee.id, REMARKS)

    def test_requester_cannot_resubmit_an_active_ticket(self, make_ticket, employee):
        ticket = make_ticket(employee, status="ACTIVE")
        with pytest.raises(PermissionDenied):
            transition_ticket(ticket.id, "CREATED", employee.id, REMARKS)

    @pytest.mark.parametrize("target", ["CLOSED", "DRAFT"])
    def test_requester_denied_before_the_table(self, make_ticket, employee, target):
        ticket = make_ticket(employee, status="DRAFT")
        with pytest.raises(PermissionDenied):
            transition_ticket(ticket.id, target, employee.id, REMARKS)

    def test_manager_gets_table_error_for_unlisted_target(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="DRAFT")
        with pytest.raises(InvalidTransition):
            transition_ticket(ticket.id, "CLOSED", do_user.id, REMARKS)

    def test_officer_of_another_department_is_denied(self, make_ticket, employee, other_do):
        ticket = make_ticket(employee, status="CREATED")
        with pytest.raises(PermissionDenied):
            transition_ticket(ticket.id, "ACTIVE", other_do.id, REMARKS)

    def test_edge_not_in_table(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="DRAFT")
        with pytest.raises(InvalidTransition):
            transition_ticket(ticket.id, "ACTIVE", do_user.id, REMARKS)

    def test_sent_to_finance_needs_the_finance_submission(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="ACTIVE")
        with pytest.raises(InvalidTransition):
            transition_ticket(ticket.id, "SENT_TO_FINANCE", do_user.id, REMARKS)

    def test_stale_current_status(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="ACTIVE")
        with pytest.raises(StaleStateError) as exc_info:
            transition_ticket(ticket.id, "CANCELLED", do_user.id, REMARKS, current_status="CREATED")
        assert exc_info.value.details["actual"] == "ACTIVE"

    def test_permission_is_checked_before_staleness(self, make_ticket, employee):
        ticket = make_ticket(employee, status="ACTIVE")
        with pytest.raises(PermissionDenied):
            transition_ticket(ticket.id, "CANCELLED", employee.id, REMARKS, current_status="CREATED")

    def test_certificate_only_with_completion(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="CREATED")
        with pytest.raises(ValidationError):
            transition_ticket(ticket.id, "ACTIVE", do_user.id, REMARKS, completion_certificate=_certificate())

    def test_failed_transition_leaves_ticket_untouched(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="ACTIVE")
        before = ticket_service.ticket_snapshot(ticket_service.get_ticket(ticket.id))
        audit_before = _audit_count(ticket.id)

        with pytest.raises(PreconditionFailed):
            transition_ticket(ticket.id, "COMPLETED", do_user.id, REMARKS)

        after = ticket_service.ticket_snapshot(ticket_service.get_ticket(ticket.id))
        assert after == before
        assert _audit_count(ticket.id) == audit_before


# ═════════════════════════════════════════════════════════════════════════
# COMPLETED gates
# ═════════════════════════════════════════════════════════════════════════


class TestCompletionGates:
    def test_finance_approval_required(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="ACTIVE")
        with pytest.raises(PreconditionFailed) as exc_info:
            transition_ticket(ticket.id, "COMPLETED", do_user.id, REMARKS)
        assert exc_info.value.requirement == "finance_approval"

    def test_complete_without_finance_gate(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="ACTIVE", requires_finance_approval=False)
        assert transition_ticket(ticket.id, "COMPLETED", do_user.id, REMARKS)["status"] == "COMPLETED"

    def test_complete_after_finance_approval(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="APPROVED_BY_FINANCE", latest_finance_status="approved")
        assert transition_ticket(ticket.id, "COMPLETED", do_user.id, REMARKS)["status"] == "COMPLETED"

    def test_open_step_dependencies_block(self, make_ticket, make_step, employee, do_user):
        ticket = make_ticket(employee, status="ACTIVE", requires_finance_approval=False)
        first = make_step(ticket, "Survey", level_1=1)
        second = make_step(ticket, "Repair", level_1=2, depends_on=[first])

        with pytest.raises(PreconditionFailed) as exc_info:
            transition_ticket(ticket.id, "COMPLETED", do_user.id, REMARKS)
        assert exc_info.value.requirement == "dependencies"
        assert exc_info.value.step_id == second.id

    def test_missing_step_documents_block(self, make_ticket, make_step, employee, do_user):
        ticket = make_ticket(employee, status="ACTIVE", requires_finance_approval=False)
        step = make_step(ticket, "Invoice check", mandatory_documents=["Invoice"])

        with pytest.raises(PreconditionFailed) as exc_info:
            transition_ticket(ticket.id, "COMPLETED", do_user.id, REMARKS)
        assert exc_info.value.requirement == "documents"
        assert exc_info.value.step_id == step.id
        assert exc_info.value.details["documents"]["missing"] == ["Invoice"]

    def test_completion_certificate_required_for_certificate_role(self, make_ticket, employee, do_user):
        ticket = make_ticket(
            employee, status="ACTIVE",
            requires_finance_approval=False, completion_documents_required=True,
        )
        with pytest.raises(PreconditionFailed) as exc_info:
            transition_ticket(ticket.id, "COMPLETED", do_user.id, REMARKS)
        assert exc_info.value.requirement == "completion_certificate"

    def test_completion_certificate_uploaded_with_transition(self, make_ticket, employee, do_user, document_store):
        ticket = make_ticket(
            employee, status="ACTIVE",
            requires_finance_approval=False, completion_documents_required=True,
        )
        snapshot = transition_ticket(
            ticket.id, "COMPLETED", do_user.id, REMARKS, completion_certificate=_certificate(),
        )
        assert snapshot["status"] == "COMPLETED"
        assert len(snapshot["documents"]) == 1
        doc = snapshot["documents"][0]
        assert doc["is_completion_certificate"] is True
        assert doc["step_id"] is None
        assert len(document_store.keys()) == 1

        entry = db.session.execute(
            select(AuditLog).where(AuditLog.ticket_id == ticket.id)
        ).scalar_one()
        assert entry.meta["completion_certificate_id"] == doc["id"]

    def test_executive_officer_also_needs_certificate(self, make_ticket, employee, eo):
        ticket = make_ticket(
            employee, status="ACTIVE",
            requires_finance_approval=False, completion_documents_required=True,
        )
        with pytest.raises(PreconditionFailed) as exc_info:
            transition_ticket(ticket.id, "COMPLETED", eo.id, REMARKS)
        assert exc_info.value.requirement == "completion_certificate"

        snapshot = transition_ticket(
            ticket.id, "COMPLETED", eo.id, REMARKS, completion_certificate=_certificate(),
        )
        assert snapshot["status"] == "COMPLETED"

    def test_role_outside_certificate_roles_needs_no_certificate(self, app, make_ticket, employee, eo, monkeypatch):
        monkeypatch.setitem(app.config, "COMPLETION_CERTIFICATE_ROLES", ("DO",))
        ticket = make_ticket(
            employee, status="ACTIVE",
            requires_finance_approval=False, completion_documents_required=True,
        )
        assert transition_ticket(ticket.id, "COMPLETED", eo.id, REMARKS)["status"] == "COMPLETED"

    def test_open_steps_are_closed_out(self, make_ticket, make_step, employee, do_user):
        ticket = make_ticket(employee, status="ACTIVE", requires_finance_approval=False)
        done = make_step(ticket, "Survey", status="COMPLETED", level_1=1)
        closed = make_step(ticket, "Permit", status="CLOSED", level_1=2)
        open_step = make_step(ticket, "Repair", status="ACTIVE", level_1=3)

        snapshot = transition_ticket(ticket.id, "COMPLETED", do_user.id, REMARKS)

        statuses = {s["id"]: s["status"] for s in snapshot["steps"]}
        assert statuses == {done.id: "COMPLETED", closed.id: "CLOSED", open_step.id: "COMPLETED"}
        repaired = next(s for s in snapshot["steps"] if s["id"] == open_step.id)
        assert repaired["progress"] == 100
        assert repaired["completed_at"] is not None

        entry = db.session.execute(
            select(AuditLog).where(AuditLog.ticket_id == ticket.id)
        ).scalar_one()
        assert entry.meta["closed_step_ids"] == [open_step.id]


# ═════════════════════════════════════════════════════════════════════════
# Offered transitions
# ═════════════════════════════════════════════════════════════════════════


class TestAvailableTransitions:
    def _actor(self, user):
        return ticket_service.resolve_actor(user.id)

    def test_officer_on_created_ticket(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="CREATED")
        assert get_available_transitions(ticket, self._actor(do_user)) == TICKET_TRANSITIONS["CREATED"]

    def test_requester_on_draft(self, make_ticket, employee):
        ticket = make_ticket(employee, status="DRAFT")
        assert get_available_transitions(ticket, self._actor(employee)) == ["CREATED"]

    def test_requester_on_created_ticket_has_nothing(self, make_ticket, employee):
        ticket = make_ticket(employee, status="CREATED")
        assert get_available_transitions(ticket, self._actor(employee)) == []

    def test_finance_offered_when_steps_completed(self, make_ticket, make_step, employee, do_user):
        ticket = make_ticket(employee, status="ACTIVE")
        make_step(ticket, "Repair", status="COMPLETED")
        offered = get_available_transitions(ticket, self._actor(do_user))
        assert offered == ["COMPLETED", "CANCELLED", "SENT_TO_FINANCE"]

    def test_finance_not_offered_with_open_or_closed_steps(self, make_ticket, make_step, employee):
        ticket = make_ticket(employee, status="ACTIVE")
        make_step(ticket, "Repair", status="CLOSED")
        assert can_send_to_finance(ticket) is False

    def test_finance_not_offered_without_finance_gate(self, make_ticket, employee):
        ticket = make_ticket(employee, status="ACTIVE", requires_finance_approval=False)
        assert can_send_to_finance(ticket) is False


# ═════════════════════════════════════════════════════════════════════════
# Concurrency
# ═════════════════════════════════════════════════════════════════════════


class TestConcurrency:
    def test_version_increments_on_every_write(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="CREATED")
        version = ticket_service.get_ticket(ticket.id).version_id
        snapshot = transition_ticket(ticket.id, "ACTIVE", do_user.id, REMARKS)
        assert snapshot["version"] == version + 1

    def test_concurrent_writer_is_rejected(self, make_ticket, employee):
        ticket = make_ticket(employee, status="CREATED")
        loaded = ticket_service.get_ticket(ticket.id)

        # Another writer commits first and moves the version on
        db.session.execute(
            text("UPDATE tickets SET version_id = version_id + 1 WHERE id = :id"), {"id": ticket.id},
        )

        with pytest.raises(StaleStateError):
            with unit_of_work("Ticket", ticket.id):
                loaded.title = "Lost update"

    def test_lock_ticket_reads_committed_state(self, make_ticket, employee, do_user):
        ticket = make_ticket(employee, status="CREATED")
        cached = ticket_service.get_ticket(ticket.id)
        db.session.execute(
            text("UPDATE tickets SET status = 'ACTIVE', version_id = version_id + 1 WHERE id = :id"),
            {"id": ticket.id},
        )
        # The caller last saw CREATED; the row now says ACTIVE
        assert cached.status == "CREATED"
        with pytest.raises(StaleStateError):
            transition_ticket(ticket.id, "CANCELLED", do_user.id, REMARKS, current_status="CREATED")

    def test_no_orphan_documents_after_failed_completion(self, make_ticket, make_step, employee, do_user, document_store):
        ticket = make_ticket(employee, status="ACTIVE", requires_finance_approval=False)
        make_step(ticket, "Invoice check", mandatory_documents=["Invoice"])
        with pytest.raises(PreconditionFailed):
            transition_ticket(ticket.id, "COMPLETED", do_user.id, REMARKS, completion_certificate=_certificate())
        assert document_store.keys() == []
        assert db.session.execute(select(Document)).scalars().all() == []
