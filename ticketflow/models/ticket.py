"""
Ticketflow
Ticket domain models.

Models:
    - Ticket:          a work request moving through the ticket lifecycle
    - WorkflowStep:    unit of work inside a ticket's three-level workflow tree
    - StepDependency:  prerequisite → dependent edge between two steps of one ticket

Architecture:
    Ticket ──1:N──▶ WorkflowStep ──N:M──▶ WorkflowStep  (via StepDependency)
    Ticket ──1:N──▶ Document       (ticket-level attachments and step documents)
    Ticket ──1:N──▶ FinanceApproval

Lifecycle states:
    Ticket:        DRAFT → CREATED → (APPROVED) → ACTIVE → COMPLETED
                   ACTIVE → SENT_TO_FINANCE → APPROVED_BY_FINANCE | REJECTED_BY_FINANCE
                   any open state → CANCELLED → CREATED,  COMPLETED/CLOSED → ACTIVE
    WorkflowStep:  CREATED → ACTIVE → COMPLETED → CLOSED,  COMPLETED/CLOSED → ACTIVE
"""

from datetime import datetime, timezone

from ticketflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

TICKET_STATUSES = (
    "DRAFT", "CREATED", "APPROVED", "ACTIVE",
    "SENT_TO_FINANCE", "APPROVED_BY_FINANCE", "REJECTED_BY_FINANCE",
    "COMPLETED", "CLOSED", "CANCELLED",
)

TICKET_PRIORITIES = ("CRITICAL", "HIGH", "MEDIUM", "LOW")

STEP_STATUSES = ("CREATED", "ACTIVE", "COMPLETED", "CLOSED")

DEPENDENCY_MODES = ("all", "any")

FINANCE_STATUSES = ("pending", "approved", "rejected")


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

# SENT_TO_FINANCE is reached only through the finance submission.
TICKET_TRANSITIONS = {
    "DRAFT":               ["CREATED"],
    "CREATED":             ["ACTIVE", "APPROVED", "CANCELLED"],
    "APPROVED":            ["ACTIVE", "CANCELLED"],
    "ACTIVE":              ["COMPLETED", "CANCELLED"],
    "SENT_TO_FINANCE":     [],
    "APPROVED_BY_FINANCE": ["COMPLETED", "ACTIVE"],
    "REJECTED_BY_FINANCE": ["ACTIVE"],
    "CLOSED":              ["ACTIVE"],
    "COMPLETED":           ["ACTIVE"],
    "CANCELLED":           ["CREATED"],
}

FINANCE_SUBMITTABLE_FROM = ("ACTIVE", "REJECTED_BY_FINANCE")

STEP_TRANSITIONS = {
    "CREATED":   ["ACTIVE", "COMPLETED"],
    "ACTIVE":    ["COMPLETED"],
    "COMPLETED": ["ACTIVE", "CLOSED"],
    "CLOSED":    ["ACTIVE"],
}

STEP_DONE_STATUSES = ("COMPLETED", "CLOSED")


def validate_ticket_transition(old_status, new_status):
    """Return True if Ticket status transition is in the base table."""
    return new_status in TICKET_TRANSITIONS.get(old_status, [])


def validate_step_transition(old_status, new_status):
    """Return True if WorkflowStep status transition is valid."""
    return new_status in STEP_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


def _in_list(column: str, values) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


# ═════════════════════════════════════════════════════════════════════════════
# Ticket
# ═════════════════════════════════════════════════════════════════════════════


class Ticket(db.Model):
    """
    Work request owned by a department.

    ``version_id`` is the optimistic-concurrency counter: every UPDATE of the
    row checks and bumps it, so two writers that read the same version cannot
    both commit. Step mutations touch ``updated_at`` to take part in it.
    """

    __tablename__ = "tickets"
    __table_args__ = (
        db.CheckConstraint(_in_list("status", TICKET_STATUSES), name="ck_tickets_status"),
        db.CheckConstraint(_in_list("priority", TICKET_PRIORITIES), name="ck_tickets_priority"),
        db.CheckConstraint(
            "latest_finance_status IS NULL OR " + _in_list("latest_finance_status", FINANCE_STATUSES),
            name="ck_tickets_latest_finance_status",
        ),
        db.Index("idx_tickets_department_status", "department", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_number = db.Column(db.String(20), nullable=False, unique=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(30), nullable=False, default="DRAFT")
    priority = db.Column(db.String(10), nullable=False, default="MEDIUM")
    department = db.Column(db.String(100), nullable=False, index=True)
    category = db.Column(db.String(100), nullable=True)

    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    assigned_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    due_date = db.Column(db.Date, nullable=True)

    # Finance gate
    requires_finance_approval = db.Column(db.Boolean, nullable=False, default=True)
    latest_finance_status = db.Column(
        db.String(10), nullable=True,
        comment="NULL until first submission, then mirrors the latest approval",
    )
    finance_submission_count = db.Column(db.Integer, nullable=False, default=0)
    finance_officer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    # False waives the completion-certificate requirements for this ticket
    completion_documents_required = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    # Relationships
    steps = db.relationship(
        "WorkflowStep",
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by=lambda: (
            WorkflowStep.level_1, WorkflowStep.level_2, WorkflowStep.level_3, WorkflowStep.id,
        ),
    )
    documents = db.relationship(
        "Document", back_populates="ticket", cascade="all, delete-orphan",
    )
    finance_approvals = db.relationship(
        "FinanceApproval", back_populates="ticket", cascade="all, delete-orphan",
    )
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "ticket_number": self.ticket_number,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "department": self.department,
            "category": self.category,
            "created_by_id": self.created_by_id,
            "assigned_to_id": self.assigned_to_id,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "requires_finance_approval": self.requires_finance_approval,
            "latest_finance_status": self.latest_finance_status,
            "finance_submission_count": self.finance_submission_count,
            "finance_officer_id": self.finance_officer_id,
            "completion_documents_required": self.completion_documents_required,
            "version": self.version_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<Ticket {self.id}: {self.ticket_number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# WorkflowStep
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowStep(db.Model):
    """
    A single unit of work inside a ticket.

    ``level_1/2/3`` only order and group steps for display; dependency logic
    uses the StepDependency edges exclusively.
    """

    __tablename__ = "workflow_steps"
    __table_args__ = (
        db.CheckConstraint(_in_list("status", STEP_STATUSES), name="ck_workflow_steps_status"),
        db.CheckConstraint(
            _in_list("dependency_mode", DEPENDENCY_MODES), name="ck_workflow_steps_dependency_mode",
        ),
        db.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_workflow_steps_progress"),
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), nullable=False, default="CREATED")
    assigned_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    level_1 = db.Column(db.Integer, nullable=False, default=1)
    level_2 = db.Column(db.Integer, nullable=False, default=0)
    level_3 = db.Column(db.Integer, nullable=False, default=0)

    # Dependency gating
    is_parallel = db.Column(db.Boolean, nullable=False, default=False)
    dependency_mode = db.Column(db.String(5), nullable=False, default="all")
    is_dependency_locked = db.Column(db.Boolean, nullable=False, default=False)

    # Document gating
    mandatory_documents = db.Column(
        db.JSON, nullable=False, default=list,
        comment="Named document requirements; the gate counts, it does not match names",
    )
    completion_certificate_required = db.Column(db.Boolean, nullable=False, default=False)

    progress = db.Column(db.Integer, nullable=False, default=0)
    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    # Relationships
    ticket = db.relationship("Ticket", back_populates="steps")
    dependencies = db.relationship(
        "StepDependency",
        foreign_keys="StepDependency.step_id",
        back_populates="step",
        cascade="all, delete-orphan",
    )
    dependents = db.relationship(
        "StepDependency",
        foreign_keys="StepDependency.depends_on_step_id",
        back_populates="depends_on",
        cascade="all, delete-orphan",
    )
    documents = db.relationship("Document", back_populates="step", cascade="all, delete-orphan")

    @property
    def dependency_ids(self) -> list[int]:
        return [d.depends_on_step_id for d in self.dependencies]

    @property
    def code(self) -> str:
        """Display code from the hierarchy coordinates, e.g. ``2.1.0``."""
        return f"{self.level_1}.{self.level_2}.{self.level_3}"

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "assigned_to_id": self.assigned_to_id,
            "level_1": self.level_1,
            "level_2": self.level_2,
            "level_3": self.level_3,
            "is_parallel": self.is_parallel,
            "dependency_mode": self.dependency_mode,
            "depends_on_step_ids": self.dependency_ids,
            "is_dependency_locked": self.is_dependency_locked,
            "mandatory_documents": list(self.mandatory_documents or []),
            "completion_certificate_required": self.completion_certificate_required,
            "progress": self.progress,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<WorkflowStep {self.id}: {self.code} {self.title[:30]} [{self.status}]>"


class StepDependency(db.Model):
    """Edge: ``step_id`` cannot proceed until ``depends_on_step_id`` is done."""

    __tablename__ = "workflow_step_dependencies"
    __table_args__ = (
        db.UniqueConstraint("step_id", "depends_on_step_id", name="uq_step_dependency"),
        db.CheckConstraint("step_id != depends_on_step_id", name="ck_step_dependency_no_self"),
    )

    id = db.Column(db.Integer, primary_key=True)
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    depends_on_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    step = db.relationship("WorkflowStep", foreign_keys=[step_id], back_populates="dependencies")
    depends_on = db.relationship("WorkflowStep", foreign_keys=[depends_on_step_id], back_populates="dependents")

    def to_dict(self):
        return {
            "id": self.id,
            "step_id": self.step_id,
            "depends_on_step_id": self.depends_on_step_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<StepDependency {self.depends_on_step_id} → {self.step_id}>"
