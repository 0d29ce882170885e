"""
Ticketflow
Finance approval model.

    pending → approved | rejected

Rows are never deleted while the ticket exists; re-submission after a
rejection appends a new row, so the table is the full finance history.
"""

from datetime import datetime, timezone

from ticketflow.models import db

COST_BEARERS = (
    "Current Tenant/Employee",
    "Vacating Tenant/Employee",
    "Borne by Management",
)

APPROVAL_STATUSES = ("pending", "approved", "rejected")


class FinanceApproval(db.Model):
    __tablename__ = "finance_approvals"
    __table_args__ = (
        db.CheckConstraint("tentative_cost > 0", name="ck_finance_approvals_cost_positive"),
        db.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')", name="ck_finance_approvals_status",
        ),
        # At most one pending approval per ticket
        db.Index(
            "uq_finance_approvals_one_pending",
            "ticket_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
        db.Index("idx_finance_approvals_officer_status", "finance_officer_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    tentative_cost = db.Column(db.Numeric(15, 2), nullable=False)
    cost_deducted_from = db.Column(db.String(50), nullable=False)
    finance_officer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False,
    )
    remarks = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(10), nullable=False, default="pending")

    rejection_reason = db.Column(db.Text, nullable=True)
    approval_remarks = db.Column(db.Text, nullable=True)
    approval_document_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="SET NULL"), nullable=True,
    )

    submitted_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    ticket = db.relationship("Ticket", back_populates="finance_approvals")
    finance_officer = db.relationship("User", foreign_keys=[finance_officer_id])
    approval_document = db.relationship("Document", foreign_keys=[approval_document_id])

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "tentative_cost": str(self.tentative_cost) if self.tentative_cost is not None else None,
            "cost_deducted_from": self.cost_deducted_from,
            "finance_officer_id": self.finance_officer_id,
            "finance_officer_name": self.finance_officer.name if self.finance_officer else None,
            "remarks": self.remarks,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "approval_remarks": self.approval_remarks,
            "approval_document_id": self.approval_document_id,
            "submitted_by_id": self.submitted_by_id,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }

    def __repr__(self):
        return f"<FinanceApproval {self.id}: ticket={self.ticket_id} [{self.status}]>"
