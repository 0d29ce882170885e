"""
Ticketflow
Document records.

The blob itself lives in the document store; this table holds its identity
(``storage_key``) and the flags the document gate counts.
"""

from datetime import datetime, timezone

from ticketflow.models import db


class Document(db.Model):
    """A file attached to a ticket, optionally scoped to one workflow step.

    ``step_id IS NULL`` means a ticket-level attachment (e.g. the ticket
    completion certificate or a finance approval document).
    """

    __tablename__ = "documents"
    __table_args__ = (
        db.Index("idx_documents_ticket_step", "ticket_id", "step_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False,
    )
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=True,
    )
    storage_key = db.Column(db.String(500), nullable=False, unique=True)
    file_name = db.Column(db.String(255), nullable=False)
    content_type = db.Column(db.String(100), nullable=True)
    size_bytes = db.Column(db.Integer, nullable=False, default=0)

    requirement_name = db.Column(
        db.String(255), nullable=True,
        comment="Informational: which named requirement the uploader meant to satisfy",
    )
    is_mandatory = db.Column(db.Boolean, nullable=False, default=False)
    is_completion_certificate = db.Column(db.Boolean, nullable=False, default=False)

    uploaded_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    uploaded_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    ticket = db.relationship("Ticket", back_populates="documents")
    step = db.relationship("WorkflowStep", back_populates="documents")

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "step_id": self.step_id,
            "file_name": self.file_name,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "requirement_name": self.requirement_name,
            "is_mandatory": self.is_mandatory,
            "is_completion_certificate": self.is_completion_certificate,
            "uploaded_by_id": self.uploaded_by_id,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }

    def __repr__(self):
        return f"<Document {self.id}: {self.file_name} ticket={self.ticket_id} step={self.step_id}>"
