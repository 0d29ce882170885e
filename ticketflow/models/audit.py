"""
Ticketflow
Audit domain model.

Models:
    - AuditLog: immutable, append-only trail of every state-changing operation.

``ticket_id`` is a plain indexed integer, not a foreign key: the trail is
owned by the engine and outlives ticket deletion.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import event

from ticketflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_CATEGORIES = {
    "ticket_action",
    "workflow_action",
    "document_action",
    "status_change",
    "assignment_change",
    "progress_update",
    "finance_action",
}

AUDIT_ACTIONS = {
    # Ticket
    "TICKET_CREATED",
    "TICKET_UPDATED",
    "TICKET_ASSIGNED",
    "STATUS_CHANGED",
    # Finance
    "FINANCE_SUBMITTED",
    "FINANCE_APPROVED",
    "FINANCE_REJECTED",
    # Workflow steps
    "STEP_CREATED",
    "STEP_UPDATED",
    "STEP_ASSIGNED",
    "STEP_PROGRESS_UPDATED",
    "STEP_STATUS_CHANGED",
    "STEP_DELETED",
    "DEPENDENCIES_UPDATED",
    "DEPENDENCIES_LOCKED",
    # Documents
    "DOCUMENT_UPLOADED",
    "DOCUMENT_DELETED",
}


class AuditImmutableError(Exception):
    """Raised when code tries to UPDATE or DELETE an audit row."""


class AuditLog(db.Model):
    """
    Immutable audit trail entry.

    One row per successful mutating operation. ``metadata_json`` carries the
    structured context (remarks, approval id, cost, loosened dependents ...).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_ticket_ts", "ticket_id", "timestamp", "id"),
        db.Index("idx_audit_category", "category"),
        db.Index("idx_audit_actor", "actor_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, nullable=False)
    step_id = db.Column(db.Integer, nullable=True)

    actor_id = db.Column(db.Integer, nullable=True, comment="NULL for system entries")
    actor_name = db.Column(
        db.String(150), nullable=False, default="system",
        comment="Snapshot of the actor's name at write time",
    )

    action = db.Column(db.String(60), nullable=False)
    category = db.Column(db.String(30), nullable=False)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    description = db.Column(db.Text, nullable=False, default="")
    metadata_json = db.Column(db.Text, nullable=False, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def meta(self) -> dict:
        """Deserialise *metadata_json* to a Python dict."""
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "step_id": self.step_id,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "action": self.action,
            "category": self.category,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "description": self.description,
            "metadata": self.meta,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on ticket {self.ticket_id}>"


@event.listens_for(AuditLog, "before_update")
def _block_audit_update(mapper, connection, target):
    raise AuditImmutableError(f"AuditLog {target.id} is append-only and cannot be updated")


@event.listens_for(AuditLog, "before_delete")
def _block_audit_delete(mapper, connection, target):
    raise AuditImmutableError(f"AuditLog {target.id} is append-only and cannot be deleted")


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    ticket_id: int,
    action: str,
    category: str,
    actor_id: int | None = None,
    actor_name: str = "system",
    step_id: int | None = None,
    old_value: str | None = None,
    new_value: str | None = None,
    description: str = "",
    metadata: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control: the row commits or rolls back together with the
    mutation it describes.

    Returns the (flushed) AuditLog instance.
    """
    if category not in AUDIT_CATEGORIES:
        raise ValueError(f"Unknown audit category: {category}")

    log = AuditLog(
        ticket_id=ticket_id,
        step_id=step_id,
        actor_id=actor_id,
        actor_name=actor_name or "system",
        action=action,
        category=category,
        old_value=None if old_value is None else str(old_value),
        new_value=None if new_value is None else str(new_value),
        description=description or "",
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
