"""Read side of the audit trail. Writes go through ``models.audit.write_audit``."""

from sqlalchemy import select

from ticketflow.core.exceptions import ValidationError
from ticketflow.models import db
from ticketflow.models.audit import AUDIT_CATEGORIES, AuditLog


def list_ticket_audit(ticket_id, category=None, step_id=None) -> list[dict]:
    """Entries for one ticket in recording order (timestamp, then id)."""
    stmt = select(AuditLog).where(AuditLog.ticket_id == ticket_id)
    if category:
        if category not in AUDIT_CATEGORIES:
            raise ValidationError(f"Unknown audit category: {category}", {"category": category})
        stmt = stmt.where(AuditLog.category == category)
    if step_id is not None:
        stmt = stmt.where(AuditLog.step_id == step_id)
    stmt = stmt.order_by(AuditLog.timestamp, AuditLog.id)
    return [row.to_dict() for row in db.session.execute(stmt).scalars().all()]
