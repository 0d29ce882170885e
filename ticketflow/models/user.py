"""
Ticketflow — directory user model.

Users are owned by the user directory; the engine only reads role and
department facts from them (see ``ticketflow.integrations.user_directory``).

Roles:
    EMPLOYEE  requester
    DO        department officer / manager
    EO        executive officer, global overseer
    VENDOR    external contractor
    FINANCE   finance officer deciding approvals
"""

from datetime import datetime, timezone

from ticketflow.models import db

USER_ROLES = {"EMPLOYEE", "DO", "EO", "VENDOR", "FINANCE"}


class User(db.Model):
    __tablename__ = "users"
    __table_args__ = (
        db.CheckConstraint(
            "role IN ('EMPLOYEE', 'DO', 'EO', 'VENDOR', 'FINANCE')",
            name="ck_users_role",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    role = db.Column(db.String(20), nullable=False, default="EMPLOYEE")
    department = db.Column(db.String(100), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "department": self.department,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.name} ({self.role})>"
