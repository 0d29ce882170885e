"""User directory.

The engine never manages identity. It asks the directory for
``{id, name, role, department}`` and makes every permission decision from
those facts alone.

    - SqlUserDirectory — reads the ``users`` table (default backend)

Usage:
    from ticketflow.integrations.user_directory import get_user_directory

    user = get_user_directory().require_user(actor_id)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from flask import Flask, current_app
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from ticketflow.core.exceptions import DependencyUnavailable, NotFoundError
from ticketflow.models import db
from ticketflow.models.user import User

logger = logging.getLogger(__name__)

_EXTENSION_KEY = "ticketflow.user_directory"


@dataclass(frozen=True)
class DirectoryUser:
    id: int
    name: str
    role: str
    department: str | None = None

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "role": self.role, "department": self.department}


class UserDirectory(ABC):
    """Read-only lookup of users by id or role."""

    @abstractmethod
    def get_user(self, user_id: int) -> DirectoryUser | None:
        """Return the user, or None when the id is unknown or inactive."""

    @abstractmethod
    def list_by_role(self, role: str) -> list[DirectoryUser]:
        """Return active users holding ``role``, ordered by name."""

    def require_user(self, user_id) -> DirectoryUser:
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            raise NotFoundError(resource="User", resource_id=user_id) from None
        user = self.get_user(uid)
        if user is None:
            raise NotFoundError(resource="User", resource_id=uid)
        return user


class SqlUserDirectory(UserDirectory):
    """Directory backed by the local ``users`` table."""

    @staticmethod
    def _to_directory_user(row: User) -> DirectoryUser:
        return DirectoryUser(id=row.id, name=row.name, role=row.role, department=row.department)

    def get_user(self, user_id: int) -> DirectoryUser | None:
        try:
            row = db.session.get(User, user_id)
        except OperationalError as exc:
            logger.error("User directory lookup failed user_id=%s: %s", user_id, exc)
            raise DependencyUnavailable("user_directory") from exc
        if row is None or not row.is_active:
            return None
        return self._to_directory_user(row)

    def list_by_role(self, role: str) -> list[DirectoryUser]:
        try:
            rows = db.session.execute(
                select(User).where(User.role == role, User.is_active.is_(True)).order_by(User.name)
            ).scalars().all()
        except OperationalError as exc:
            logger.error("User directory listing failed role=%s: %s", role, exc)
            raise DependencyUnavailable("user_directory") from exc
        return [self._to_directory_user(r) for r in rows]


def init_user_directory(app: Flask, directory: UserDirectory | None = None) -> UserDirectory:
    directory = directory or SqlUserDirectory()
    app.extensions[_EXTENSION_KEY] = directory
    return directory


def get_user_directory() -> UserDirectory:
    return current_app.extensions[_EXTENSION_KEY]
