"""
Roles and the acting identity threaded through every core operation.

Identity itself comes from the external auth layer; the core only needs the
user id, the organization the user belongs to, and a role from the closed
``Role`` enumeration.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"
    TEAM_MEMBER = "team_member"
    CLIENT = "client"

    @classmethod
    def parse(cls, value: str | Role) -> Role:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}") from None


STAFF_ROLES = frozenset({Role.SUPER_ADMIN, Role.ADMIN, Role.MANAGER, Role.TEAM_MEMBER})
MANAGEMENT_ROLES = frozenset({Role.SUPER_ADMIN, Role.ADMIN, Role.MANAGER})


@dataclass(frozen=True)
class Actor:
    """The user performing an operation."""

    user_id: int
    organization_id: int | None
    role: Role

    @classmethod
    def from_user(cls, user) -> Actor:
        return cls(user_id=user.id, organization_id=user.organization_id, role=Role.parse(user.role))

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES
