"""
auth/models.py -- Domain dataclasses for identity and RBAC entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; these only carry shape.

Layer rule: no imports from api/, shop/, support/, content/, or realtime/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """A customer or staff account.

    roles holds the upper-cased codes of the user's ACTIVE roles as loaded by
    the store. It is a convenience snapshot for display and for JWT issuance;
    permission checks always go back to the DB (UserStore.has_permission).

    support_priority_level (0..3) is raised by support-plan purchases and
    drives ticket SLA rules and chat session priority.
    """

    username: str
    email: str
    id: int | None = None
    full_name: str | None = None
    phone: str | None = None
    hashed_password: str | None = None
    support_priority_level: int = 0
    roles: list[str] = field(default_factory=list)
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True

    @property
    def display_name(self) -> str:
        return self.full_name or self.username


@dataclass
class Role:
    code: str
    name: str
    id: int | None = None
    is_active: bool = True
    is_system: bool = False
    created_at: str | None = None


@dataclass
class Module:
    code: str
    name: str
    id: int | None = None
    description: str | None = None
    created_at: str | None = None


@dataclass
class Permission:
    code: str
    name: str
    id: int | None = None
    description: str | None = None
    created_at: str | None = None


@dataclass
class RolePermission:
    """One cell of the role x module x permission grant matrix."""

    role_id: int
    module_id: int
    permission_id: int
    is_active: bool = True
    module_code: str = ""
    permission_code: str = ""
