"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only own the shape.

Layer rule: no imports from api/, cache/, crm/, or stats/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

USER_ENABLED = 1
USER_DISABLED = 0


@dataclass
class User:
    """An identity record in the Credential Store.

    status is 1 (enabled) or 0 (disabled). password is the bcrypt hash, never
    the plaintext. id is None before the record is written to the database.
    """

    user_name: str
    password: str
    nick_name: str = ""
    id: int | None = None
    phone: str | None = None
    email: str | None = None
    gender: str | None = None  # "male", "female", "unknown"
    position: str | None = None
    avatar: str | None = None
    status: int = USER_ENABLED
    department_id: int | None = None
    contract_start_date: datetime | None = None
    last_login_ip: str | None = None
    last_login_time: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_enabled(self) -> bool:
        return self.status == USER_ENABLED


@dataclass
class Role:
    role_code: str  # "super_admin", "admin", "employee", ...
    role_name: str
    # "permission" roles govern access; "position" roles are organizational titles.
    role_type: str = "permission"
    id: int | None = None


@dataclass
class Permission:
    code: str  # "customer:list"
    name: str = ""
    id: int | None = None


@dataclass
class UserGraph:
    """A user together with the role -> permission graph reachable from it.

    roles holds role codes; permissions is the union of permission codes over
    every held role, in first-seen order.
    """

    user: User
    department_name: str = ""
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SessionUser:
    """The compact session projection attached to an authenticated request.

    This is what the Session Cache stores under user:{id} and what route
    handlers receive from the Authorization Gate. It is always re-derivable
    from the Credential Store.
    """

    id: int
    user_name: str
    nick_name: str
    roles: tuple[str, ...] = ()
    permissions: tuple[str, ...] = ()

    def to_cache(self) -> dict:
        return {
            "id": self.id,
            "nickName": self.nick_name,
            "roles": list(self.roles),
            "permissions": list(self.permissions),
            "userName": self.user_name,
        }

    @classmethod
    def from_cache(cls, data: dict) -> SessionUser:
        return cls(
            id=int(data["id"]),
            user_name=data.get("userName", ""),
            nick_name=data.get("nickName", ""),
            roles=tuple(data.get("roles") or ()),
            permissions=tuple(data.get("permissions") or ()),
        )

    @classmethod
    def from_graph(cls, graph: UserGraph) -> SessionUser:
        return cls(
            id=graph.user.id,
            user_name=graph.user.user_name,
            nick_name=graph.user.nick_name,
            roles=tuple(graph.roles),
            permissions=tuple(graph.permissions),
        )


@dataclass
class UserSummary:
    """Listing row for statistics and team views -- no permission graph."""

    id: int
    user_name: str
    nick_name: str
    department_name: str = ""
    role_names: list[str] = field(default_factory=list)


@dataclass
class LoginRecord:
    """Append-only audit entry written on every successful login."""

    user_id: int
    user_name: str
    login_ip: str
    login_result: str = "success"
    user_agent: str | None = None
    login_time: datetime | None = None
    nick_name: str = ""
    avatar: str | None = None
    id: int | None = None
