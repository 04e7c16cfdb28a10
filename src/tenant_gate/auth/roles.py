"""Tenant roles, permissions and the role → permission floor table."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Any

import structlog

logger = structlog.get_logger()


class Role(StrEnum):
    """Membership role, totally ordered: owner > admin > editor > viewer.

    Comparison operators use the rank, never the string value, so
    ``Role.OWNER > Role.ADMIN`` holds even though "owner" < "admin"
    alphabetically.
    """

    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def at_least(self, other: Role) -> bool:
        return self.rank >= other.rank

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Role):
            return NotImplemented
        return self.rank >= other.rank


_ROLE_RANK: dict[Role, int] = {
    Role.VIEWER: 0,
    Role.EDITOR: 1,
    Role.ADMIN: 2,
    Role.OWNER: 3,
}


class Permission(StrEnum):
    MANAGE_USERS = "manage_users"
    MANAGE_SETTINGS = "manage_settings"
    MANAGE_PROJECTS = "manage_projects"
    MANAGE_BILLING = "manage_billing"
    DELETE_TENANT = "delete_tenant"


# Default permissions granted when a membership is created or its role changes.
ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.OWNER: frozenset(Permission),
    Role.ADMIN: frozenset({Permission.MANAGE_USERS, Permission.MANAGE_PROJECTS}),
    Role.EDITOR: frozenset(),
    Role.VIEWER: frozenset(),
}


class PermissionSet(frozenset[Permission]):
    """Explicit permission flags of a membership."""

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> PermissionSet:
        """Parse a stored ``{"manage_users": true, ...}`` map.

        Only flags that are literally ``True`` grant a permission. Unknown
        keys are dropped with a warning.
        """
        granted: list[Permission] = []
        for key, value in (raw or {}).items():
            try:
                permission = Permission(key)
            except ValueError:
                logger.warning("unknown_permission_flag", flag=key)
                continue
            if value is True:
                granted.append(permission)
        return cls(granted)

    def to_mapping(self) -> dict[str, bool]:
        return {p.value: p in self for p in Permission}


def default_permissions(role: Role) -> PermissionSet:
    """Permission floor for a role."""
    return PermissionSet(ROLE_PERMISSIONS[role])


def effective_permissions(
    role: Role, stored: Mapping[str, Any] | Iterable[Permission] | None
) -> PermissionSet:
    """Permissions actually held by a member.

    Owners hold every permission regardless of the stored map, which is
    allowed to be stale for them. Other roles hold exactly the stored flags.
    """
    if role is Role.OWNER:
        return PermissionSet(Permission)
    if stored is None or isinstance(stored, Mapping):
        return PermissionSet.from_mapping(stored)
    return PermissionSet(stored)
