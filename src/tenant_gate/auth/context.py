"""Authenticated principal and per-request tenant context."""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from tenant_gate.auth.roles import Permission, PermissionSet, Role
from tenant_gate.auth.tenant_resolver import ResolutionMethod


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, produced by the authentication stage.

    ``current_tenant_id`` is the caller's "current tenant" pointer, used
    as the session signal during tenant resolution.
    """

    user_id: uuid.UUID
    email: str
    current_tenant_id: uuid.UUID | None = None
    key_prefix: str | None = None


@dataclass(frozen=True)
class AuthContext:
    """Authorized tenant context, created fresh for every request.

    Never persisted; discarded when the request completes.
    """

    user_id: uuid.UUID
    tenant_id: uuid.UUID
    role: Role
    permissions: PermissionSet
    method: ResolutionMethod
    request_id: str

    def has_permission(self, permission: Permission) -> bool:
        return self.role is Role.OWNER or permission in self.permissions
