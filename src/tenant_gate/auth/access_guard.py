"""Tenant membership and permission checks.

Every check fails closed: a missing membership row is a denial, never a
default. The only mutations exposed here are the ones that can remove an
owner (role change, removal), guarded by last-owner protection.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Protocol

import structlog

from tenant_gate.auth.roles import Permission, Role, effective_permissions
from tenant_gate.errors import (
    InsufficientPermission,
    LastOwnerProtection,
    ResourceNotFound,
    UnauthorizedTenantAccess,
)

if TYPE_CHECKING:
    from tenant_gate.storage.orm import Membership

logger = structlog.get_logger()


class MembershipStore(Protocol):
    """Membership persistence used by the guard (``MembershipRepository``)."""

    async def get_active(
        self, user_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> Membership | None: ...

    async def lock_active_owners(self, tenant_id: uuid.UUID) -> list[uuid.UUID]: ...

    async def sole_owner_tenant_ids(self, user_id: uuid.UUID) -> list[uuid.UUID]: ...

    async def set_role(self, membership: Membership, role: Role) -> Membership: ...

    async def deactivate(self, membership: Membership) -> Membership: ...


class AccessGuard:
    """Membership-based authorization for one request's session."""

    def __init__(self, memberships: MembershipStore) -> None:
        self._memberships = memberships

    async def authorize(self, user_id: uuid.UUID, tenant_id: uuid.UUID) -> Membership:
        """Return the caller's active membership in ``tenant_id``.

        Raises:
            UnauthorizedTenantAccess: no active membership row exists.
        """
        membership = await self._memberships.get_active(user_id, tenant_id)
        if membership is None:
            logger.warning(
                "security_event",
                kind="unauthorized_tenant_access",
                user_id=str(user_id),
                tenant_id=str(tenant_id),
            )
            raise UnauthorizedTenantAccess()
        return membership

    async def authorize_permission(
        self, user_id: uuid.UUID, tenant_id: uuid.UUID, permission: Permission
    ) -> bool:
        """True if the user is an active member holding ``permission``.

        Owners hold every permission regardless of the stored map.
        """
        membership = await self._memberships.get_active(user_id, tenant_id)
        if membership is None:
            return False
        return has_permission(membership, permission)

    @staticmethod
    def require_permission(membership: Membership, permission: Permission) -> None:
        if not has_permission(membership, permission):
            logger.warning(
                "security_event",
                kind="insufficient_permission",
                user_id=str(membership.user_id),
                tenant_id=str(membership.tenant_id),
                permission=str(permission),
            )
            raise InsufficientPermission(str(permission))

    async def authorize_role_change(
        self,
        tenant_id: uuid.UUID,
        target_user_id: uuid.UUID,
        new_role: Role | None,
    ) -> None:
        """Reject a change that would leave ``tenant_id`` without an owner.

        ``new_role=None`` means the target is being removed.

        Raises:
            LastOwnerProtection: the target is the tenant's only active owner
                and would stop being an owner.
        """
        if new_role is Role.OWNER:
            return
        owners = await self._memberships.lock_active_owners(tenant_id)
        if target_user_id in owners and len(owners) <= 1:
            logger.warning(
                "last_owner_protection",
                tenant_id=str(tenant_id),
                target_user_id=str(target_user_id),
                new_role=str(new_role) if new_role else None,
            )
            raise LastOwnerProtection()

    async def change_role(
        self, actor: Membership, target_user_id: uuid.UUID, new_role: Role
    ) -> Membership:
        """Change a member's role within the actor's tenant.

        Raises:
            InsufficientPermission: actor lacks manage_users, or touches the
                owner role without being an owner.
            ResourceNotFound: target is not an active member.
            LastOwnerProtection: would demote the only owner.
        """
        target = await self._authorize_member_management(actor, target_user_id, new_role)
        await self.authorize_role_change(actor.tenant_id, target_user_id, new_role)
        previous = target.role
        await self._memberships.set_role(target, new_role)
        logger.info(
            "member_role_changed",
            tenant_id=str(actor.tenant_id),
            actor_id=str(actor.user_id),
            target_user_id=str(target_user_id),
            previous_role=str(previous),
            new_role=str(new_role),
        )
        return target

    async def remove_member(
        self, actor: Membership, target_user_id: uuid.UUID
    ) -> Membership:
        """Soft-remove a member (``is_active = False``) from the actor's tenant."""
        target = await self._authorize_member_management(actor, target_user_id, None)
        await self.authorize_role_change(actor.tenant_id, target_user_id, None)
        await self._memberships.deactivate(target)
        logger.warning(
            "member_removed",
            tenant_id=str(actor.tenant_id),
            actor_id=str(actor.user_id),
            target_user_id=str(target_user_id),
        )
        return target

    async def authorize_user_deletion(self, user_id: uuid.UUID) -> None:
        """Reject deleting a user who is the sole owner of any active tenant."""
        sole_owned = await self._memberships.sole_owner_tenant_ids(user_id)
        if sole_owned:
            logger.warning(
                "last_owner_protection",
                user_id=str(user_id),
                tenant_count=len(sole_owned),
            )
            raise LastOwnerProtection(
                "Cannot delete a user who is the only owner of an organization. "
                "Transfer ownership first."
            )

    async def _authorize_member_management(
        self,
        actor: Membership,
        target_user_id: uuid.UUID,
        new_role: Role | None,
    ) -> Membership:
        self.require_permission(actor, Permission.MANAGE_USERS)
        target = await self._memberships.get_active(target_user_id, actor.tenant_id)
        if target is None:
            raise ResourceNotFound("Member not found")
        touches_owner = target.role is Role.OWNER or new_role is Role.OWNER
        if touches_owner and actor.role is not Role.OWNER:
            logger.warning(
                "security_event",
                kind="owner_role_change_denied",
                actor_id=str(actor.user_id),
                tenant_id=str(actor.tenant_id),
            )
            raise InsufficientPermission("owner role management")
        if new_role is not None and new_role > actor.role:
            raise InsufficientPermission(f"assign role {new_role}")
        return target


def has_permission(membership: Membership, permission: Permission) -> bool:
    return permission in effective_permissions(membership.role, membership.permissions)
