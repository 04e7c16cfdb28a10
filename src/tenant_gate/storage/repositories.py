"""Repositories for tenants, users, memberships and API keys.

These repositories serve the access-control layer itself (tenant lookup,
membership lookup, principal lookup). Tenant-owned resources are reached
only through ``ScopedDataAccess``.
"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tenant_gate.auth.roles import Role, default_permissions
from tenant_gate.storage.orm import APIKey, Membership, Tenant, TenantPlan, User

logger = structlog.get_logger()

SLUG_PATTERN = re.compile(r"^[a-z][a-z0-9-]*[a-z0-9]$")
SLUG_MIN_LENGTH = 2
SLUG_MAX_LENGTH = 50

DEFAULT_TENANT_SETTINGS: dict[str, Any] = {
    "allow_public_signup": False,
    "require_email_verification": True,
    "default_user_role": Role.VIEWER.value,
    "enable_analytics": True,
    "enable_public_docs": True,
}


def is_valid_tenant_slug(slug: str) -> bool:
    """Lowercase letters, digits and hyphens; starts with a letter."""
    return (
        SLUG_MIN_LENGTH <= len(slug) <= SLUG_MAX_LENGTH
        and SLUG_PATTERN.match(slug) is not None
    )


def slugify(name: str) -> str:
    """Derive a slug candidate from a display name."""
    slug = re.sub(r"[^a-z0-9\s-]", "", name.lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    slug = slug[:SLUG_MAX_LENGTH].rstrip("-")
    if not slug or not slug[0].isalpha():
        slug = f"t-{slug}" if slug else "tenant"
    return slug


def normalize_email(email: str) -> str:
    return email.strip().lower()


class TenantRepository:
    """Tenant lookup and lifecycle.

    Lookups return active tenants only; deactivated tenants are invisible
    to request handling.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_active_by_id(self, tenant_id: uuid.UUID) -> Tenant | None:
        stmt = select(Tenant).where(Tenant.id == tenant_id, Tenant.is_active.is_(True))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_by_subdomain(self, subdomain: str) -> Tenant | None:
        stmt = select(Tenant).where(
            Tenant.subdomain == subdomain, Tenant.is_active.is_(True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_by_slug(self, slug: str) -> Tenant | None:
        stmt = select(Tenant).where(Tenant.slug == slug, Tenant.is_active.is_(True))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def slug_taken(
        self, slug: str, *, exclude_id: uuid.UUID | None = None
    ) -> bool:
        """True if any tenant (active or not) uses ``slug`` or subdomain ``slug``."""
        stmt = (
            select(func.count())
            .select_from(Tenant)
            .where((Tenant.slug == slug) | (Tenant.subdomain == slug))
        )
        if exclude_id is not None:
            stmt = stmt.where(Tenant.id != exclude_id)
        result = await self._session.execute(stmt)
        return result.scalar_one() > 0

    async def generate_unique_slug(self, name: str) -> str:
        """Slug for ``name``, suffixed with -1, -2, ... until unused."""
        base = slugify(name)
        slug = base
        counter = 1
        while await self.slug_taken(slug):
            suffix = f"-{counter}"
            slug = f"{base[: SLUG_MAX_LENGTH - len(suffix)]}{suffix}"
            counter += 1
        return slug

    async def create(
        self,
        *,
        name: str,
        owner: User,
        subdomain: str | None = None,
        plan: TenantPlan = TenantPlan.FREE,
        settings: dict[str, Any] | None = None,
    ) -> Tenant:
        """Create a tenant with ``owner`` as its first (owner) member.

        The tenant never exists without an active owner.

        Raises:
            ValueError: invalid or already taken subdomain.
        """
        slug = await self.generate_unique_slug(name)
        subdomain = subdomain or slug
        if not is_valid_tenant_slug(subdomain):
            msg = f"Invalid subdomain: {subdomain!r}"
            raise ValueError(msg)
        if subdomain != slug and await self.slug_taken(subdomain):
            msg = f"Subdomain already taken: {subdomain!r}"
            raise ValueError(msg)

        tenant = Tenant(
            name=name,
            slug=slug,
            subdomain=subdomain,
            plan=plan,
            is_active=True,
            settings={**DEFAULT_TENANT_SETTINGS, **(settings or {})},
        )
        self._session.add(tenant)
        await self._session.flush()

        membership = Membership(
            user_id=owner.id,
            tenant_id=tenant.id,
            role=Role.OWNER,
            permissions=default_permissions(Role.OWNER).to_mapping(),
            is_active=True,
        )
        self._session.add(membership)
        if owner.current_tenant_id is None:
            owner.current_tenant_id = tenant.id
        await self._session.flush()

        logger.info(
            "tenant_created",
            tenant_id=str(tenant.id),
            slug=slug,
            owner_id=str(owner.id),
        )
        return tenant

    async def update(
        self,
        tenant: Tenant,
        *,
        name: str | None = None,
        subdomain: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Tenant:
        """Rename a tenant, move its subdomain or merge ``settings`` keys.

        Raises:
            ValueError: invalid subdomain, or one used by another tenant.
        """
        if subdomain is not None and subdomain != tenant.subdomain:
            if not is_valid_tenant_slug(subdomain):
                msg = f"Invalid subdomain: {subdomain!r}"
                raise ValueError(msg)
            if await self.slug_taken(subdomain, exclude_id=tenant.id):
                msg = f"Subdomain already taken: {subdomain!r}"
                raise ValueError(msg)
            tenant.subdomain = subdomain
        if name is not None:
            tenant.name = name
        if settings:
            tenant.settings = {**(tenant.settings or {}), **settings}
        await self._session.flush()
        logger.info("tenant_updated", tenant_id=str(tenant.id))
        return tenant

    async def deactivate(self, tenant_id: uuid.UUID) -> bool:
        """Soft-delete a tenant. Returns False if it was not active."""
        stmt = (
            update(Tenant)
            .where(Tenant.id == tenant_id, Tenant.is_active.is_(True))
            .values(is_active=False)
        )
        result = await self._session.execute(stmt)
        deactivated = bool(result.rowcount)
        if deactivated:
            logger.warning("tenant_deactivated", tenant_id=str(tenant_id))
        return deactivated


class MembershipRepository:
    """Membership lookups and mutations for one database session.

    Mutations that could remove an owner must go through ``AccessGuard``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_active(
        self, user_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> Membership | None:
        stmt = select(Membership).where(
            Membership.user_id == user_id,
            Membership.tenant_id == tenant_id,
            Membership.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, user_id: uuid.UUID, tenant_id: uuid.UUID) -> Membership | None:
        """Membership row regardless of its active flag."""
        return await self._session.get(Membership, (user_id, tenant_id))

    async def list_active_for_user(self, user_id: uuid.UUID) -> list[Membership]:
        """Principal lookup: active memberships of a user in active tenants."""
        stmt = (
            select(Membership)
            .join(Tenant, Membership.tenant_id == Tenant.id)
            .where(
                Membership.user_id == user_id,
                Membership.is_active.is_(True),
                Tenant.is_active.is_(True),
            )
            .options(selectinload(Membership.tenant))
            .order_by(Membership.joined_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def lock_active_owners(self, tenant_id: uuid.UUID) -> list[uuid.UUID]:
        """User ids of the tenant's active owners, rows locked for update.

        The row lock serializes concurrent owner demotions on PostgreSQL;
        dialects without FOR UPDATE ignore it.
        """
        stmt = (
            select(Membership.user_id)
            .where(
                Membership.tenant_id == tenant_id,
                Membership.role == Role.OWNER,
                Membership.is_active.is_(True),
            )
            .with_for_update()
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def sole_owner_tenant_ids(self, user_id: uuid.UUID) -> list[uuid.UUID]:
        """Active tenants where ``user_id`` is the only active owner."""
        owned = (
            select(Membership.tenant_id)
            .join(Tenant, Membership.tenant_id == Tenant.id)
            .where(
                Membership.user_id == user_id,
                Membership.role == Role.OWNER,
                Membership.is_active.is_(True),
                Tenant.is_active.is_(True),
            )
        )
        stmt = (
            select(Membership.tenant_id)
            .where(
                Membership.tenant_id.in_(owned),
                Membership.role == Role.OWNER,
                Membership.is_active.is_(True),
            )
            .group_by(Membership.tenant_id)
            .having(func.count() == 1)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add(
        self,
        *,
        user_id: uuid.UUID,
        tenant_id: uuid.UUID,
        role: Role = Role.VIEWER,
    ) -> Membership:
        """Add a member, reactivating a previously removed membership row."""
        membership = await self.get(user_id, tenant_id)
        permissions = default_permissions(role).to_mapping()
        if membership is None:
            membership = Membership(
                user_id=user_id,
                tenant_id=tenant_id,
                role=role,
                permissions=permissions,
                is_active=True,
            )
            self._session.add(membership)
        elif membership.is_active:
            msg = "User is already a member of this tenant"
            raise ValueError(msg)
        else:
            membership.role = role
            membership.permissions = permissions
            membership.is_active = True
            membership.joined_at = datetime.now(UTC)
        await self._session.flush()
        return membership

    async def set_role(self, membership: Membership, role: Role) -> Membership:
        """Persist a role change, resetting permissions to the role floor."""
        membership.role = role
        membership.permissions = default_permissions(role).to_mapping()
        await self._session.flush()
        return membership

    async def deactivate(self, membership: Membership) -> Membership:
        membership.is_active = False
        await self._session.flush()
        return membership


class UserRepository:
    """User registration and principal lookup."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        email: str,
        name: str | None = None,
        password_hash: str | None = None,
    ) -> User:
        user = User(email=normalize_email(email), name=name, password_hash=password_hash)
        self._session.add(user)
        await self._session.flush()
        return user

    async def get_by_id(self, user_id: uuid.UUID) -> User | None:
        return await self._session.get(User, user_id)

    async def get_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup."""
        stmt = select(User).where(func.lower(User.email) == normalize_email(email))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_current_tenant(self, user: User, tenant_id: uuid.UUID | None) -> User:
        user.current_tenant_id = tenant_id
        await self._session.flush()
        return user

    async def delete(self, user: User) -> None:
        """Hard-delete a user.

        Callers must check ``AccessGuard.authorize_user_deletion`` first;
        a user who is the sole owner of a tenant cannot be deleted.
        """
        await self._session.delete(user)
        await self._session.flush()
        logger.warning("user_deleted", user_id=str(user.id))


class APIKeyRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        user_id: uuid.UUID,
        key_hash: str,
        key_prefix: str,
        label: str = "default",
        expires_at: datetime | None = None,
    ) -> APIKey:
        api_key = APIKey(
            user_id=user_id,
            key_hash=key_hash,
            key_prefix=key_prefix,
            label=label,
            expires_at=expires_at,
        )
        self._session.add(api_key)
        await self._session.flush()
        return api_key

    async def get_active_by_hash(self, key_hash: str) -> APIKey | None:
        """Active key with its user loaded, or None."""
        stmt = (
            select(APIKey)
            .where(APIKey.key_hash == key_hash, APIKey.is_active.is_(True))
            .options(selectinload(APIKey.user))
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def touch(self, api_key: APIKey, *, now: datetime | None = None) -> None:
        api_key.last_used_at = now or datetime.now(UTC)
        await self._session.flush()

    async def revoke(self, key_prefix: str) -> bool:
        stmt = (
            update(APIKey)
            .where(APIKey.key_prefix == key_prefix, APIKey.is_active.is_(True))
            .values(is_active=False)
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount)
