"""CLI for users, tenants, memberships and API keys.

Usage::

    uv run python -m scripts.manage_tenant <command> [options]

Commands:
    create-user         Register a user
    delete-user         Delete a user (refused for sole tenant owners)
    create-tenant       Create a tenant; the given user becomes its owner
    deactivate-tenant   Deactivate a tenant (soft delete)
    list-tenants        List all tenants
    add-member          Add a user to a tenant
    set-role            Change a member's role (last owner is protected)
    remove-member       Remove a member (last owner is protected)
    create-key          Generate an API key for a user
    revoke-key          Revoke an API key by prefix
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime, timedelta
from typing import Any, NoReturn

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_gate.auth.access_guard import AccessGuard
from tenant_gate.auth.keys import generate_api_key
from tenant_gate.auth.roles import Role
from tenant_gate.errors import LastOwnerProtection
from tenant_gate.storage.orm import Membership, Tenant, TenantPlan, User
from tenant_gate.storage.repositories import (
    APIKeyRepository,
    MembershipRepository,
    TenantRepository,
    UserRepository,
)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the application database."""
    from tenant_gate.storage.database import async_session

    return async_session


def _fail(message: str) -> NoReturn:
    print(message, file=sys.stderr)
    sys.exit(1)


async def _require_user(session: AsyncSession, email: str) -> User:
    user = await UserRepository(session).get_by_email(email)
    if user is None:
        _fail(f"User not found: {email}")
    return user


async def _require_tenant(session: AsyncSession, slug: str) -> Tenant:
    tenant = await TenantRepository(session).get_active_by_slug(slug)
    if tenant is None:
        _fail(f"Active tenant not found: {slug}")
    return tenant


async def create_user(args: argparse.Namespace) -> None:
    """Register a user."""
    async with get_session_factory()() as session:
        repo = UserRepository(session)
        if await repo.get_by_email(args.email) is not None:
            _fail(f"User already exists: {args.email}")
        user = await repo.create(email=args.email, name=args.name)
        await session.commit()
        print(f"User created: {user.email} (id: {user.id})")


async def delete_user(args: argparse.Namespace) -> None:
    """Delete a user unless they are the only owner of a tenant."""
    async with get_session_factory()() as session:
        user = await _require_user(session, args.email)
        guard = AccessGuard(MembershipRepository(session))
        try:
            await guard.authorize_user_deletion(user.id)
        except LastOwnerProtection as exc:
            _fail(exc.message)
        await UserRepository(session).delete(user)
        await session.commit()
        print(f"User deleted: {args.email}")


async def create_tenant(args: argparse.Namespace) -> None:
    """Create a tenant owned by an existing user."""
    async with get_session_factory()() as session:
        owner = await _require_user(session, args.owner)
        try:
            tenant = await TenantRepository(session).create(
                name=args.name,
                owner=owner,
                subdomain=args.subdomain,
                plan=TenantPlan(args.plan),
            )
        except ValueError as exc:
            _fail(str(exc))
        await session.commit()
        print(f"Tenant created: {tenant.name} (slug: {tenant.slug}, id: {tenant.id})")
        print(f"   Owner:     {owner.email}")
        print(f"   Subdomain: {tenant.subdomain}")


async def deactivate_tenant(args: argparse.Namespace) -> None:
    """Deactivate a tenant; its members lose access immediately."""
    async with get_session_factory()() as session:
        tenant = await _require_tenant(session, args.slug)
        await TenantRepository(session).deactivate(tenant.id)
        await session.commit()
        print(f"Tenant deactivated: {args.slug}")


async def list_tenants(_args: argparse.Namespace) -> None:
    """List all tenants with active member counts."""
    async with get_session_factory()() as session:
        stmt = (
            select(
                Tenant.slug,
                Tenant.name,
                Tenant.plan,
                Tenant.is_active,
                func.count(Membership.user_id).label("member_count"),
            )
            .outerjoin(
                Membership,
                (Tenant.id == Membership.tenant_id) & Membership.is_active.is_(True),
            )
            .group_by(Tenant.id)
            .order_by(Tenant.slug)
        )
        rows = (await session.execute(stmt)).all()

    if not rows:
        print("No tenants found.")
        return

    print("Tenants:")
    for i, row in enumerate(rows, 1):
        status = "active" if row.is_active else "inactive"
        members = row.member_count
        print(
            f"  {i}. {row.slug} - {row.name} ({row.plan}, {status}, "
            f"{members} member{'s' if members != 1 else ''})"
        )


async def add_member(args: argparse.Namespace) -> None:
    """Add a user to a tenant with the given role."""
    async with get_session_factory()() as session:
        tenant = await _require_tenant(session, args.tenant)
        user = await _require_user(session, args.email)
        try:
            await MembershipRepository(session).add(
                user_id=user.id, tenant_id=tenant.id, role=Role(args.role)
            )
        except ValueError as exc:
            _fail(str(exc))
        await session.commit()
        print(f"Member added: {user.email} -> {tenant.slug} ({args.role})")


async def set_role(args: argparse.Namespace) -> None:
    """Change a member's role, refusing to demote the last owner."""
    new_role = Role(args.role)
    async with get_session_factory()() as session:
        tenant = await _require_tenant(session, args.tenant)
        user = await _require_user(session, args.email)
        memberships = MembershipRepository(session)
        membership = await memberships.get_active(user.id, tenant.id)
        if membership is None:
            _fail(f"{args.email} is not a member of {args.tenant}")
        try:
            await AccessGuard(memberships).authorize_role_change(
                tenant.id, user.id, new_role
            )
        except LastOwnerProtection as exc:
            _fail(exc.message)
        await memberships.set_role(membership, new_role)
        await session.commit()
        print(f"Role updated: {user.email} in {tenant.slug} -> {new_role}")


async def remove_member(args: argparse.Namespace) -> None:
    """Remove a member from a tenant, refusing to remove the last owner."""
    async with get_session_factory()() as session:
        tenant = await _require_tenant(session, args.tenant)
        user = await _require_user(session, args.email)
        memberships = MembershipRepository(session)
        membership = await memberships.get_active(user.id, tenant.id)
        if membership is None:
            _fail(f"{args.email} is not a member of {args.tenant}")
        try:
            await AccessGuard(memberships).authorize_role_change(tenant.id, user.id, None)
        except LastOwnerProtection as exc:
            _fail(exc.message)
        await memberships.deactivate(membership)
        await session.commit()
        print(f"Member removed: {user.email} from {tenant.slug}")


async def create_key(args: argparse.Namespace) -> None:
    """Generate an API key for a user."""
    async with get_session_factory()() as session:
        user = await _require_user(session, args.email)
        full_key, key_hash, key_prefix = generate_api_key(args.env)
        expires_at = (
            datetime.now(UTC) + timedelta(days=args.expires_days)
            if args.expires_days
            else None
        )
        await APIKeyRepository(session).create(
            user_id=user.id,
            key_hash=key_hash,
            key_prefix=key_prefix,
            label=args.label,
            expires_at=expires_at,
        )
        await session.commit()

    print(f'API key created for "{user.email}":')
    print(f"   Key:     {full_key}")
    print(f"   Prefix:  {key_prefix}")
    print(f"   Label:   {args.label}")
    if expires_at is not None:
        print(f"   Expires: {expires_at.isoformat(timespec='seconds')}")
    print()
    print("Save this key now -- it cannot be retrieved later!")


async def revoke_key(args: argparse.Namespace) -> None:
    """Revoke an API key by its prefix."""
    async with get_session_factory()() as session:
        revoked = await APIKeyRepository(session).revoke(args.prefix)
        if not revoked:
            _fail(f"Active key not found: {args.prefix}")
        await session.commit()
        print(f"Key revoked: {args.prefix}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tenant management CLI")
    sub = parser.add_subparsers(dest="command", required=True)
    roles = [str(r) for r in Role]

    p = sub.add_parser("create-user", help="Register a user")
    p.add_argument("--email", required=True)
    p.add_argument("--name", default=None)

    p = sub.add_parser("delete-user", help="Delete a user")
    p.add_argument("--email", required=True)

    p = sub.add_parser("create-tenant", help="Create a tenant")
    p.add_argument("--name", required=True, help="Tenant display name")
    p.add_argument("--owner", required=True, help="Owner e-mail")
    p.add_argument("--subdomain", default=None, help="Defaults to the slug")
    p.add_argument("--plan", default="free", choices=[str(p) for p in TenantPlan])

    p = sub.add_parser("deactivate-tenant", help="Deactivate a tenant")
    p.add_argument("--slug", required=True)

    sub.add_parser("list-tenants", help="List all tenants")

    p = sub.add_parser("add-member", help="Add a user to a tenant")
    p.add_argument("--tenant", required=True, help="Tenant slug")
    p.add_argument("--email", required=True)
    p.add_argument("--role", default="viewer", choices=roles)

    p = sub.add_parser("set-role", help="Change a member's role")
    p.add_argument("--tenant", required=True, help="Tenant slug")
    p.add_argument("--email", required=True)
    p.add_argument("--role", required=True, choices=roles)

    p = sub.add_parser("remove-member", help="Remove a member from a tenant")
    p.add_argument("--tenant", required=True, help="Tenant slug")
    p.add_argument("--email", required=True)

    p = sub.add_parser("create-key", help="Generate API key for a user")
    p.add_argument("--email", required=True)
    p.add_argument("--label", default="default", help="Key label")
    p.add_argument("--env", default="live", choices=["live", "test"])
    p.add_argument("--expires-days", type=int, default=None)

    p = sub.add_parser("revoke-key", help="Revoke an API key")
    p.add_argument("--prefix", required=True, help="Key prefix to revoke")
    return parser


COMMANDS: dict[str, Callable[[argparse.Namespace], Coroutine[Any, Any, None]]] = {
    "create-user": create_user,
    "delete-user": delete_user,
    "create-tenant": create_tenant,
    "deactivate-tenant": deactivate_tenant,
    "list-tenants": list_tenants,
    "add-member": add_member,
    "set-role": set_role,
    "remove-member": remove_member,
    "create-key": create_key,
    "revoke-key": revoke_key,
}


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and dispatch to command handler."""
    args = build_parser().parse_args(argv)
    asyncio.run(COMMANDS[args.command](args))


if __name__ == "__main__":
    main()
