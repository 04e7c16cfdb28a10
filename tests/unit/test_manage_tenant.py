"""Tests for the tenant management CLI."""

from __future__ import annotations

import argparse
from collections.abc import Generator
from unittest.mock import patch

import pytest
from scripts.manage_tenant import (
    COMMANDS,
    add_member,
    build_parser,
    create_key,
    create_tenant,
    create_user,
    deactivate_tenant,
    delete_user,
    list_tenants,
    remove_member,
    revoke_key,
    set_role,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_gate.auth.keys import hash_api_key
from tenant_gate.auth.roles import Role
from tenant_gate.storage.repositories import (
    APIKeyRepository,
    MembershipRepository,
    TenantRepository,
    UserRepository,
)


@pytest.fixture(autouse=True)
def _patch_session_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> Generator[None]:
    """Point the CLI at the in-memory database."""
    with patch(
        "scripts.manage_tenant.get_session_factory", return_value=session_factory
    ):
        yield


def _args(command: str, *argv: str) -> argparse.Namespace:
    return build_parser().parse_args([command, *argv])


class TestParser:
    def test_every_command_dispatched(self) -> None:
        parser = build_parser()
        subparsers = next(
            a for a in parser._actions if isinstance(a, argparse._SubParsersAction)
        )
        assert set(subparsers.choices) == set(COMMANDS)

    def test_defaults(self) -> None:
        args = _args("create-key", "--email", "a@b.test")
        assert args.label == "default"
        assert args.env == "live"
        assert args.expires_days is None

    def test_invalid_role_rejected(self) -> None:
        with pytest.raises(SystemExit):
            _args("set-role", "--tenant", "acme", "--email", "a@b.test", "--role", "god")


class TestUsersAndTenants:
    async def test_create_user_and_tenant(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await create_user(_args("create-user", "--email", "Ops@Example.com"))
        await create_tenant(
            _args("create-tenant", "--name", "Python Academy", "--owner", "ops@example.com")
        )

        out = capsys.readouterr().out
        assert "User created: ops@example.com" in out
        assert "Tenant created: Python Academy (slug: python-academy" in out

        async with session_factory() as session:
            tenant = await TenantRepository(session).get_active_by_slug("python-academy")
            user = await UserRepository(session).get_by_email("ops@example.com")
            assert tenant is not None
            assert user is not None
            membership = await MembershipRepository(session).get_active(
                user.id, tenant.id
            )
            assert membership is not None
            assert membership.role is Role.OWNER

    async def test_duplicate_user(
        self, seed, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            await create_user(_args("create-user", "--email", "alice@acme.test"))
        assert exc_info.value.code == 1
        assert "User already exists" in capsys.readouterr().err

    async def test_tenant_for_unknown_owner(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit):
            await create_tenant(
                _args("create-tenant", "--name", "X", "--owner", "ghost@nowhere.test")
            )
        assert "User not found" in capsys.readouterr().err

    async def test_subdomain_taken(
        self, seed, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit):
            await create_tenant(
                _args(
                    "create-tenant",
                    "--name",
                    "Other",
                    "--owner",
                    "alice@acme.test",
                    "--subdomain",
                    "globex",
                )
            )
        assert "already taken" in capsys.readouterr().err

    async def test_list_tenants(
        self, seed, capsys: pytest.CaptureFixture[str]
    ) -> None:
        await list_tenants(_args("list-tenants"))
        out = capsys.readouterr().out
        assert "1. acme - Acme (free, active, 3 members)" in out
        assert "2. globex - Globex (free, active, 1 member)" in out

    async def test_list_tenants_empty(self, capsys: pytest.CaptureFixture[str]) -> None:
        await list_tenants(_args("list-tenants"))
        assert "No tenants found." in capsys.readouterr().out

    async def test_deactivate_tenant(
        self,
        seed,
        session_factory: async_sessionmaker[AsyncSession],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await deactivate_tenant(_args("deactivate-tenant", "--slug", "globex"))
        assert "Tenant deactivated: globex" in capsys.readouterr().out
        async with session_factory() as session:
            assert await TenantRepository(session).get_active_by_slug("globex") is None

    async def test_delete_sole_owner_refused(
        self, seed, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit):
            await delete_user(_args("delete-user", "--email", "alice@acme.test"))
        assert "only owner" in capsys.readouterr().err

    async def test_delete_user(
        self,
        seed,
        session_factory: async_sessionmaker[AsyncSession],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await delete_user(_args("delete-user", "--email", "carol@acme.test"))
        assert "User deleted" in capsys.readouterr().out
        async with session_factory() as session:
            assert await UserRepository(session).get_by_email("carol@acme.test") is None


class TestMemberships:
    async def test_add_member(
        self,
        seed,
        session_factory: async_sessionmaker[AsyncSession],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await add_member(
            _args(
                "add-member", "--tenant", "acme", "--email", "dave@globex.test",
                "--role", "editor",
            )
        )
        assert "Member added: dave@globex.test -> acme (editor)" in capsys.readouterr().out
        async with session_factory() as session:
            membership = await MembershipRepository(session).get_active(
                seed.dave.id, seed.acme.id
            )
            assert membership is not None
            assert membership.role is Role.EDITOR

    async def test_add_existing_member(
        self, seed, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit):
            await add_member(
                _args("add-member", "--tenant", "acme", "--email", "bob@acme.test")
            )
        assert "already a member" in capsys.readouterr().err

    async def test_set_role(
        self,
        seed,
        session_factory: async_sessionmaker[AsyncSession],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await set_role(
            _args(
                "set-role", "--tenant", "acme", "--email", "carol@acme.test",
                "--role", "admin",
            )
        )
        assert "Role updated: carol@acme.test in acme -> admin" in capsys.readouterr().out
        async with session_factory() as session:
            membership = await MembershipRepository(session).get_active(
                seed.carol.id, seed.acme.id
            )
            assert membership is not None
            assert membership.role is Role.ADMIN

    async def test_set_role_last_owner(
        self,
        seed,
        session_factory: async_sessionmaker[AsyncSession],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        with pytest.raises(SystemExit):
            await set_role(
                _args(
                    "set-role", "--tenant", "acme", "--email", "alice@acme.test",
                    "--role", "viewer",
                )
            )
        assert "Cannot remove the only owner" in capsys.readouterr().err
        async with session_factory() as session:
            membership = await MembershipRepository(session).get_active(
                seed.alice.id, seed.acme.id
            )
            assert membership is not None
            assert membership.role is Role.OWNER

    async def test_set_role_non_member(
        self, seed, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit):
            await set_role(
                _args(
                    "set-role", "--tenant", "acme", "--email", "dave@globex.test",
                    "--role", "viewer",
                )
            )
        assert "is not a member of acme" in capsys.readouterr().err

    async def test_remove_member(
        self, seed, capsys: pytest.CaptureFixture[str]
    ) -> None:
        await remove_member(
            _args("remove-member", "--tenant", "acme", "--email", "carol@acme.test")
        )
        assert "Member removed" in capsys.readouterr().out

    async def test_remove_last_owner(
        self, seed, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit):
            await remove_member(
                _args("remove-member", "--tenant", "globex", "--email", "dave@globex.test")
            )
        assert "only owner" in capsys.readouterr().err


class TestKeys:
    async def test_create_key(
        self,
        seed,
        session_factory: async_sessionmaker[AsyncSession],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await create_key(
            _args(
                "create-key", "--email", "bob@acme.test", "--label", "ci",
                "--env", "test", "--expires-days", "30",
            )
        )
        out = capsys.readouterr().out
        key_line = next(line for line in out.splitlines() if "Key:" in line)
        full_key = key_line.split()[-1]
        assert full_key.startswith("tg_test_")
        assert "Label:   ci" in out
        assert "Expires:" in out

        async with session_factory() as session:
            api_key = await APIKeyRepository(session).get_active_by_hash(
                hash_api_key(full_key)
            )
            assert api_key is not None
            assert api_key.user_id == seed.bob.id
            assert api_key.expires_at is not None

    async def test_revoke_key(
        self,
        seed,
        session_factory: async_sessionmaker[AsyncSession],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        raw = seed.keys["carol@acme.test"]
        async with session_factory() as session:
            api_key = await APIKeyRepository(session).get_active_by_hash(
                hash_api_key(raw)
            )
            assert api_key is not None
            prefix = api_key.key_prefix

        await revoke_key(_args("revoke-key", "--prefix", prefix))
        assert f"Key revoked: {prefix}" in capsys.readouterr().out

        with pytest.raises(SystemExit):
            await revoke_key(_args("revoke-key", "--prefix", prefix))
        assert "Active key not found" in capsys.readouterr().err
