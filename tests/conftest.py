"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from tenant_gate.auth.keys import generate_api_key
from tenant_gate.auth.roles import Role
from tenant_gate.storage.orm import Base, Tenant, User
from tenant_gate.storage.repositories import (
    APIKeyRepository,
    MembershipRepository,
    TenantRepository,
    UserRepository,
)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-db",
        action="store_true",
        default=False,
        help="Run tests that require a live PostgreSQL instance",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    if config.getoption("--run-db"):
        return
    skip_db = pytest.mark.skip(reason="needs --run-db flag")
    for item in items:
        if "requires_db" in item.keywords:
            item.add_marker(skip_db)


# ──────────────────────────────────────────────
# In-memory SQLite database
# ──────────────────────────────────────────────


@pytest.fixture()
async def engine() -> AsyncGenerator[AsyncEngine]:
    """Fresh in-memory database with the full schema."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs behave as on PostgreSQL.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, _record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture()
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    async with session_factory() as session:
        yield session


# ──────────────────────────────────────────────
# Seed data: two tenants, four users
# ──────────────────────────────────────────────


@dataclass
class Seed:
    """Tenant A (acme): owner alice, admin bob, viewer carol.
    Tenant B (globex): owner dave.
    """

    acme: Tenant
    globex: Tenant
    alice: User
    bob: User
    carol: User
    dave: User
    keys: dict[str, str]


async def _create_user(session: AsyncSession, email: str, name: str) -> User:
    return await UserRepository(session).create(email=email, name=name)


@pytest.fixture()
async def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seed:
    async with session_factory() as session:
        alice = await _create_user(session, "alice@acme.test", "Alice")
        bob = await _create_user(session, "bob@acme.test", "Bob")
        carol = await _create_user(session, "carol@acme.test", "Carol")
        dave = await _create_user(session, "dave@globex.test", "Dave")

        tenants = TenantRepository(session)
        acme = await tenants.create(name="Acme", owner=alice, subdomain="acme")
        globex = await tenants.create(name="Globex", owner=dave, subdomain="globex")

        memberships = MembershipRepository(session)
        await memberships.add(user_id=bob.id, tenant_id=acme.id, role=Role.ADMIN)
        await memberships.add(user_id=carol.id, tenant_id=acme.id, role=Role.VIEWER)
        bob.current_tenant_id = acme.id
        carol.current_tenant_id = acme.id

        keys: dict[str, str] = {}
        api_keys = APIKeyRepository(session)
        for user in (alice, bob, carol, dave):
            full_key, key_hash, key_prefix = generate_api_key("test")
            await api_keys.create(
                user_id=user.id, key_hash=key_hash, key_prefix=key_prefix
            )
            keys[user.email] = full_key

        await session.commit()
        return Seed(
            acme=acme,
            globex=globex,
            alice=alice,
            bob=bob,
            carol=carol,
            dave=dave,
            keys=keys,
        )
