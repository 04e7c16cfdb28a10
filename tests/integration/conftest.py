"""Fixtures for integration tests that need a migrated PostgreSQL database."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from tenant_gate.config import get_settings


@pytest.fixture()
async def pg_engine() -> AsyncGenerator[AsyncEngine]:
    engine = create_async_engine(get_settings().database_url, pool_size=2, max_overflow=0)
    yield engine
    await engine.dispose()


@pytest.fixture()
async def db_session(pg_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    """Session inside an outer transaction that is rolled back after the test.

    Suitable for code that uses ``flush()`` but not ``commit()``.
    """
    async with pg_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        yield session

        await session.close()
        await trans.rollback()
