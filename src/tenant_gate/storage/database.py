"""Async engine and session factory.

The request pipeline opens one session per request from ``async_session``
and owns its commit/rollback; there is no per-route session dependency.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tenant_gate.config import settings

engine = create_async_engine(
    settings.database_url,
    pool_pre_ping=True,
    echo=False,
)

async_session = async_sessionmaker(engine, expire_on_commit=False)
