"""Fixtures for API tests: app wired to the in-memory database."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_gate.api.app import create_app
from tenant_gate.auth.rate_limiter import SlidingWindowRateLimiter
from tenant_gate.config import Settings


@pytest.fixture()
def settings() -> Settings:
    return Settings(environment="testing", _env_file=None)  # type: ignore[arg-type]


@pytest.fixture()
def limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter()


@pytest.fixture()
def app(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    limiter: SlidingWindowRateLimiter,
) -> FastAPI:
    return create_app(settings, session_factory=session_factory, rate_limiter=limiter)


@pytest.fixture()
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


HeadersFor = Callable[..., dict[str, str]]


@pytest.fixture()
def headers_for(seed) -> HeadersFor:
    """Build headers for a seeded user: ``headers_for("bob", tenant=seed.acme.id)``."""

    def build(name: str, *, tenant: uuid.UUID | None = None) -> dict[str, str]:
        user = getattr(seed, name)
        headers = {"X-API-Key": seed.keys[user.email]}
        if tenant is not None:
            headers["X-Tenant-ID"] = str(tenant)
        return headers

    return build
