"""FastAPI application factory with lifespan management."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_gate.api.pipeline import REQUEST_ID_HEADER, RequestPipeline
from tenant_gate.api.routes.events import build_router as build_events_router
from tenant_gate.api.routes.projects import build_router as build_projects_router
from tenant_gate.api.routes.tenants import build_router as build_tenants_router
from tenant_gate.auth.rate_limiter import (
    SlidingWindowRateLimiter,
    build_policies,
    sweep_periodically,
)
from tenant_gate.config import Settings, get_settings
from tenant_gate.logging_config import configure_logging

logger = structlog.get_logger()

HEALTH_CHECK_TIMEOUT = 5.0
API_PREFIX = "/api/v1"


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    rate_limiter: SlidingWindowRateLimiter | None = None,
) -> FastAPI:
    """Build the application.

    ``session_factory`` and ``rate_limiter`` are injectable for tests; by
    default the process-wide engine and a fresh limiter are used. The
    limiter instance is owned by the returned app.
    """
    settings = settings or get_settings()
    owns_engine = session_factory is None
    if session_factory is None:
        from tenant_gate.storage.database import async_session

        session_factory = async_session
    limiter = rate_limiter or SlidingWindowRateLimiter(
        shards=settings.rate_limit_shards,
        retention_seconds=settings.rate_limit_retention_seconds,
    )
    pipeline = RequestPipeline(
        settings,
        session_factory=session_factory,
        rate_limiter=limiter,
        policies=build_policies(settings.rate_limit_overrides),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        """Startup: logging, rate limiter sweep. Shutdown: stop sweep, dispose engine."""
        configure_logging(
            environment=str(settings.environment),
            log_level=settings.log_level,
        )
        sweep_task = asyncio.create_task(
            sweep_periodically(limiter, settings.rate_limit_sweep_interval_seconds)
        )
        logger.info("app_started", environment=str(settings.environment))
        yield

        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
        if owns_engine:
            from tenant_gate.storage.database import engine

            await engine.dispose()
        logger.info("app_stopped")

    app = FastAPI(
        title="Tenant Gate",
        description="Multi-tenant access control and request governance",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.is_dev,
    )
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.rate_limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allowed_methods,
        allow_headers=settings.cors_allowed_headers,
        expose_headers=[
            REQUEST_ID_HEADER,
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    @app.get("/health")
    async def health() -> JSONResponse:
        """Health check: database connectivity and rate limiter storage."""
        checks: dict[str, str] = {}
        overall = "ok"
        try:
            async with session_factory() as session:
                await asyncio.wait_for(
                    session.execute(text("SELECT 1")),
                    timeout=HEALTH_CHECK_TIMEOUT,
                )
            checks["db"] = "ok"
        except (TimeoutError, SQLAlchemyError, OSError) as e:
            logger.warning("health_check_db_error", error=type(e).__name__)
            checks["db"] = f"error: {type(e).__name__}"
            overall = "degraded"

        status_code = 200 if overall == "ok" else 503
        return JSONResponse(
            status_code=status_code,
            content={
                "status": overall,
                "checks": checks,
                "rate_limiter": limiter.stats(),
                "timestamp": datetime.now(UTC).isoformat(timespec="seconds"),
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Catch-all for failures outside the request pipeline."""
        logger.error("unhandled_exception", exc_info=exc, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "Internal server error"},
        )

    app.include_router(build_tenants_router(pipeline), prefix=API_PREFIX)
    app.include_router(build_projects_router(pipeline), prefix=API_PREFIX)
    app.include_router(build_events_router(pipeline), prefix=API_PREFIX)
    return app


app = create_app()
