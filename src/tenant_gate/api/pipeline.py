"""Request pipeline: ordered stages wrapped around every API handler.

The stage order is declared once in ``STAGE_ORDER``::

    request_logging → rate_limit → unit_of_work → authentication
      → tenant_access → performance → error_boundary → handler

Each route enables or skips stages through ``PipelineOptions``; skipped
stages never change the relative order of the others. Stages that reject a
request (rate limit, authentication, tenant access) render the rejection
with ``error_response`` and do not call inner stages. The error boundary
turns any handler exception into the same uniform error body.
"""

from __future__ import annotations

import asyncio
import hashlib
import random
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeVar

import structlog
from fastapi import APIRouter
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from tenant_gate.auth.access_guard import AccessGuard
from tenant_gate.auth.authenticator import ApiKeyAuthenticator
from tenant_gate.auth.context import AuthContext, Principal
from tenant_gate.auth.rate_limiter import (
    RateLimitKey,
    RateLimitPolicy,
    RateLimitUsage,
    SlidingWindowRateLimiter,
)
from tenant_gate.auth.roles import Permission, effective_permissions
from tenant_gate.auth.tenant_resolver import RequestSignals, TenantResolver
from tenant_gate.config import Settings
from tenant_gate.errors import (
    GateError,
    InternalServerError,
    InvalidRequest,
    RateLimited,
    ResourceNotFound,
    UpstreamFailure,
)
from tenant_gate.storage.audit import AuditTrail
from tenant_gate.storage.orm import Membership
from tenant_gate.storage.repositories import MembershipRepository, TenantRepository
from tenant_gate.storage.scoped import ScopedDataAccess

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


class Stage(StrEnum):
    REQUEST_LOGGING = "request_logging"
    RATE_LIMIT = "rate_limit"
    UNIT_OF_WORK = "unit_of_work"
    AUTHENTICATION = "authentication"
    TENANT_ACCESS = "tenant_access"
    PERFORMANCE = "performance"
    ERROR_BOUNDARY = "error_boundary"
    HANDLER = "handler"


# Outermost first.
STAGE_ORDER: tuple[Stage, ...] = (
    Stage.REQUEST_LOGGING,
    Stage.RATE_LIMIT,
    Stage.UNIT_OF_WORK,
    Stage.AUTHENTICATION,
    Stage.TENANT_ACCESS,
    Stage.PERFORMANCE,
    Stage.ERROR_BOUNDARY,
    Stage.HANDLER,
)


@dataclass(frozen=True)
class PipelineOptions:
    """Per-route stage configuration.

    ``require_tenant`` implies authentication.
    """

    rate_limit_policy: str | None = "api"
    rate_limit_key: RateLimitKey = RateLimitKey.IP
    require_auth: bool = False
    require_tenant: bool = False
    track_performance: bool = True
    permission: Permission | None = None

    @property
    def authenticates(self) -> bool:
        return self.require_auth or self.require_tenant


PRESETS: dict[str, PipelineOptions] = {
    # Public API routes (no auth required)
    "public_api": PipelineOptions(rate_limit_policy="public"),
    # Authenticated, not tenant-bound
    "protected_api": PipelineOptions(rate_limit_policy="api", require_auth=True),
    # Authenticated and bound to one tenant
    "tenant_api": PipelineOptions(rate_limit_policy="api", require_tenant=True),
    # Credential endpoints
    "auth": PipelineOptions(rate_limit_policy="auth"),
    "search": PipelineOptions(rate_limit_policy="search", require_tenant=True),
    # Ingestion is not timed, to avoid tracking the tracker.
    "analytics": PipelineOptions(
        rate_limit_policy="analytics", require_tenant=True, track_performance=False
    ),
}


@dataclass
class RequestState:
    """Everything the pipeline knows about one request.

    Created fresh per request and handed to the handler; never shared.
    """

    request: Request
    request_id: str
    options: PipelineOptions
    settings: Settings
    started_at: float = field(default_factory=time.perf_counter)
    stages: list[Stage] = field(default_factory=list)
    outcome: str | None = None
    rate_limit: RateLimitUsage | None = None
    session: AsyncSession | None = None
    principal: Principal | None = None
    membership: Membership | None = None
    auth: AuthContext | None = None
    data: ScopedDataAccess | None = None
    guard: AccessGuard | None = None

    @property
    def db(self) -> AsyncSession:
        if self.session is None:
            msg = "No unit of work is open for this request"
            raise RuntimeError(msg)
        return self.session

    @property
    def context(self) -> AuthContext:
        """Tenant context; present on routes with ``require_tenant``."""
        if self.auth is None:
            msg = "Route is not tenant-scoped"
            raise RuntimeError(msg)
        return self.auth

    @property
    def scoped(self) -> ScopedDataAccess:
        if self.data is None:
            msg = "Route is not tenant-scoped"
            raise RuntimeError(msg)
        return self.data

    @property
    def actor(self) -> Membership:
        """Caller's active membership in the resolved tenant."""
        if self.membership is None or self.guard is None:
            msg = "Route is not tenant-scoped"
            raise RuntimeError(msg)
        return self.membership

    @property
    def access(self) -> AccessGuard:
        if self.guard is None:
            msg = "Route is not tenant-scoped"
            raise RuntimeError(msg)
        return self.guard

    @property
    def user(self) -> Principal:
        if self.principal is None:
            msg = "Route does not require authentication"
            raise RuntimeError(msg)
        return self.principal

    async def parse_body(self, model: type[ModelT]) -> ModelT:
        """Validate the JSON body against ``model``.

        Raises:
            InvalidRequest: malformed JSON or failed validation.
        """
        raw = await self.request.body()
        try:
            return model.model_validate_json(raw or b"{}")
        except ValidationError as exc:
            raise InvalidRequest(
                "Request body validation failed",
                details=exc.errors(include_url=False, include_context=False),
            ) from exc

    def path_uuid(self, name: str) -> uuid.UUID:
        """Path parameter as UUID; a malformed id is simply not found."""
        try:
            return uuid.UUID(str(self.request.path_params[name]))
        except (KeyError, ValueError) as exc:
            raise ResourceNotFound() from exc

    def query_int(
        self, name: str, default: int, *, minimum: int = 0, maximum: int | None = None
    ) -> int:
        raw = self.request.query_params.get(name)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError as exc:
            raise InvalidRequest(f"Query parameter {name} must be an integer") from exc
        if value < minimum or (maximum is not None and value > maximum):
            raise InvalidRequest(f"Query parameter {name} is out of range")
        return value


Handler = Callable[[RequestState], Awaitable[Any]]
Next = Callable[[RequestState], Awaitable[Response]]
Endpoint = Callable[[Request], Awaitable[Response]]


def error_response(
    error: GateError,
    *,
    request_id: str,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    """Render ``error`` as the uniform JSON error body.

    Every rejection in the pipeline goes through this function.
    """
    body: dict[str, Any] = {
        "error": error.public_code,
        "message": error.public_message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(timespec="seconds"),
        **error.body_fields(),
    }
    return JSONResponse(
        status_code=error.status_code,
        content=jsonable_encoder(body),
        headers={**error.headers(), **(headers or {})},
    )


def client_ip(request: Request, *, trust_proxy_headers: bool = False) -> str:
    """Client address; the first X-Forwarded-For hop when proxies are trusted."""
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return request.client.host if request.client else "unknown"


def _request_id(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER)
    if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH and incoming.isprintable():
        return incoming
    return uuid.uuid4().hex


def _outcome(status_code: int) -> str:
    if status_code < 400:
        return "success"
    if status_code < 500:
        return "rejected"
    return "error"


class RequestPipeline:
    """Builds pipeline-wrapped endpoints from plain handlers.

    One instance per application; it owns no per-request state.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        rate_limiter: SlidingWindowRateLimiter,
        policies: Mapping[str, RateLimitPolicy],
        authenticator: ApiKeyAuthenticator | None = None,
        resolver: TenantResolver | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._rate_limiter = rate_limiter
        self._policies = dict(policies)
        self._authenticator = authenticator or ApiKeyAuthenticator(
            settings.api_key_header
        )
        self._resolver = resolver or TenantResolver(
            settings.platform_domain,
            fallthrough=settings.tenant_resolution_fallthrough,
        )

    @property
    def rate_limiter(self) -> SlidingWindowRateLimiter:
        return self._rate_limiter

    # --- composition ---

    def enabled_stages(self, options: PipelineOptions) -> list[Stage]:
        """Stages that run for ``options``, in ``STAGE_ORDER``."""
        enabled = {
            Stage.REQUEST_LOGGING: True,
            Stage.RATE_LIMIT: (
                self._settings.rate_limiting_enabled
                and options.rate_limit_policy is not None
            ),
            Stage.UNIT_OF_WORK: True,
            Stage.AUTHENTICATION: options.authenticates,
            Stage.TENANT_ACCESS: options.require_tenant,
            Stage.PERFORMANCE: options.track_performance,
            Stage.ERROR_BOUNDARY: True,
            Stage.HANDLER: True,
        }
        return [stage for stage in STAGE_ORDER if enabled[stage]]

    def wrap(self, handler: Handler, options: PipelineOptions) -> Endpoint:
        """Wrap ``handler`` into a Starlette endpoint.

        Raises:
            ValueError: unknown rate limit policy name.
        """
        if (
            options.rate_limit_policy is not None
            and options.rate_limit_policy not in self._policies
        ):
            msg = f"Unknown rate limit policy: {options.rate_limit_policy}"
            raise ValueError(msg)

        stage_impls: dict[Stage, Callable[[RequestState, Next], Awaitable[Response]]] = {
            Stage.REQUEST_LOGGING: self._request_logging,
            Stage.RATE_LIMIT: self._rate_limit,
            Stage.UNIT_OF_WORK: self._unit_of_work,
            Stage.AUTHENTICATION: self._authentication,
            Stage.TENANT_ACCESS: self._tenant_access,
            Stage.PERFORMANCE: self._performance,
            Stage.ERROR_BOUNDARY: self._error_boundary,
        }

        async def run_handler(state: RequestState) -> Response:
            state.stages.append(Stage.HANDLER)
            result = await handler(state)
            if isinstance(result, Response):
                return result
            return JSONResponse(content=jsonable_encoder(result))

        chain: Next = run_handler
        for stage in reversed(self.enabled_stages(options)[:-1]):
            chain = self._link(stage, stage_impls[stage], chain)

        async def endpoint(request: Request) -> Response:
            state = RequestState(
                request=request,
                request_id=_request_id(request),
                options=options,
                settings=self._settings,
            )
            request.state.pipeline = state
            return await chain(state)

        endpoint.__name__ = getattr(handler, "__name__", "endpoint")
        endpoint.__doc__ = handler.__doc__
        return endpoint

    @staticmethod
    def _link(
        stage: Stage,
        impl: Callable[[RequestState, Next], Awaitable[Response]],
        call_next: Next,
    ) -> Next:
        async def run(state: RequestState) -> Response:
            state.stages.append(stage)
            return await impl(state, call_next)

        return run

    def route(
        self,
        router: APIRouter,
        path: str,
        handler: Handler,
        *,
        methods: Sequence[str],
        options: PipelineOptions,
        status_code: int | None = None,
    ) -> None:
        """Register ``handler`` on ``router`` behind the pipeline."""
        router.add_api_route(
            path,
            self.wrap(handler, options),
            methods=list(methods),
            status_code=status_code,
            response_model=None,
            name=getattr(handler, "__name__", None),
        )

    # --- rejection rendering ---

    def _reject(self, state: RequestState, stage: Stage, error: GateError) -> Response:
        log = logger.warning if error.status_code < 500 else logger.error
        log(
            "request_rejected",
            stage=str(stage),
            error=error.code,
            status_code=error.status_code,
        )
        return error_response(error, request_id=state.request_id)

    def _upstream(self, cause: BaseException) -> UpstreamFailure:
        return UpstreamFailure(cause, expose_cause=self._settings.expose_error_details)

    def _rate_limit_headers(self, state: RequestState, response: Response) -> None:
        usage = state.rate_limit
        if usage is None:
            return
        response.headers["X-RateLimit-Limit"] = str(usage.limit)
        response.headers["X-RateLimit-Remaining"] = str(usage.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(usage.reset_at))

    # --- stages ---

    async def _request_logging(self, state: RequestState, call_next: Next) -> Response:
        request = state.request
        with structlog.contextvars.bound_contextvars(
            request_id=state.request_id,
            method=request.method,
            path=request.url.path,
        ):
            logger.info(
                "request_started",
                client_ip=client_ip(
                    request, trust_proxy_headers=self._settings.trusted_proxy_headers
                ),
                user_agent=request.headers.get("user-agent"),
            )
            try:
                response = await call_next(state)
            except asyncio.CancelledError:
                logger.warning(
                    "request_completed",
                    outcome="cancelled",
                    duration_ms=self._elapsed_ms(state),
                )
                raise
            except TimeoutError as exc:
                state.outcome = "timeout"
                response = error_response(self._upstream(exc), request_id=state.request_id)
                self._rate_limit_headers(state, response)
            except Exception as exc:
                logger.error("unhandled_exception", exc_info=exc)
                state.outcome = "error"
                error = InternalServerError(
                    str(exc) if self._settings.expose_error_details else None
                )
                response = error_response(error, request_id=state.request_id)
                self._rate_limit_headers(state, response)

            response.headers[REQUEST_ID_HEADER] = state.request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                outcome=state.outcome or _outcome(response.status_code),
                duration_ms=self._elapsed_ms(state),
            )
            return response

    async def _rate_limit(self, state: RequestState, call_next: Next) -> Response:
        policy = self._policies[str(state.options.rate_limit_policy)]
        identifier = self._rate_limit_identifier(state)
        decision = self._rate_limiter.check(identifier, policy)
        state.rate_limit = decision.usage

        if decision.limited:
            retry_after = decision.usage.retry_after(self._rate_limiter.now())
            response = self._reject(
                state, Stage.RATE_LIMIT, RateLimited(decision.usage, retry_after)
            )
        else:
            response = await call_next(state)
        self._rate_limit_headers(state, response)
        return response

    def _rate_limit_identifier(self, state: RequestState) -> str:
        """Caller identity for the limiter; runs before authentication.

        ``user`` keys on a digest of the presented credential and ``tenant``
        on the tenant signal; both fall back to the client address. The
        credential is not verified yet, so a caller rotating made-up keys
        lands in a fresh ``user`` bucket each time: only pair ``user`` with
        routes whose credential failures are cheap, and keep ``auth`` on ``ip``.
        """
        request = state.request
        ip = client_ip(
            request, trust_proxy_headers=self._settings.trusted_proxy_headers
        )
        key_type = state.options.rate_limit_key
        if key_type is RateLimitKey.USER:
            credential = request.headers.get(
                self._settings.api_key_header
            ) or request.headers.get("authorization")
            if credential:
                return "user:" + hashlib.sha256(credential.encode()).hexdigest()[:32]
        elif key_type is RateLimitKey.TENANT:
            tenant = request.headers.get(
                self._settings.tenant_id_header
            ) or request.headers.get(self._settings.tenant_subdomain_header)
            if tenant:
                return f"tenant:{tenant.strip().lower()}"
        return f"ip:{ip}"

    async def _unit_of_work(self, state: RequestState, call_next: Next) -> Response:
        async with self._session_factory() as session:
            state.session = session
            try:
                response = await call_next(state)
            except Exception:
                await session.rollback()
                raise
            finally:
                state.session = None

            if response.status_code >= 400:
                await session.rollback()
                return response
            try:
                await session.commit()
            except SQLAlchemyError as exc:
                logger.error("commit_failed", exc_info=exc)
                await session.rollback()
                return self._reject(state, Stage.UNIT_OF_WORK, self._upstream(exc))
            return response

    async def _authentication(self, state: RequestState, call_next: Next) -> Response:
        try:
            principal = await self._authenticator.authenticate(
                state.request.headers, state.db
            )
        except GateError as exc:
            return self._reject(state, Stage.AUTHENTICATION, exc)
        except SQLAlchemyError as exc:
            logger.error("authentication_upstream_failure", exc_info=exc)
            return self._reject(state, Stage.AUTHENTICATION, self._upstream(exc))

        state.principal = principal
        with structlog.contextvars.bound_contextvars(user_id=str(principal.user_id)):
            return await call_next(state)

    async def _tenant_access(self, state: RequestState, call_next: Next) -> Response:
        principal = state.user
        session = state.db
        request = state.request
        signals = RequestSignals.from_headers(
            request.headers,
            principal=principal,
            subdomain_header=self._settings.tenant_subdomain_header,
            tenant_id_header=self._settings.tenant_id_header,
        )
        guard = AccessGuard(MembershipRepository(session))
        try:
            resolution = await self._resolver.resolve(
                signals, TenantRepository(session)
            )
            membership = await guard.authorize(principal.user_id, resolution.tenant_id)
            if state.options.permission is not None:
                guard.require_permission(membership, state.options.permission)
        except GateError as exc:
            return self._reject(state, Stage.TENANT_ACCESS, exc)
        except SQLAlchemyError as exc:
            logger.error("tenant_access_upstream_failure", exc_info=exc)
            return self._reject(state, Stage.TENANT_ACCESS, self._upstream(exc))

        state.guard = guard
        state.membership = membership
        state.auth = AuthContext(
            user_id=principal.user_id,
            tenant_id=resolution.tenant_id,
            role=membership.role,
            permissions=effective_permissions(membership.role, membership.permissions),
            method=resolution.method,
            request_id=state.request_id,
        )
        state.data = ScopedDataAccess(
            session,
            resolution.tenant_id,
            actor_id=principal.user_id,
            role=membership.role,
            audit=AuditTrail(
                persist=self._settings.audit_persist_events,
                ip_address=client_ip(
                    request, trust_proxy_headers=self._settings.trusted_proxy_headers
                ),
                user_agent=request.headers.get("user-agent"),
            ),
        )
        with structlog.contextvars.bound_contextvars(
            tenant_id=str(resolution.tenant_id), role=str(membership.role)
        ):
            return await call_next(state)

    async def _performance(self, state: RequestState, call_next: Next) -> Response:
        start = time.perf_counter()
        response = await call_next(state)
        duration_ms = int((time.perf_counter() - start) * 1000)

        if random.random() < self._settings.performance_sample_rate:
            logger.debug(
                "request_performance",
                duration_ms=duration_ms,
                status_code=response.status_code,
            )
        if duration_ms > self._settings.slow_request_threshold_ms:
            logger.warning(
                "slow_request",
                duration_ms=duration_ms,
                threshold_ms=self._settings.slow_request_threshold_ms,
                status_code=response.status_code,
            )
        return response

    async def _error_boundary(self, state: RequestState, call_next: Next) -> Response:
        try:
            return await call_next(state)
        except GateError as exc:
            error: GateError = exc
        except ValidationError as exc:
            error = InvalidRequest(
                details=exc.errors(include_url=False, include_context=False)
            )
        except TimeoutError as exc:
            logger.error("handler_timeout", exc_info=exc)
            state.outcome = "timeout"
            error = self._upstream(exc)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("upstream_failure", exc_info=exc)
            error = self._upstream(exc)
        except Exception as exc:
            logger.error("unhandled_exception", exc_info=exc)
            error = InternalServerError(
                str(exc) if self._settings.expose_error_details else None
            )

        if error.status_code < 500:
            logger.info(
                "request_failed", error=error.code, status_code=error.status_code
            )
        return error_response(error, request_id=state.request_id)

    @staticmethod
    def _elapsed_ms(state: RequestState) -> int:
        return int((time.perf_counter() - state.started_at) * 1000)
