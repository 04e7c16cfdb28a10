"""Tenant resolution from trusted request signals.

Precedence, first applicable method wins:

1. ``subdomain``: label injected by the edge proxy, honoured only when the
   request host is under the platform wildcard domain;
2. ``header``: internal tenant-id header (service calls, API clients);
3. ``session``: the authenticated principal's current-tenant pointer.

A method that receives an explicit value which does not match an active
tenant fails closed with ``TenantNotFound`` instead of cascading to a
weaker method. ``fallthrough=True`` restores the lenient cascade.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import structlog

from tenant_gate.errors import TenantContextMissing, TenantNotFound

if TYPE_CHECKING:
    from tenant_gate.auth.context import Principal
    from tenant_gate.storage.orm import Tenant

logger = structlog.get_logger()


class ResolutionMethod(StrEnum):
    SUBDOMAIN = "subdomain"
    HEADER = "header"
    SESSION = "session"


class TenantLookup(Protocol):
    """Read access to active tenants, provided by the persistence layer."""

    async def get_active_by_id(self, tenant_id: uuid.UUID) -> Tenant | None: ...

    async def get_active_by_subdomain(self, subdomain: str) -> Tenant | None: ...

    async def get_active_by_slug(self, slug: str) -> Tenant | None: ...


@dataclass(frozen=True)
class RequestSignals:
    """Trusted tenant signals of one request, as opaque strings."""

    host: str | None = None
    subdomain: str | None = None
    tenant_id: str | None = None
    session_tenant_id: uuid.UUID | None = None

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        *,
        principal: Principal | None = None,
        subdomain_header: str = "X-Tenant-Subdomain",
        tenant_id_header: str = "X-Tenant-ID",
    ) -> RequestSignals:
        """Collect signals from request headers and the authenticated principal.

        ``headers`` must be case-insensitive (Starlette ``Headers`` is).
        """
        return cls(
            host=headers.get("host"),
            subdomain=headers.get(subdomain_header) or None,
            tenant_id=headers.get(tenant_id_header) or None,
            session_tenant_id=principal.current_tenant_id if principal else None,
        )


@dataclass(frozen=True)
class TenantResolution:
    tenant_id: uuid.UUID
    slug: str
    name: str
    subdomain: str | None
    method: ResolutionMethod


def _host_matches(host: str | None, subdomain: str, platform_domain: str) -> bool:
    """True if ``host`` is ``<subdomain>.<platform_domain>`` (port ignored)."""
    if not host:
        return False
    hostname = host.rsplit(":", 1)[0].lower().rstrip(".")
    return hostname == f"{subdomain.lower()}.{platform_domain.lower()}"


def _parse_tenant_id(raw: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


class TenantResolver:
    """Resolve the target tenant of a request. Read-only and idempotent."""

    def __init__(self, platform_domain: str, *, fallthrough: bool = False) -> None:
        self._platform_domain = platform_domain
        self._fallthrough = fallthrough

    async def resolve(
        self, signals: RequestSignals, lookup: TenantLookup
    ) -> TenantResolution:
        """Resolve ``signals`` against active tenants.

        Raises:
            TenantNotFound: an explicit signal names no active tenant.
            TenantContextMissing: the request carries no tenant signal at all.
        """
        rejected: TenantNotFound | None = None

        if signals.subdomain and _host_matches(
            signals.host, signals.subdomain, self._platform_domain
        ):
            tenant = await lookup.get_active_by_subdomain(signals.subdomain.lower())
            if tenant is not None:
                return self._resolved(tenant, ResolutionMethod.SUBDOMAIN)
            rejected = TenantNotFound(ResolutionMethod.SUBDOMAIN)
            if not self._fallthrough:
                raise self._rejected(rejected)

        if signals.tenant_id:
            tenant_id = _parse_tenant_id(signals.tenant_id)
            tenant = (
                await lookup.get_active_by_id(tenant_id)
                if tenant_id is not None
                else None
            )
            if tenant is not None:
                return self._resolved(tenant, ResolutionMethod.HEADER)
            rejected = TenantNotFound(ResolutionMethod.HEADER)
            if not self._fallthrough:
                raise self._rejected(rejected)

        if signals.session_tenant_id is not None:
            tenant = await lookup.get_active_by_id(signals.session_tenant_id)
            if tenant is not None:
                return self._resolved(tenant, ResolutionMethod.SESSION)
            rejected = TenantNotFound(ResolutionMethod.SESSION)
            raise self._rejected(rejected)

        if rejected is not None:
            raise rejected
        raise TenantContextMissing()

    @staticmethod
    def _resolved(tenant: Tenant, method: ResolutionMethod) -> TenantResolution:
        logger.info("tenant_resolved", tenant_id=str(tenant.id), method=str(method))
        return TenantResolution(
            tenant_id=tenant.id,
            slug=tenant.slug,
            name=tenant.name,
            subdomain=tenant.subdomain,
            method=method,
        )

    @staticmethod
    def _rejected(error: TenantNotFound) -> TenantNotFound:
        logger.warning("tenant_resolution_failed", method=str(error.method))
        return error
