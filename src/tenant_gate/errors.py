"""Domain-specific exceptions for tenant-gate.

Every rejection the request pipeline can produce is a ``GateError``
subclass carrying its HTTP status and a stable machine-readable ``code``.
Messages on these classes are safe to show to untrusted callers; they
never include tenant or user identifiers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from tenant_gate.auth.rate_limiter import RateLimitUsage
    from tenant_gate.auth.tenant_resolver import ResolutionMethod


class GateError(Exception):
    """Base class for errors rendered by the request pipeline."""

    status_code: ClassVar[int] = 400
    code: ClassVar[str] = "bad_request"
    default_message: ClassVar[str] = "Bad request"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def public_code(self) -> str:
        """Code exposed to callers (may differ from the internal one)."""
        return self.code

    @property
    def public_message(self) -> str:
        return self.message

    def body_fields(self) -> dict[str, Any]:
        """Extra structured fields for the error response body."""
        return {}

    def headers(self) -> dict[str, str]:
        """Extra response headers."""
        return {}


class AuthenticationRequired(GateError):
    status_code = 401
    code = "authentication_required"
    default_message = "Authentication required"

    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class TenantContextMissing(GateError):
    status_code = 400
    code = "tenant_context_required"
    default_message = (
        "Tenant context required: supply a tenant or select a current tenant"
    )


class UnauthorizedTenantAccess(GateError):
    status_code = 403
    code = "unauthorized_tenant_access"
    default_message = "Unauthorized tenant access"


class TenantNotFound(UnauthorizedTenantAccess):
    """No active tenant matches an explicit signal.

    Internal only: rendered exactly like ``UnauthorizedTenantAccess`` so
    callers cannot enumerate which tenants exist.
    """

    def __init__(self, method: ResolutionMethod, message: str | None = None) -> None:
        self.method = method
        super().__init__(message or f"No active tenant for {method} signal")

    @property
    def public_message(self) -> str:
        return UnauthorizedTenantAccess.default_message


class InsufficientPermission(GateError):
    status_code = 403
    code = "insufficient_permission"
    default_message = "Insufficient permission"

    def __init__(self, permission: str | None = None) -> None:
        self.permission = permission
        message = f"Missing permission: {permission}" if permission else None
        super().__init__(message)


class LastOwnerProtection(GateError):
    """Operation would leave a tenant without an active owner."""

    status_code = 409
    code = "last_owner_protection"
    default_message = (
        "Cannot remove the only owner of this organization. "
        "Promote another member to owner first."
    )


class RateLimited(GateError):
    status_code = 429
    code = "rate_limited"
    default_message = "Rate limit exceeded"

    def __init__(self, usage: RateLimitUsage, retry_after: int) -> None:
        self.usage = usage
        self.retry_after = retry_after
        super().__init__(
            f"Too many requests. Try again in {retry_after} seconds."
        )

    def body_fields(self) -> dict[str, Any]:
        return {
            "retry_after": self.retry_after,
            "limit": self.usage.limit,
            "remaining": self.usage.remaining,
            "reset": int(self.usage.reset_at),
        }

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class UpstreamFailure(GateError):
    """Persistence or dependency failure; the cause is logged, never shown."""

    status_code = 503
    code = "upstream_failure"
    default_message = "A dependency failed. Please retry later."

    def __init__(
        self, cause: BaseException | None = None, *, expose_cause: bool = False
    ) -> None:
        self.cause = cause
        message = None
        if expose_cause and cause is not None:
            message = f"{self.default_message} ({type(cause).__name__}: {cause})"
        super().__init__(message)


class ResourceNotFound(GateError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class InvalidRequest(GateError):
    status_code = 422
    code = "invalid_request"
    default_message = "Invalid request"

    def __init__(
        self, message: str | None = None, *, details: list[Any] | None = None
    ) -> None:
        self.details = details
        super().__init__(message)

    def body_fields(self) -> dict[str, Any]:
        return {"details": self.details} if self.details else {}


class InternalServerError(GateError):
    """Unexpected failure; rendered generically outside development."""

    status_code = 500
    code = "internal_error"
    default_message = "An unexpected error occurred"
