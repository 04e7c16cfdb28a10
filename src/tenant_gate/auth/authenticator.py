"""API key authentication producing the request principal."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_gate.auth.context import Principal
from tenant_gate.auth.keys import extract_api_key, hash_api_key
from tenant_gate.errors import AuthenticationRequired
from tenant_gate.storage.repositories import APIKeyRepository

logger = structlog.get_logger()


class ApiKeyAuthenticator:
    """Resolve ``X-API-Key`` / ``Authorization: Bearer`` into a ``Principal``."""

    def __init__(self, api_key_header: str = "X-API-Key") -> None:
        self._api_key_header = api_key_header

    async def authenticate(
        self, headers: Mapping[str, str], session: AsyncSession
    ) -> Principal:
        """Authenticate the request.

        Raises:
            AuthenticationRequired: missing, unknown, revoked or expired key.
        """
        raw_key = extract_api_key(
            headers.get(self._api_key_header), headers.get("authorization")
        )
        if raw_key is None:
            raise AuthenticationRequired()

        repo = APIKeyRepository(session)
        api_key = await repo.get_active_by_hash(hash_api_key(raw_key))
        if api_key is None or api_key.user is None:
            logger.warning("security_event", kind="invalid_api_key")
            raise AuthenticationRequired("Invalid API key")

        now = datetime.now(UTC)
        expires_at = api_key.expires_at
        if expires_at is not None:
            # SQLite returns naive datetimes.
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=UTC)
            if expires_at < now:
                logger.warning(
                    "security_event",
                    kind="expired_api_key",
                    key_prefix=api_key.key_prefix,
                )
                raise AuthenticationRequired("API key expired")

        await repo.touch(api_key, now=now)
        user = api_key.user
        return Principal(
            user_id=user.id,
            email=user.email,
            current_tenant_id=user.current_tenant_id,
            key_prefix=api_key.key_prefix,
        )
