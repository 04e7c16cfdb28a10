"""Tests for API key utilities and the API key authenticator."""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.datastructures import Headers

from tenant_gate.auth.authenticator import ApiKeyAuthenticator
from tenant_gate.auth.keys import extract_api_key, generate_api_key, hash_api_key
from tenant_gate.errors import AuthenticationRequired
from tenant_gate.storage.repositories import APIKeyRepository


class TestGenerateApiKey:
    def test_format(self) -> None:
        full_key, key_hash, key_prefix = generate_api_key("live")
        assert full_key.startswith("tg_live_")
        assert len(full_key) == len("tg_live_") + 48
        assert key_prefix == full_key[: len("tg_live_") + 6]
        assert key_hash == hash_api_key(full_key)

    def test_unique(self) -> None:
        assert generate_api_key()[0] != generate_api_key()[0]

    def test_hash_is_sha256_hex(self) -> None:
        digest = hash_api_key("tg_test_abc")
        assert len(digest) == 64
        assert digest == hash_api_key("tg_test_abc")


class TestExtractApiKey:
    def test_header_wins(self) -> None:
        assert extract_api_key("key-a", "Bearer key-b") == "key-a"

    def test_bearer(self) -> None:
        assert extract_api_key(None, "Bearer key-b") == "key-b"
        assert extract_api_key(None, "bearer  key-b ") == "key-b"

    @pytest.mark.parametrize(
        ("header", "authorization"),
        [(None, None), ("  ", None), (None, "Basic abc"), (None, "Bearer ")],
    )
    def test_missing(self, header: str | None, authorization: str | None) -> None:
        assert extract_api_key(header, authorization) is None


class TestApiKeyAuthenticator:
    async def test_valid_key(self, seed, session: AsyncSession) -> None:
        principal = await ApiKeyAuthenticator().authenticate(
            Headers({"X-API-Key": seed.keys["bob@acme.test"]}), session
        )
        assert principal.user_id == seed.bob.id
        assert principal.email == "bob@acme.test"
        assert principal.current_tenant_id == seed.acme.id
        assert principal.key_prefix is not None

    async def test_bearer_token(self, seed, session: AsyncSession) -> None:
        principal = await ApiKeyAuthenticator().authenticate(
            Headers({"Authorization": f"Bearer {seed.keys['dave@globex.test']}"}),
            session,
        )
        assert principal.user_id == seed.dave.id

    async def test_touch_updates_last_used(self, seed, session: AsyncSession) -> None:
        raw = seed.keys["alice@acme.test"]
        await ApiKeyAuthenticator().authenticate(Headers({"X-API-Key": raw}), session)
        api_key = await APIKeyRepository(session).get_active_by_hash(hash_api_key(raw))
        assert api_key is not None
        assert api_key.last_used_at is not None

    async def test_missing_key(self, session: AsyncSession) -> None:
        with pytest.raises(AuthenticationRequired) as exc_info:
            await ApiKeyAuthenticator().authenticate(Headers({}), session)
        assert exc_info.value.headers() == {"WWW-Authenticate": "Bearer"}

    async def test_unknown_key_logged(self, seed, session: AsyncSession) -> None:
        with (
            patch("tenant_gate.auth.authenticator.logger") as mock_logger,
            pytest.raises(AuthenticationRequired, match="Invalid API key"),
        ):
            await ApiKeyAuthenticator().authenticate(
                Headers({"X-API-Key": "tg_live_nope"}), session
            )
        mock_logger.warning.assert_called_once_with(
            "security_event", kind="invalid_api_key"
        )

    async def test_revoked_key(self, seed, session: AsyncSession) -> None:
        raw = seed.keys["carol@acme.test"]
        repo = APIKeyRepository(session)
        api_key = await repo.get_active_by_hash(hash_api_key(raw))
        assert api_key is not None
        assert await repo.revoke(api_key.key_prefix) is True
        with pytest.raises(AuthenticationRequired):
            await ApiKeyAuthenticator().authenticate(
                Headers({"X-API-Key": raw}), session
            )

    async def test_expired_key(
        self,
        seed,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        full_key, key_hash, key_prefix = generate_api_key("test")
        async with session_factory() as session:
            await APIKeyRepository(session).create(
                user_id=seed.alice.id,
                key_hash=key_hash,
                key_prefix=key_prefix,
                expires_at=datetime.now(UTC) - timedelta(days=1),
            )
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(AuthenticationRequired, match="expired"):
                await ApiKeyAuthenticator().authenticate(
                    Headers({"X-API-Key": full_key}), session
                )

    async def test_custom_header_name(self, seed, session: AsyncSession) -> None:
        principal = await ApiKeyAuthenticator(api_key_header="X-Gate-Key").authenticate(
            Headers({"X-Gate-Key": seed.keys["alice@acme.test"]}), session
        )
        assert principal.user_id == seed.alice.id
