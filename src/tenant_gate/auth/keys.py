"""API key generation and hashing utilities."""

from __future__ import annotations

import hashlib
import secrets

KEY_NAMESPACE = "tg"


def generate_api_key(environment: str = "live") -> tuple[str, str, str]:
    """Generate API key, return (full_key, key_hash, key_prefix).

    The full key is shown once at creation time; only the hash and the
    prefix are stored.

    Args:
        environment: Key environment, typically 'live' or 'test'.
    """
    random_part = secrets.token_hex(24)
    full_key = f"{KEY_NAMESPACE}_{environment}_{random_part}"
    key_prefix = f"{KEY_NAMESPACE}_{environment}_{random_part[:6]}"
    return full_key, hash_api_key(full_key), key_prefix


def hash_api_key(key: str) -> str:
    """SHA-256 hex digest used for key lookup."""
    return hashlib.sha256(key.encode()).hexdigest()


def extract_api_key(
    api_key_header: str | None, authorization: str | None
) -> str | None:
    """Raw key from ``X-API-Key`` or ``Authorization: Bearer <key>``."""
    if api_key_header and api_key_header.strip():
        return api_key_header.strip()
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return None
