"""Authentication, tenant resolution, authorization and rate limiting.

Note: ``AccessGuard`` and ``ApiKeyAuthenticator`` are NOT re-exported here
to avoid a circular import (storage.orm → auth.roles → auth → storage).
Import them from their modules directly.
"""

from tenant_gate.auth.context import AuthContext, Principal
from tenant_gate.auth.keys import generate_api_key, hash_api_key
from tenant_gate.auth.roles import Permission, Role

__all__ = [
    "AuthContext",
    "Permission",
    "Principal",
    "Role",
    "generate_api_key",
    "hash_api_key",
]
