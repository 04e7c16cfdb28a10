"""Centralized application configuration via environment variables."""

from enum import StrEnum
from functools import lru_cache

from pydantic import SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Secrets use SecretStr to prevent accidental logging.
    Database URL is assembled from individual components to match
    the official PostgreSQL Docker image environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- App ---
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "DEBUG"

    # --- CORS ---
    cors_allowed_origins: list[str] = []
    cors_allow_credentials: bool = False
    cors_allowed_methods: list[str] = ["GET", "POST", "PATCH", "DELETE"]
    cors_allowed_headers: list[str] = [
        "Content-Type",
        "Authorization",
        "X-API-Key",
        "X-Tenant-ID",
    ]

    # --- PostgreSQL ---
    postgres_user: str = "tenant_gate"
    postgres_password: SecretStr = SecretStr("secret")
    postgres_db: str = "tenant_gate"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    @computed_field  # type: ignore[prop-decorator]
    @property
    def database_url(self) -> str:
        """Assemble database URL from components.

        Uses psycopg v3 driver which supports both sync (create_engine)
        and async (create_async_engine) modes natively.
        """
        password = self.postgres_password.get_secret_value()
        return (
            f"postgresql+psycopg://{self.postgres_user}:{password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # --- Tenancy ---
    # Wildcard domain served by the platform: "<subdomain>.<platform_domain>".
    platform_domain: str = "dokunote.com"
    # Trusted headers injected by the edge proxy / internal callers.
    tenant_subdomain_header: str = "X-Tenant-Subdomain"
    tenant_id_header: str = "X-Tenant-ID"
    api_key_header: str = "X-API-Key"
    # Lenient cascade to the next resolution method on an unknown tenant.
    tenant_resolution_fallthrough: bool = False

    # --- Rate limiting ---
    rate_limiting_enabled: bool = True
    # Per-policy overrides, e.g. {"search": {"window_seconds": 30, "max_requests": 5}}
    rate_limit_overrides: dict[str, dict[str, float]] = {}
    rate_limit_sweep_interval_seconds: int = 300
    rate_limit_retention_seconds: int = 24 * 60 * 60
    rate_limit_shards: int = 16
    # Trust X-Forwarded-For / X-Real-IP for the client address. Enable only
    # behind a proxy that overwrites these headers; otherwise clients choose
    # their own rate limit bucket.
    trusted_proxy_headers: bool = False

    # --- Performance / audit ---
    slow_request_threshold_ms: int = 1000
    performance_sample_rate: float = 1.0
    audit_persist_events: bool = True
    statistics_window_days: int = 7

    # --- Convenience properties ---
    @property
    def is_dev(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    @property
    def expose_error_details(self) -> bool:
        """Upstream error messages are returned verbatim only in development."""
        return self.is_dev


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings singleton.

    Usage::

        from tenant_gate.config import get_settings
        settings = get_settings()

    Or for dependency injection in FastAPI::

        @app.get("/")
        def root(settings: Settings = Depends(get_settings)):
            ...
    """
    return Settings()


settings = get_settings()
