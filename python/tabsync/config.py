"""Application settings loaded from environment variables.

Environment Configuration:
    TABSYNC_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: Structured-store connection string (optional)
    SUPABASE_URL: REST-store project URL (optional, requires SUPABASE_SERVICE_KEY)
    SUPABASE_SERVICE_KEY: REST-store service role key

At least one of DATABASE_URL or SUPABASE_URL must be configured before a
storage backend can be constructed; that check lives in the backend selector,
not here, so the settings object can be built in tooling without a store.

Note: Ephemeral-compute detection (Vercel / AWS Lambda) is not a setting.
It is read from process environment markers by tabsync.storage.selector.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from tabsync.storage.base import BackendConfig


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Validation rules:
    - SUPABASE_URL and SUPABASE_SERVICE_KEY must be set together
    - SUPABASE_URL without a scheme gets an https:// prefix
    - Connection strings are whitespace-trimmed (env files often carry stray CR/LF)
    """

    tabsync_env: Environment = Field(default=Environment.LOCAL, alias="TABSYNC_ENV")

    # Structured store
    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    db_connect_timeout_s: int = Field(default=5, alias="DB_CONNECT_TIMEOUT_S")
    db_pool_size: int = Field(default=2, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=3, alias="DB_MAX_OVERFLOW")
    db_pool_recycle_s: int = Field(default=300, alias="DB_POOL_RECYCLE_S")

    # REST store (Supabase / PostgREST)
    supabase_url: str | None = Field(default=None, alias="SUPABASE_URL")
    supabase_service_key: str | None = Field(default=None, alias="SUPABASE_SERVICE_KEY")
    rest_timeout_s: float = Field(default=30.0, alias="REST_TIMEOUT_S")

    # Connection lifecycle
    pool_max_idle_s: int = Field(default=30 * 60, alias="POOL_MAX_IDLE_S")
    pool_cleanup_idle_s: int = Field(default=10 * 60, alias="POOL_CLEANUP_IDLE_S")
    cache_max_idle_s: int = Field(default=10 * 60, alias="CACHE_MAX_IDLE_S")
    cache_sweep_interval_s: int = Field(default=5 * 60, alias="CACHE_SWEEP_INTERVAL_S")

    log_json: bool = Field(default=True, alias="LOG_JSON")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @field_validator("database_url", "supabase_url", "supabase_service_key", mode="before")
    @classmethod
    def strip_blank(cls, value: str | None) -> str | None:
        """Trim whitespace and treat empty strings as unset."""
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("supabase_url")
    @classmethod
    def ensure_scheme(cls, value: str | None) -> str | None:
        if value and not value.startswith("http"):
            value = f"https://{value}"
        return value.rstrip("/") if value else value

    @model_validator(mode="after")
    def validate_rest_pair(self) -> "Settings":
        """REST store needs both the URL and the key."""
        if bool(self.supabase_url) != bool(self.supabase_service_key):
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set together")
        for name in ("db_pool_size", "db_connect_timeout_s", "cache_sweep_interval_s"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name.upper()} must be >= 1")
        if self.cache_max_idle_s >= self.pool_max_idle_s:
            raise ValueError("CACHE_MAX_IDLE_S must be shorter than POOL_MAX_IDLE_S")
        return self

    @property
    def is_production(self) -> bool:
        return self.tabsync_env in (Environment.STAGING, Environment.PROD)

    def backend_config(self) -> BackendConfig:
        """Return the immutable backend descriptor consumed by the selector."""
        return BackendConfig(
            database_url=self.database_url,
            supabase_url=self.supabase_url,
            supabase_key=self.supabase_service_key,
            connect_timeout_s=self.db_connect_timeout_s,
            pool_size=self.db_pool_size,
            max_overflow=self.db_max_overflow,
            pool_recycle_s=self.db_pool_recycle_s,
            rest_timeout_s=self.rest_timeout_s,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Raises:
        ValidationError: If settings are inconsistent.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
