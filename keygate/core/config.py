"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Settings only describe *how* to build the storage adapter and the key
manager. Instances are built explicitly (see
``keygate.adapters.storage.factory`` and ``ApiKeyManager.from_settings``)
and injected where they are used.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from keygate.adapters.rate_limit.base import RateLimitStrategy
from keygate.schemas.api_key import RateLimitConfig


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_key_settings() -> "KeySettings":
    """Build key settings from environment."""

    return KeySettings()


def _build_storage_settings() -> "StorageSettings":
    """Build storage settings from environment."""

    return StorageSettings()


def _build_auth_settings() -> "AuthSettings":
    """Build auth settings from environment."""

    return AuthSettings()


def _build_log_settings() -> "LogSettings":
    """Build log settings from environment."""

    return LogSettings()


class KeySettings(BaseSettings):
    """Key generation and default rate policy."""

    prefix: str = Field(
        "",
        description="String prepended to every generated secret (e.g., 'sk_live_')",
    )
    key_length: int = Field(
        12,
        description="Number of random bytes in a secret (hex-encoded, so 2x characters)",
        ge=1,
    )
    rate_limit_window_ms: int = Field(
        60_000,
        description="Default rate limit window in milliseconds",
        ge=1,
    )
    rate_limit_max_requests: int = Field(
        60,
        description="Default maximum admitted requests per window",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="KEYS_",
        case_sensitive=False,
    )

    @property
    def default_rate_limit(self) -> RateLimitConfig:
        return RateLimitConfig(
            window_ms=self.rate_limit_window_ms,
            max_requests=self.rate_limit_max_requests,
        )


class StorageSettings(BaseSettings):
    """Storage backend selection.

    Supports memory, kv (local dbm file), redis and sql backends. Validation
    of backend-specific requirements happens in the factory.
    """

    backend: str = Field(
        "memory",
        description="Storage backend name (memory, kv, redis, sql)",
    )
    namespace: str = Field(
        "apikey:",
        description="Key prefix for the kv and redis backends",
    )
    redis_url: str | None = Field(
        None,
        description="Redis connection URL (required for the redis backend)",
    )
    database_url: str | None = Field(
        None,
        description="SQLAlchemy async URL (required for the sql backend)",
    )
    kv_path: str = Field(
        "data/keygate.db",
        description="File path of the dbm database used by the kv backend",
    )
    rate_limit_strategy: RateLimitStrategy = Field(
        RateLimitStrategy.SLIDING_LOG,
        description="Rate limit algorithm for the redis backend (sliding_log or fixed_bucket)",
    )

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        case_sensitive=False,
    )


class AuthSettings(BaseSettings):
    """HTTP credential extraction and throttling behaviour."""

    header_name: str = Field(
        "X-API-Key",
        description="Request header carrying the API key",
    )
    query_name: str = Field(
        "api_key",
        description="Query parameter checked when the header is absent",
    )
    rate_limit_enabled: bool = Field(
        True,
        description="Enforce per-key rate limits on authenticated requests",
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )

    model_config = SettingsConfigDict(
        env_prefix="AUTH_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log output: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated log files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate request correlation ids",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.

    Environments:
    - development: Local development
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    keys: KeySettings = Field(default_factory=_build_key_settings)
    storage: StorageSettings = Field(default_factory=_build_storage_settings)
    auth: AuthSettings = Field(default_factory=_build_auth_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
