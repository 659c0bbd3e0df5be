"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Only the HTTP wiring (``app_factory``) reads these settings. ``RateLimiter``
and the stores take explicit constructor arguments so several independently
configured limiters can live in one process.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


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
if _env_file and not os.getenv("TESTING"):
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_rate_limit_settings() -> "RateLimitSettings":
    """Build rate limit settings from environment."""

    return RateLimitSettings()


def _build_log_settings() -> "LogSettings":
    """Build logging settings from environment."""

    return LogSettings()


class RateLimitSettings(BaseSettings):
    """Rate limiter configuration for the default application guard."""

    enabled: bool = Field(
        True,
        description="Enable the global rate limiting middleware",
    )
    algorithm: Literal["fixed_window", "sliding_log", "cost_based"] = Field(
        "fixed_window",
        description="Limiting algorithm used by the default limiter",
    )
    window_ms: int = Field(
        60_000,
        description="Rate limit window size in milliseconds",
        ge=1,
    )
    max_requests: int = Field(
        60,
        description="Maximum admitted cost per window (per identifier)",
        ge=1,
    )
    key_prefix: str | None = Field(
        "global",
        description="Namespace prepended to every limiter key",
    )
    identifier: Literal["ip", "user", "api_key", "auto"] = Field(
        "ip",
        description="How the caller identifier is extracted from a request",
    )
    fail_mode: Literal["open", "closed"] = Field(
        "closed",
        description="Behaviour when the store is unreachable: admit (open) or 503 (closed)",
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers",
    )
    trust_forwarded_headers: bool = Field(
        False,
        description=(
            "Use X-Forwarded-For / X-Real-IP when resolving the client IP. "
            "Enable only behind a proxy that overwrites these headers"
        ),
    )
    store: Literal["memory", "redis"] = Field(
        "memory",
        description="Counter backend: per-process memory or shared Redis",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL (used when store=redis)",
    )
    redis_timeout_seconds: float = Field(
        0.5,
        description="Socket timeout for Redis operations in seconds",
        gt=0,
    )
    exempt_paths: str = Field(
        "/health,/docs,/openapi.json",
        description="Comma-separated path prefixes that bypass the limiter",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )

    @field_validator("key_prefix")
    @classmethod
    def _blank_prefix_is_none(cls, value: str | None) -> str | None:
        return value or None

    def exempt_path_list(self) -> list[str]:
        """Return exempt path prefixes as a list of trimmed, non-empty strings."""

        return [p.strip() for p in self.exempt_paths.split(",") if p.strip()]


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field(
        "json",
        description="Log output format",
    )
    output: Literal["stdout", "file"] = Field(
        "stdout",
        description="Log destination",
    )
    file_path: str | None = Field(
        None,
        description="Log file path when output=file (default logs/app.log)",
    )
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file at this size; 0 disables rotation",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated log files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
