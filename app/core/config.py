"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Rate limiting tables (per-operation windows, per-controller-method overrides,
privilege tiers) are plain settings fields; complex values can be supplied as
JSON through the environment, e.g.::

    RATE_LIMIT_OPERATION_LIMITS='{"export": {"attempts": 2, "window": 600}}'
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
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
if _env_file and os.getenv("TESTING") != "true":
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class LimitConfig(BaseModel):
    """A configured window: ``attempts`` per ``window`` seconds.

    ``scope`` is only meaningful for multi-level limits; see
    ``RateLimitEngine.multi_level_rate_limit``.
    """

    attempts: int = Field(..., ge=1)
    window: int = Field(..., ge=1)
    adaptive: bool | None = None
    scope: str | None = None


def _default_operation_limits() -> dict[str, LimitConfig]:
    return {
        "read": LimitConfig(attempts=100, window=60),
        "write": LimitConfig(attempts=30, window=60),
        "delete": LimitConfig(attempts=10, window=60),
        "export": LimitConfig(attempts=5, window=300),
        "bulk": LimitConfig(attempts=3, window=600),
    }


def _default_method_limits() -> dict[str, LimitConfig]:
    return {
        "GET": LimitConfig(attempts=100, window=60, adaptive=True),
        "HEAD": LimitConfig(attempts=100, window=60, adaptive=True),
        "POST": LimitConfig(attempts=30, window=60, adaptive=True),
        "PUT": LimitConfig(attempts=30, window=60, adaptive=True),
        "PATCH": LimitConfig(attempts=30, window=60, adaptive=True),
        "DELETE": LimitConfig(attempts=10, window=60, adaptive=True),
    }


def _default_tier_limits() -> dict[str, LimitConfig]:
    return {
        "admin": LimitConfig(attempts=1000, window=60, adaptive=False),
        "premium": LimitConfig(attempts=200, window=60, adaptive=True),
        "authenticated": LimitConfig(attempts=100, window=60, adaptive=True),
        "anonymous": LimitConfig(attempts=30, window=60, adaptive=True),
    }


def _default_multi_level() -> dict[str, LimitConfig]:
    return {
        "minute": LimitConfig(attempts=10, window=60),
        "hour": LimitConfig(attempts=100, window=3600),
        "day": LimitConfig(attempts=1000, window=86400),
    }


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


def _build_rate_limit_settings() -> "RateLimitSettings":
    return RateLimitSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required",
    )
    api_keys: str | None = Field(
        None,
        description=(
            "Comma-separated API keys. Each entry is 'key' or "
            "'key=user_id:role1|role2', roles being 'admin', capabilities "
            "(e.g. 'premium') or permissions (e.g. 'system.rate_limits.reset')"
        ),
    )
    admin_role: str = Field(
        "admin",
        description="Role name that marks a principal as administrator",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="'json' or 'plain'")
    output: str = Field("stdout", description="'stdout' or 'file'")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(10_485_760, description="Rotate after this many bytes (0 disables)")
    backup_count: int = Field(5, description="Rotated files to keep")
    request_id_header: str = Field("X-Request-ID", description="Correlation header name")
    audit_file_path: str | None = Field(
        None,
        description="Also write app.audit records to this file (JSON, rotated like the main log)",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Rate limiting policy configuration (read-only to the engine)."""

    enabled: bool = Field(True, description="Enable rate limiting on API routes")
    default_max_attempts: int = Field(60, ge=1, description="Global default attempts per window")
    default_window_seconds: int = Field(60, ge=1, description="Global default window size")
    enable_adaptive: bool = Field(
        True,
        description="Allow behavior-aware (adaptive) evaluation",
    )
    enable_distributed: bool = Field(
        False,
        description="Share counters across workers through Redis",
    )
    enable_ml: bool = Field(
        False,
        description="Apply statistical adjustment on top of profile anomaly scores",
    )
    adaptive_deny_threshold: float = Field(
        0.8,
        ge=0.0,
        le=1.0,
        description="Behavior score above which adaptive evaluation denies outright",
    )
    adaptive_backoff_seconds: int | None = Field(
        None,
        ge=1,
        description="Retry-After for behavior denials (defaults to the window size)",
    )
    redis_url: str = Field("redis://localhost:6379/0", description="Redis URL for distributed mode")
    key_prefix: str = Field("rate_limit:", description="Prefix for counter keys in Redis")
    profile_ttl_seconds: int = Field(86400, ge=1, description="Behavior profile lifetime")
    profile_max_entries: int | None = Field(10_000, description="Behavior profile cache capacity")
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )

    operation_limits: dict[str, LimitConfig] = Field(default_factory=_default_operation_limits)
    unknown_operation_limit: LimitConfig = Field(
        default_factory=lambda: LimitConfig(attempts=60, window=60)
    )
    method_limits: dict[str, LimitConfig] = Field(default_factory=_default_method_limits)
    controller_limits: dict[str, dict[str, LimitConfig]] = Field(default_factory=dict)
    tier_limits: dict[str, LimitConfig] = Field(default_factory=_default_tier_limits)
    multi_level: dict[str, LimitConfig] = Field(default_factory=_default_multi_level)

    @field_validator("multi_level")
    @classmethod
    def _require_levels(cls, value: dict[str, LimitConfig]) -> dict[str, LimitConfig]:
        if not value:
            raise ValueError("multi_level needs at least one level")
        return value

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if required settings are missing.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
