from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from trackerauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments recognised by the auth service."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the tracker authentication service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/tracker", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-memory fallbacks, relaxed startup checks).",
    )
    # Signing material; required at service construction, see TokenIssuer.
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str | None = env_field("tracker-api", "JWT_ISSUER")
    jwt_audience: str | None = env_field("tracker-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60,
        "JWT_EXPIRATION_MINUTES",
        description="Bearer token lifetime in minutes",
    )
    refresh_token_ttl_days: int = env_field(
        7,
        "JWT_REFRESH_EXPIRATION_DAYS",
        description="Refresh token lifetime in days",
    )
    password_reset_token_ttl_minutes: int = env_field(
        60, "PASSWORD_RESET_TOKEN_TTL_MINUTES"
    )
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    login_lockout_minutes: int = env_field(
        15,
        "LOGIN_LOCKOUT_MINUTES",
        description="Sliding window of the per-IP failed attempt counter",
    )
    account_lockout_minutes: int = env_field(
        15,
        "ACCOUNT_LOCKOUT_MINUTES",
        description="How long an account stays locked after too many wrong passwords",
    )
    email_regex_timeout_ms: int = env_field(250, "EMAIL_REGEX_TIMEOUT_MS")
    default_registration_role: str = env_field("User", "DEFAULT_REGISTRATION_ROLE")
    debug_reset_tokens: bool = env_field(
        False,
        "DEBUG_RESET_TOKENS",
        description="Echo password reset tokens in API responses; ignored in production",
    )
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "password_reset_token_ttl_minutes",
        "max_failed_login_attempts",
        "login_lockout_minutes",
        "account_lockout_minutes",
        "email_regex_timeout_ms",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("default_registration_role")
    @classmethod
    def _default_role(cls, value: str) -> str:
        return value.strip() or "User"

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def expose_reset_tokens(self) -> bool:
        """Reset tokens are only echoed back for non-production debugging."""
        if self.is_production:
            if self.debug_reset_tokens:
                logger.warning("debug_reset_tokens_ignored_in_production")
            return False
        return self.debug_reset_tokens

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
