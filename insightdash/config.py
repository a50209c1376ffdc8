from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from insightdash.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment modes; production tightens cookie and secret handling."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, loaded once at startup."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    log_level: str = env_field("INFO", "LOG_LEVEL")
    # unset: JSON everywhere except development and test
    log_json: bool | None = env_field(None, "LOG_JSON")
    database_url: str = env_field(
        "postgresql://localhost:5432/insightdash", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    # Access and refresh tokens are signed with distinct secrets so a leak of
    # one cannot be used to forge the other.
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("insightdash", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime", gt=0
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token lifetime", gt=0
    )
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
        ge=0,
    )
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )
    audit_max_workers: int = env_field(1, "AUDIT_MAX_WORKERS", ge=1)
    min_password_length: int = env_field(6, "MIN_PASSWORD_LENGTH", ge=1)

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def refresh_token_max_age(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().upper()
            if value not in _LOG_LEVELS:
                raise ValueError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}")
        return value

    @field_validator("log_json", mode="before")
    @classmethod
    def _blank_log_json_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        if self.is_production:
            if not self.jwt_access_secret or not self.jwt_refresh_secret:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be set in production"
                )
        if not self.jwt_access_secret:
            logger.warning("jwt_access_secret_generated", environment=self.environment.value)
            self.jwt_access_secret = secrets.token_urlsafe(64)
        if not self.jwt_refresh_secret:
            logger.warning("jwt_refresh_secret_generated", environment=self.environment.value)
            self.jwt_refresh_secret = secrets.token_urlsafe(64)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use different secrets")
        return self


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
