from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from teamgate.logging import get_logger

logger = get_logger(__name__)


class SigningAlgorithm(str, Enum):
    """HMAC algorithms a deployment may pin its tokens to."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and access service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/teamgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours: sync Redis client, generated JWT secret",
    )
    app_url: str = env_field(
        "http://localhost:8000",
        "APP_URL",
        description="Issuer (iss claim) stamped into every session token",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_algorithm: SigningAlgorithm = env_field(SigningAlgorithm.HS256, "JWT_ALGO")
    jwt_ttl_minutes: int = env_field(
        60, "JWT_TTL", description="Token lifetime in minutes"
    )
    jwt_refresh_ttl_minutes: int = env_field(
        20160,
        "JWT_REFRESH_TTL",
        description="Refresh window in minutes, measured from the token's iat",
    )
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY", description="Clock skew tolerated on nbf/exp checks"
    )
    revocation_fail_open: bool = env_field(
        True,
        "REVOCATION_FAIL_OPEN",
        description=(
            "When the revocation cache is unreachable, treat tokens as not revoked "
            "(true) or as revoked (false)"
        ),
    )
    invitation_ttl_days: int = env_field(7, "INVITATION_TTL_DAYS")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

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
    def token_ttl_seconds(self) -> int:
        return self.jwt_ttl_minutes * 60

    @property
    def refresh_window_seconds(self) -> int:
        return self.jwt_refresh_ttl_minutes * 60

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_ttl_minutes", "jwt_refresh_ttl_minutes", "invitation_ttl_days")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("leeway cannot be negative")
        return value

    @model_validator(mode="after")
    def _check_secret_and_windows(self) -> "Settings":
        if self.jwt_refresh_ttl_minutes < self.jwt_ttl_minutes:
            raise ValueError("JWT_REFRESH_TTL must not be shorter than JWT_TTL")
        if not self.jwt_secret:
            if not self.test_mode:
                raise ValueError("JWT_SECRET must be set outside of TEST_MODE")
            # Tokens from a generated secret do not survive a restart; fine for tests
            self.jwt_secret = secrets.token_urlsafe(64)
            logger.warning("jwt_secret_generated", reason="test_mode")
        elif len(self.jwt_secret) < 32:
            logger.warning("jwt_secret_short", length=len(self.jwt_secret))
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
