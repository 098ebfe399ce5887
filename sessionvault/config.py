from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionvault.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionvault", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Socket and connect timeout for the session store client",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    jwt_secret: str | None = env_field(
        None,
        "JWT_SECRET",
        description="Symmetric HS256 signing key; at least 32 characters",
    )
    jwt_issuer: str = env_field("sessionvault", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionvault-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        60 * 60,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Lifetime of access tokens and of the access-scoped index keys",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Lifetime of refresh values and of the refresh index key",
    )
    max_sessions_per_principal: int = env_field(3, "MAX_SESSIONS_PER_PRINCIPAL")
    principal_cache_ttl_seconds: int = env_field(300, "PRINCIPAL_CACHE_TTL_SECONDS")
    principal_cache_max_entries: int = env_field(
        10_000, "PRINCIPAL_CACHE_MAX_ENTRIES"
    )
    default_roles: List[str] = env_field(
        ["ADMIN", "USER"],
        "DEFAULT_ROLES",
        description="Role names upserted once at startup (comma separated in env)",
    )

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

    @field_validator("default_roles", mode="before")
    @classmethod
    def _split_roles(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("redis_url", "jwt_secret", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "max_sessions_per_principal",
        "principal_cache_ttl_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _refresh_outlives_access(self) -> "Settings":
        if self.refresh_token_ttl_seconds < self.access_token_ttl_seconds:
            raise ValueError(
                "refresh_token_ttl_seconds must be >= access_token_ttl_seconds"
            )
        if not self.jwt_secret:
            logger.warning(
                "jwt_secret_missing",
                message="JWT_SECRET is not set; token issuance will fail with signing_error",
            )
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
