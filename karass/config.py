from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from karass.logging import get_logger

logger = get_logger(__name__)

_MIN_RECOMMENDED_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    pg_pool_min_size: int = env_field(1, "PG_POOL_MIN_SIZE", ge=1)
    pg_pool_max_size: int = env_field(10, "PG_POOL_MAX_SIZE", ge=1)

    # Session tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS", ge=1)

    # Password hashing (argon2id work factor)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost_kib: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST_KIB", ge=8
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    # OAuth providers
    twitter_client_id: str | None = env_field(None, "TWITTER_CLIENT_ID")
    twitter_client_secret: str | None = env_field(None, "TWITTER_CLIENT_SECRET")
    twitter_redirect_uri: str = env_field("karass://callback", "TWITTER_REDIRECT_URI")
    github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    github_redirect_url: str = env_field(
        "http://localhost:3000",
        "GITHUB_REDIRECT_URL",
        description="Public base URL of this service; GitHub redirects to its web-callback",
    )
    app_callback_uri: str = env_field(
        "karass://callback",
        "APP_CALLBACK_URI",
        description="Mobile app deep link that receives code/state after the GitHub web-callback",
    )
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS", gt=0)

    # PKCE state store
    pkce_state_ttl_seconds: int = env_field(600, "PKCE_STATE_TTL_SECONDS", ge=1)
    pkce_max_entries: int = env_field(1000, "PKCE_MAX_ENTRIES", ge=1)
    pkce_sweep_interval_seconds: int = env_field(60, "PKCE_SWEEP_INTERVAL_SECONDS", ge=1)

    # Rate limiting
    general_rate_limit_window_seconds: int = env_field(
        60, "GENERAL_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    general_rate_limit_max_requests: int = env_field(
        100, "GENERAL_RATE_LIMIT_MAX_REQUESTS", ge=1
    )
    auth_rate_limit_window_seconds: int = env_field(
        900, "AUTH_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    auth_rate_limit_max_requests: int = env_field(10, "AUTH_RATE_LIMIT_MAX_REQUESTS", ge=1)
    rate_limit_max_clients: int = env_field(10000, "RATE_LIMIT_MAX_CLIENTS", ge=1)
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Use the first X-Forwarded-For hop as the client address",
    )

    # Accounts
    admin_emails: list[str] = env_field(
        [],
        "ADMIN_EMAILS",
        description="Comma separated emails that become admins when they register",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("admin_emails", mode="before")
    @classmethod
    def _split_admin_emails(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [item.strip().lower() for item in value if item and item.strip()]

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # No generated fallback: tokens signed with an unknown secret cannot be trusted
        if not value or not value.strip():
            raise ValueError("JWT_SECRET must be set")
        if len(value) < _MIN_RECOMMENDED_SECRET_LENGTH:
            logger.warning("jwt_secret_short", length=len(value))
        return value

    @model_validator(mode="after")
    def _require_database(self) -> "Settings":
        if not self.use_memory_store and not self.database_url:
            raise ValueError("DATABASE_URL must be set unless USE_MEMORY_STORE is enabled")
        if self.pg_pool_min_size > self.pg_pool_max_size:
            raise ValueError("PG_POOL_MIN_SIZE must not exceed PG_POOL_MAX_SIZE")
        return self

    @property
    def github_redirect_uri(self) -> str:
        return f"{self.github_redirect_url.rstrip('/')}/auth/github/web-callback"


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
