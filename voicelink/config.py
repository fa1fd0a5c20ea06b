from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from voicelink.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the account-linking service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/voicelink", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and the sync Redis client used by the test suite.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("voicelink", "JWT_ISSUER")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking exp on signed tokens",
    )

    # OAuth client registration (single client)
    oauth_client_id: str | None = env_field(None, "OAUTH_CLIENT_ID")
    oauth_client_secret: str | None = env_field(None, "OAUTH_CLIENT_SECRET")
    oauth_redirect_uri_prefixes: list[str] = env_field(
        [],
        "OAUTH_REDIRECT_URI_PREFIXES",
        description="Comma-separated redirect_uri prefixes accepted by /authorize",
    )
    oauth_default_scope: str = env_field("alexa", "OAUTH_DEFAULT_SCOPE")

    # Token lifetimes
    authorization_code_ttl_seconds: int = env_field(
        600, "AUTHORIZATION_CODE_TTL_SECONDS"
    )
    authorization_code_leeway_seconds: int = env_field(
        1, "AUTHORIZATION_CODE_LEEWAY_SECONDS"
    )
    device_token_ttl_seconds: int = env_field(24 * 60 * 60, "DEVICE_TOKEN_TTL_SECONDS")
    session_token_ttl_seconds: int = env_field(60 * 60, "SESSION_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    refresh_tokens_enabled: bool = env_field(False, "REFRESH_TOKENS_ENABLED")

    # Entitlement / billing
    entitlement_bypass: bool = env_field(
        False,
        "ENTITLEMENT_BYPASS",
        description="Skip the licence and device-token check in /authorize (development only)",
    )
    billing_webhook_secret: str | None = env_field(None, "BILLING_WEBHOOK_SECRET")
    billing_webhook_tolerance_seconds: int = env_field(
        300, "BILLING_WEBHOOK_TOLERANCE_SECONDS"
    )
    webhook_dedupe_ttl_seconds: int = env_field(
        24 * 60 * 60, "WEBHOOK_DEDUPE_TTL_SECONDS"
    )

    # Administrative credential for /revoke and /admin routes
    admin_api_key: str | None = env_field(None, "ADMIN_API_KEY")

    # External identity provider
    idp_url: str | None = env_field(None, "IDP_URL")
    idp_api_key: str | None = env_field(None, "IDP_API_KEY")
    idp_timeout_seconds: float = env_field(5.0, "IDP_TIMEOUT_SECONDS")

    # Legacy token transition window
    legacy_tokens_enabled: bool = env_field(True, "LEGACY_TOKENS_ENABLED")
    legacy_tokens_accepted_until: datetime | None = env_field(
        None,
        "LEGACY_TOKENS_ACCEPTED_UNTIL",
        description="ISO-8601 instant after which legacy tokens no longer introspect; unset refuses them",
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

    @field_validator("oauth_redirect_uri_prefixes", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("redis_url", "oauth_client_secret", "admin_api_key", "idp_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("legacy_tokens_accepted_until")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: Any) -> str:
        # Tokens are never issued unsigned; refuse to start without a key.
        if not value or not value.strip():
            logger.error("jwt_secret_missing")
            raise ValueError("JWT_SECRET must be set")
        return value


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
