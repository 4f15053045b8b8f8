from __future__ import annotations

import os
from typing import Any, Dict

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bookora.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the digest size weaken the MAC
MIN_SECRET_BYTES = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _env_name(field_name: str, extra: Any) -> str:
    if isinstance(extra, dict) and extra.get("env"):
        return extra["env"]
    return field_name.upper()


class Settings(BaseModel):
    """Runtime settings for the booking auth core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/bookora", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests; never enable in production.",
    )

    # Signing keys
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_key_id: str = env_field("k1", "JWT_KEY_ID")
    jwt_previous_keys: str | None = env_field(
        None,
        "JWT_PREVIOUS_KEYS",
        description="Comma separated kid:secret pairs accepted for verification only",
    )
    jwt_issuer: str = env_field("bookora", "JWT_ISSUER")
    jwt_audience: str = env_field("bookora-clients", "JWT_AUDIENCE")

    # Token lifetimes
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", ge=1
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    clock_skew_seconds: int = env_field(5, "CLOCK_SKEW_SECONDS", ge=0, le=60)
    password_reset_ttl_hours: int = env_field(1, "PASSWORD_RESET_TTL_HOURS", ge=1)
    email_verification_ttl_days: int = env_field(
        7, "EMAIL_VERIFICATION_TTL_DAYS", ge=1
    )
    guest_token_grace_days: int = env_field(
        30,
        "GUEST_TOKEN_GRACE_DAYS",
        ge=0,
        description="Days after the booking ends during which the guest link stays valid",
    )
    token_retention_days: int = env_field(30, "TOKEN_RETENTION_DAYS", ge=0)
    cleanup_interval_seconds: int = env_field(3600, "CLEANUP_INTERVAL_SECONDS", ge=1)

    # Refresh cookie
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/v1/auth", "REFRESH_COOKIE_PATH")
    refresh_cookie_secure: bool = env_field(True, "REFRESH_COOKIE_SECURE")
    refresh_cookie_samesite: str = env_field("strict", "REFRESH_COOKIE_SAMESITE")
    refresh_cookie_domain: str | None = env_field(None, "REFRESH_COOKIE_DOMAIN")

    require_verified_email: bool = env_field(True, "REQUIRE_VERIFIED_EMAIL")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Outbound mail
    email_enabled: bool = env_field(True, "EMAIL_ENABLED")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Bookora", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Build settings from the process environment over ``env_file``."""
        sources = [os.environ, dotenv_values(env_file)]
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            env_name = _env_name(name, field.json_schema_extra)
            found = next((src[env_name] for src in sources if env_name in src), None)
            if found is not None:
                values[name] = found
        return cls(**values)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value.encode("utf-8")) < MIN_SECRET_BYTES:
            logger.error(
                "jwt_secret_too_short",
                length=len(value.encode("utf-8")),
                required=MIN_SECRET_BYTES,
            )
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_SECRET_BYTES} bytes"
            )
        return value

    @field_validator("refresh_cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        lowered = value.lower()
        if lowered not in {"strict", "lax", "none"}:
            raise ValueError("REFRESH_COOKIE_SAMESITE must be strict, lax or none")
        return lowered

    def previous_signing_keys(self) -> Dict[str, str]:
        """Parse ``JWT_PREVIOUS_KEYS`` into a kid -> secret mapping."""
        keys: Dict[str, str] = {}
        if not self.jwt_previous_keys:
            return keys
        for entry in self.jwt_previous_keys.split(","):
            entry = entry.strip()
            if not entry:
                continue
            kid, sep, secret = entry.partition(":")
            if not sep or not kid or not secret:
                raise ValueError("JWT_PREVIOUS_KEYS entries must look like kid:secret")
            keys[kid.strip()] = secret.strip()
        return keys


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
