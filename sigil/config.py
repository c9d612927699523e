from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sigil.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session core."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep ephemeral state in process memory instead of Redis",
    )
    state_dir: str | None = env_field(
        None, "STATE_DIR", description="Directory for the memory store snapshot"
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow generated signing secrets for local runs and CI",
    )

    # Token signing
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("sigil", "JWT_ISSUER")
    jwt_audience: str = env_field("sigil-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS"
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")

    # Sessions
    session_timeout_seconds: int = env_field(24 * 3600, "SESSION_TIMEOUT_SECONDS")
    max_sessions_per_user: int = env_field(
        5,
        "MAX_SESSIONS_PER_USER",
        description="Oldest sessions are evicted past this count; 0 disables the cap",
    )

    # Login attempts
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_seconds: int = env_field(15 * 60, "LOCKOUT_SECONDS")

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_require_upper: bool = env_field(True, "PASSWORD_REQUIRE_UPPER")
    password_require_lower: bool = env_field(True, "PASSWORD_REQUIRE_LOWER")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")

    # One-time tokens
    password_reset_ttl_seconds: int = env_field(3600, "PASSWORD_RESET_TTL_SECONDS")
    email_verification_ttl_seconds: int = env_field(
        24 * 3600, "EMAIL_VERIFICATION_TTL_SECONDS"
    )
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS")

    # Two-factor
    totp_issuer: str = env_field("Sigil", "TOTP_ISSUER")
    totp_window: int = env_field(2, "TOTP_WINDOW")
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting two-factor secrets at rest",
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sigil", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Logging is configured from these variables when sigil.logging is imported
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")

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

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "session_timeout_seconds",
        "lockout_seconds",
        "password_reset_ttl_seconds",
        "email_verification_ttl_seconds",
        "oauth_state_ttl_seconds",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL values must be positive")
        return value

    @field_validator("max_login_attempts", "backup_code_count")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @model_validator(mode="after")
    def _check_signing_secrets(self) -> "Settings":
        for name in ("jwt_access_secret", "jwt_refresh_secret"):
            value = getattr(self, name)
            if value:
                if len(value) < _MIN_SECRET_LENGTH:
                    raise ValueError(
                        f"{name} must be at least {_MIN_SECRET_LENGTH} characters"
                    )
                continue
            if not self.test_mode:
                raise ValueError(f"{name} is required outside TEST_MODE")
            logger.warning("jwt_secret_generated", setting=name)
            setattr(self, name, secrets.token_urlsafe(48))
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use distinct secrets")
        if self.access_token_ttl_seconds >= self.refresh_token_ttl_seconds:
            raise ValueError("access token TTL must be shorter than refresh token TTL")
        if self.password_min_length > self.password_max_length:
            raise ValueError("password_min_length exceeds password_max_length")
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
