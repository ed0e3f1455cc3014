from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from tokenkeep.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session authority."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenkeep", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_memory_queue: bool = env_field(
        False,
        "USE_MEMORY_QUEUE",
        description="Keep notification jobs in-process instead of a Redis list",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors; allows an ephemeral signing secret.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tokenkeep", "JWT_ISSUER")

    # Token lifetimes
    access_token_ttl_minutes: int = env_field(
        24 * 60, "ACCESS_TOKEN_TTL_MINUTES", description="Access claim lifetime"
    )
    verification_claim_ttl_minutes: int = env_field(
        15,
        "VERIFICATION_CLAIM_TTL_MINUTES",
        description="Lifetime of the claim returned after a verification code is accepted",
    )
    remember_token_ttl_days: int = env_field(30, "REMEMBER_TOKEN_TTL_DAYS")
    email_verification_ttl_minutes: int = env_field(
        60, "EMAIL_VERIFICATION_TTL_MINUTES"
    )
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    verification_code_ttl_seconds: int = env_field(
        120, "VERIFICATION_CODE_TTL_SECONDS"
    )
    login_otp_ttl_seconds: int = env_field(300, "LOGIN_OTP_TTL_SECONDS")
    otp_length: int = env_field(6, "OTP_LENGTH")
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH")
    revoke_remember_tokens_on_reset: bool = env_field(
        True,
        "REVOKE_REMEMBER_TOKENS_ON_RESET",
        description="Drop every remember token of a user once their password is reset",
    )

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tokenkeep", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Notification delivery
    notification_queue_key: str = env_field(
        "tokenkeep:notifications", "NOTIFICATION_QUEUE_KEY"
    )
    notification_max_retries: int = env_field(3, "NOTIFICATION_MAX_RETRIES")
    notification_enqueue_timeout_seconds: float = env_field(
        60.0,
        "NOTIFICATION_ENQUEUE_TIMEOUT_SECONDS",
        description="Upper bound on scheduling a notification from a request",
    )
    notification_retry_delay_seconds: float = env_field(
        2.0, "NOTIFICATION_RETRY_DELAY_SECONDS"
    )
    notification_poll_timeout_seconds: int = env_field(
        1, "NOTIFICATION_POLL_TIMEOUT_SECONDS"
    )
    shutdown_grace_seconds: float = env_field(
        10.0,
        "SHUTDOWN_GRACE_SECONDS",
        description="Time allowed for in-flight notifications to drain on shutdown",
    )

    # Maintenance
    purge_interval_seconds: float = env_field(
        3600.0,
        "PURGE_INTERVAL_SECONDS",
        description="How often expired secrets are purged; 0 disables the purge loop",
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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < _MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        if info.data.get("test_mode"):
            # Ephemeral secret; claims do not survive a restart
            logger.warning("jwt_secret_generated", reason="test_mode")
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET is required outside TEST_MODE")

    @field_validator("otp_length", "min_password_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
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
