from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authflow.logging import get_logger

logger = get_logger(__name__)


class ResetPath(str, Enum):
    """Identification paths accepted by the forgot-password flow."""

    PHONE_AND_NATIONAL_ID = "phone_and_national_id"
    NATIONAL_ID_AND_DOB = "national_id_and_dob"


RESET_PRECEDENCE_REJECT = "reject"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authflow", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authflow", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and runtime resets.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authflow", "JWT_ISSUER")
    jwt_audience: str = env_field("authflow-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        14 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    token_leeway_seconds: int = env_field(30, "TOKEN_LEEWAY_SECONDS", ge=0)

    # One-time codes
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS", gt=0)
    otp_resend_cooldown_seconds: int = env_field(30, "OTP_RESEND_COOLDOWN_SECONDS", ge=0)
    otp_pepper: str | None = env_field(
        None,
        "OTP_PEPPER",
        description="HMAC key for stored code digests; defaults to JWT_SECRET.",
    )
    expose_otp_codes: bool = env_field(
        False,
        "EXPOSE_OTP_CODES",
        description="Return issued codes in API responses. Honoured only in TEST_MODE.",
    )
    require_login_otp: bool = env_field(True, "REQUIRE_LOGIN_OTP")

    # Lockout policy
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", gt=0)
    lockout_window_seconds: int = env_field(
        3600,
        "LOCKOUT_WINDOW_SECONDS",
        ge=0,
        description="Rolling window for the failure counter; 0 keeps the episode open until success.",
    )
    hard_lock_after_soft_locks: int = env_field(
        3,
        "HARD_LOCK_AFTER_SOFT_LOCKS",
        ge=0,
        description="Escalate to a hard lock once a principal has been soft locked this many times; 0 disables.",
    )
    high_risk_flags: list[str] = env_field(
        ["credential_stuffing", "impossible_travel", "known_bad_ip"], "HIGH_RISK_FLAGS"
    )

    # Device confirmation
    device_confirmation_enabled: bool = env_field(True, "DEVICE_CONFIRMATION_ENABLED")
    device_confirmation_timeout_seconds: float = env_field(
        7.0, "DEVICE_CONFIRMATION_TIMEOUT_SECONDS", gt=0
    )
    device_confirmation_platforms: list[str] = env_field(
        ["web"], "DEVICE_CONFIRMATION_PLATFORMS"
    )
    allow_late_confirmation_upgrade: bool = env_field(
        False,
        "ALLOW_LATE_CONFIRMATION_UPGRADE",
        description="Let a confirmation arriving after fallback upgrade the session's trust flag.",
    )
    confirmation_channel_token: str | None = env_field(None, "CONFIRMATION_CHANNEL_TOKEN")
    confirmation_webhook_url: str | None = env_field(None, "CONFIRMATION_WEBHOOK_URL")

    # Identifiers and delivery
    phone_country_code: str = env_field("966", "PHONE_COUNTRY_CODE")
    phone_local_pattern: str = env_field(r"5\d{8}", "PHONE_LOCAL_PATTERN")
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_api_key: str | None = env_field(None, "SMS_GATEWAY_API_KEY")
    sms_sender: str | None = env_field(None, "SMS_SENDER")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS", gt=0)

    # Password reset
    password_reset_paths: list[ResetPath] = env_field(
        [ResetPath.PHONE_AND_NATIONAL_ID, ResetPath.NATIONAL_ID_AND_DOB],
        "PASSWORD_RESET_PATHS",
    )
    password_reset_precedence: str = env_field(
        RESET_PRECEDENCE_REJECT,
        "PASSWORD_RESET_PRECEDENCE",
        description="'reject' when both identification shapes are supplied, or the path name that wins.",
    )
    reset_ticket_ttl_seconds: int = env_field(600, "RESET_TICKET_TTL_SECONDS", gt=0)

    # Rate limits (per minute, keyed per identifier or principal)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_minute: int = env_field(10, "OTP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    challenge_purge_interval_seconds: int = env_field(
        300, "CHALLENGE_PURGE_INTERVAL_SECONDS", gt=0
    )
    record_retention_seconds: int = env_field(
        3600,
        "RECORD_RETENTION_SECONDS",
        ge=0,
        description="How long expired or resolved records are kept before the purge removes them.",
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

    @field_validator(
        "high_risk_flags",
        "device_confirmation_platforms",
        "password_reset_paths",
        mode="before",
    )
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("device_confirmation_platforms")
    @classmethod
    def _lower_platforms(cls, value: list[str]) -> list[str]:
        return [item.lower() for item in value]

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("phone_country_code")
    @classmethod
    def _validate_country_code(cls, value: str) -> str:
        cleaned = value.lstrip("+")
        if not cleaned.isdigit():
            raise ValueError("phone_country_code must be digits")
        return cleaned

    @field_validator("password_reset_precedence")
    @classmethod
    def _validate_precedence(cls, value: str) -> str:
        allowed = {RESET_PRECEDENCE_REJECT} | {p.value for p in ResetPath}
        if value not in allowed:
            raise ValueError(
                f"password_reset_precedence must be one of: {', '.join(sorted(allowed))}"
            )
        return value

    @model_validator(mode="after")
    def _validate_token_lifetimes(self) -> "Settings":
        if self.access_token_ttl_minutes >= self.refresh_token_ttl_minutes:
            raise ValueError(
                "access_token_ttl_minutes must be strictly shorter than refresh_token_ttl_minutes"
            )
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authflow"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def otp_hmac_key(self) -> bytes:
        return (self.otp_pepper or self.jwt_secret).encode()


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
