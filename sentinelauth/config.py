from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sentinelauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and MFA engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sentinelauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sentinelauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours (in-process rate limits, no SMTP)",
    )

    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("sentinelauth", "JWT_ISSUER")
    jwt_audience: str = env_field("sentinel-portal", "JWT_AUDIENCE")
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")

    # Lockout policy (global, not per role)
    lockout_threshold: int = env_field(3, "LOCKOUT_THRESHOLD")
    lockout_minutes: int = env_field(60, "LOCKOUT_MINUTES")

    # Delivered one-time codes
    otp_ttl_seconds: int = env_field(60, "OTP_TTL_SECONDS")
    otp_resend_cooldown_seconds: int = env_field(
        30,
        "OTP_RESEND_COOLDOWN_SECONDS",
        description="Minimum gap between two codes for the same contact; must stay below OTP_TTL_SECONDS",
    )
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    mfa_pending_minutes: int = env_field(
        5,
        "MFA_PENDING_MINUTES",
        description="How long a verified password keeps the MFA step open",
    )

    # Authenticator enrolment
    totp_issuer: str = env_field("Defence Incident Sentinel", "TOTP_ISSUER")
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # Email verification
    email_verification_ttl_minutes: int = env_field(15, "EMAIL_VERIFICATION_TTL_MINUTES")
    email_verification_resend_seconds: int = env_field(
        120, "EMAIL_VERIFICATION_RESEND_SECONDS"
    )

    # Outbound mail
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Defence Incident Sentinel", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Transport rate limits: (requests, window seconds)
    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT")
    register_rate_window_seconds: int = env_field(3600, "REGISTER_RATE_WINDOW_SECONDS")
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(900, "LOGIN_RATE_WINDOW_SECONDS")
    otp_rate_limit: int = env_field(3, "OTP_RATE_LIMIT")
    otp_rate_window_seconds: int = env_field(300, "OTP_RATE_WINDOW_SECONDS")
    api_rate_limit: int = env_field(100, "API_RATE_LIMIT")
    api_rate_window_seconds: int = env_field(900, "API_RATE_WINDOW_SECONDS")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("otp_resend_cooldown_seconds")
    @classmethod
    def _cooldown_below_ttl(cls, value: int, info) -> int:
        ttl = info.data.get("otp_ttl_seconds")
        if ttl is not None and value >= ttl:
            raise ValueError("OTP_RESEND_COOLDOWN_SECONDS must be shorter than OTP_TTL_SECONDS")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so sessions survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sentinelauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
