from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from korella.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the Korella account-security service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/korella", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/korella", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(
        True,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Fall back to in-process rate-limit counters when Redis is unreachable",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets",
    )

    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("korella", "JWT_ISSUER")
    default_jwt_expiration_days: int = env_field(3, "DEFAULT_JWT_EXPIRATION_DAYS")
    extended_jwt_expiration_days: int = env_field(
        30,
        "EXTENDED_JWT_EXPIRATION_DAYS",
        description="Token lifetime when the user picks 'remember me'",
    )
    enforce_server_sessions: bool = env_field(
        False,
        "ENFORCE_SERVER_SESSIONS",
        description="Reject tokens whose server-side session row has been deleted",
    )

    # Credentials
    bcrypt_cost_factor: int = env_field(12, "BCRYPT_COST_FACTOR", ge=4, le=31)
    password_reset_expiration_hours: int = env_field(
        24, "PASSWORD_RESET_EXPIRATION_HOURS", ge=1
    )
    email_verification_expiration_hours: int = env_field(
        24, "EMAIL_VERIFICATION_EXPIRATION_HOURS", ge=1
    )
    trial_period_days: int = env_field(14, "TRIAL_PERIOD_DAYS")

    # Lockout
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS", ge=1)
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES", ge=1)

    # Retention
    auth_log_retention_days: int = env_field(7, "AUTH_LOG_RETENTION_DAYS", ge=1)
    used_token_retention_hours: int = env_field(24, "USED_TOKEN_RETENTION_HOURS", ge=1)
    retention_purge_enabled: bool = env_field(True, "RETENTION_PURGE_ENABLED")
    retention_purge_interval_hours: int = env_field(
        24, "RETENTION_PURGE_INTERVAL_HOURS", ge=1
    )
    cron_secret: str | None = env_field(None, "CRON_SECRET")

    # Rate limits
    login_rate_limit_max: int = env_field(10, "LOGIN_RATE_LIMIT_MAX")
    login_rate_limit_window_seconds: int = env_field(60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    password_reset_rate_limit_max: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT_MAX")
    password_reset_rate_limit_window_seconds: int = env_field(
        3600, "PASSWORD_RESET_RATE_LIMIT_WINDOW_SECONDS"
    )
    email_verification_rate_limit_max: int = env_field(
        3, "EMAIL_VERIFICATION_RATE_LIMIT_MAX"
    )
    email_verification_rate_limit_window_seconds: int = env_field(
        3600, "EMAIL_VERIFICATION_RATE_LIMIT_WINDOW_SECONDS"
    )
    api_rate_limit_max: int = env_field(100, "API_RATE_LIMIT_MAX")
    api_rate_limit_window_seconds: int = env_field(60, "API_RATE_LIMIT_WINDOW_SECONDS")
    api_strict_rate_limit_max: int = env_field(10, "API_STRICT_RATE_LIMIT_MAX")
    api_strict_rate_limit_window_seconds: int = env_field(
        60, "API_STRICT_RATE_LIMIT_WINDOW_SECONDS"
    )
    rate_limit_sweep_interval_seconds: int = env_field(
        300, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS", ge=1
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Korella", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # HTTP
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
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/korella")
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may be owned by another user inside a container
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
        tmp_path: str | None = None
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
