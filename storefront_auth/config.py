from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storefront_auth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class RouteLimit(BaseModel):
    """Fixed-window budget for one public auth route."""

    max_attempts: int
    window_minutes: int


# Per-route budgets keyed by the route name used in rate-limit keys.
DEFAULT_ROUTE_LIMITS: dict[str, RouteLimit] = {
    "register": RouteLimit(max_attempts=5, window_minutes=15),
    "login": RouteLimit(max_attempts=10, window_minutes=15),
    "refresh": RouteLimit(max_attempts=20, window_minutes=15),
    "forgot_password": RouteLimit(max_attempts=3, window_minutes=60),
    "reset_password": RouteLimit(max_attempts=5, window_minutes=60),
    "resend_otp": RouteLimit(max_attempts=3, window_minutes=15),
    "verify_otp": RouteLimit(max_attempts=10, window_minutes=15),
    "change_password": RouteLimit(max_attempts=10, window_minutes=15),
}


class Settings(BaseModel):
    """Runtime settings for the credential and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/storefront", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/storefront-auth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_redis_rate_limits: bool = env_field(
        False,
        "USE_REDIS_RATE_LIMITS",
        description="Share rate-limit windows across instances through Redis",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    refresh_secret: str = env_field(None, "REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("storefront", "JWT_ISSUER")
    jwt_audience: str = env_field("storefront-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS")

    # Verification and recovery
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    password_reset_single_active: bool = env_field(
        False,
        "PASSWORD_RESET_SINGLE_ACTIVE",
        description="Invalidate older unused reset tokens when a new one is issued",
    )
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")

    # Lockout
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")

    # Two-factor
    totp_issuer: str = env_field("Storefront", "TOTP_ISSUER")
    totp_valid_window: int = env_field(
        2,
        "TOTP_VALID_WINDOW",
        description="Accepted TOTP steps either side of the current one",
    )
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Storefront", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:5000", "APP_BASE_URL")
    login_alerts_enabled: bool = env_field(
        True,
        "LOGIN_ALERTS_ENABLED",
        description="Send a security alert email after each successful login",
    )

    route_limits: dict[str, RouteLimit] = Field(
        default_factory=lambda: dict(DEFAULT_ROUTE_LIMITS)
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            if not env_key:
                continue
            if env_key in os.environ:
                merged[name] = os.environ[env_key]
            elif env_key in env_file_values:
                merged[name] = env_file_values[env_key]
        return cls(**merged)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".jwt_secret")

    @field_validator("refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".refresh_secret")

    @model_validator(mode="after")
    def _distinct_signing_secrets(self) -> "Settings":
        if self.jwt_secret == self.refresh_secret:
            raise ValueError("JWT_SECRET and REFRESH_SECRET must differ")
        return self

    def limit_for(self, route: str) -> RouteLimit:
        return self.route_limits.get(route) or DEFAULT_ROUTE_LIMITS[route]


def _load_or_create_secret(filename: str) -> str:
    """Persist a generated signing secret so tokens survive restarts."""

    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/storefront-auth"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
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
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
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
