from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from tradedesk.logging import get_logger

logger = get_logger(__name__)


class StorageBackend(str, Enum):
    """Durable side-channel the credential store flushes into."""

    FILE = "file"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _env_overrides(model_cls: type[BaseModel]) -> dict[str, str]:
    """Collect field values from the process environment, falling back to .env."""
    env_file_values = dotenv_values(".env")
    merged: dict[str, str] = {}
    for name, field in model_cls.model_fields.items():
        extra = field.json_schema_extra or {}
        env_key = extra.get("env") if isinstance(extra, dict) else None
        env_name = env_key or name.upper()
        if env_name in os.environ:
            merged[name] = os.environ[env_name]
        elif env_name in env_file_values:
            merged[name] = env_file_values[env_name]
    return merged


class Settings(BaseModel):
    """Server-side settings for the auth service."""

    environment: str = env_field("development", "ENVIRONMENT")
    data_root: str = env_field("/srv/tradedesk", "DATA_ROOT")
    storage_backend: StorageBackend = env_field(StorageBackend.FILE, "STORAGE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("tradedesk:auth", "REDIS_KEY_PREFIX")
    token_secret: str = env_field(None, "TOKEN_SECRET", validate_default=True)
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")
    remember_me_ttl_days: int = env_field(
        30,
        "REMEMBER_ME_TTL_DAYS",
        description="Session and cookie lifetime when the user ticks 'remember me'",
    )
    seed_admin_enabled: bool = env_field(True, "SEED_ADMIN_ENABLED")
    seed_admin_email: str = env_field("admin@example.com", "SEED_ADMIN_EMAIL")
    seed_admin_password: str = env_field("Admin123", "SEED_ADMIN_PASSWORD")
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost: int = env_field(
        65536, "PASSWORD_MEMORY_COST", description="argon2 memory cost in KiB"
    )
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    default_landing_path: str = env_field("/dashboard", "DEFAULT_LANDING_PATH")
    login_path: str = env_field("/auth/login", "LOGIN_PATH")
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(
        True, "SMTP_USE_TLS", description="STARTTLS when true, implicit TLS otherwise"
    )
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tradedesk", "EMAIL_FROM_NAME")
    app_base_url: str = env_field(
        "http://localhost:3000",
        "APP_BASE_URL",
        description="Dashboard origin used to build links in outgoing mail",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(**_env_overrides(cls))

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @field_validator("storage_backend")
    @classmethod
    def _validate_storage_backend(cls, value: StorageBackend) -> StorageBackend:
        return StorageBackend(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("session_ttl_days", "remember_me_ttl_days", "password_reset_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL must be positive")
        return value

    @field_validator("token_secret", mode="before")
    @classmethod
    def _ensure_token_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        data_root = Path(info.data.get("data_root") or "/srv/tradedesk")
        secret_path = data_root / ".token_secret"

        try:
            data_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning(
                "token_secret_dir_setup", error=str(exc), path=str(data_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "token_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(data_root), prefix=".token_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, secret_path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "token_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist token secret; set TOKEN_SECRET or make DATA_ROOT writable"
            ) from exc
        return generated


class ClientSettings(BaseModel):
    """Settings for the dashboard-side session client."""

    base_url: str = env_field("http://localhost:8000", "TRADEDESK_API_URL")
    request_timeout_seconds: float = env_field(10.0, "TRADEDESK_REQUEST_TIMEOUT")
    refresh_interval_seconds: float = env_field(
        300.0,
        "TRADEDESK_REFRESH_INTERVAL",
        description="Period of the silent token refresh loop",
    )
    expiry_warning_seconds: float = env_field(300.0, "TRADEDESK_EXPIRY_WARNING")
    storage_path: str | None = env_field(None, "TRADEDESK_CLIENT_STORAGE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(**_env_overrides(cls))


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
