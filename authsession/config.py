from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authsession.logging import get_logger

logger = get_logger(__name__)


class StorageBackend(str, Enum):
    """Durable storage implementations for credentials and passport data."""

    FILE = "file"
    REDIS = "redis"


class ValidateMethod(str, Enum):
    """HTTP method used for the session validate call."""

    GET = "GET"
    POST = "POST"


# 3.5 hours, the renewal cadence the backend's access token lifetime was tuned for
DEFAULT_RENEWAL_INTERVAL_SECONDS = int(3.5 * 60 * 60)
DEFAULT_KEEPALIVE_INTERVAL_SECONDS = 10 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session lifecycle manager."""

    api_base_url: str = env_field("http://localhost:5000", "API_URL")
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS")
    storage_backend: StorageBackend = env_field(StorageBackend.FILE, "STORAGE_BACKEND")
    storage_root: str = env_field(
        os.path.join(os.path.expanduser("~"), ".authsession"), "STORAGE_ROOT"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    storage_encryption_key: str | None = env_field(
        None,
        "STORAGE_ENCRYPTION_KEY",
        description="Key material for encrypting stored values at rest (file backend)",
    )
    # Advisory lifetimes of the stored tokens; the backend stays authoritative
    access_token_ttl_days: int = env_field(7, "ACCESS_TOKEN_TTL_DAYS")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    renewal_interval_seconds: float = env_field(
        DEFAULT_RENEWAL_INTERVAL_SECONDS,
        "RENEWAL_INTERVAL_SECONDS",
        description="Interval between background token refreshes while authenticated",
    )
    restore_delay_seconds: float = env_field(0.1, "RESTORE_DELAY_SECONDS")
    keepalive_enabled: bool = env_field(False, "KEEPALIVE_ENABLED")
    keepalive_interval_seconds: float = env_field(
        DEFAULT_KEEPALIVE_INTERVAL_SECONDS, "KEEPALIVE_INTERVAL_SECONDS"
    )
    membership_stale_minutes: int = env_field(30, "MEMBERSHIP_STALE_MINUTES")

    login_path: str = env_field("/api/auth/login", "LOGIN_PATH")
    register_path: str = env_field("/api/auth/register", "REGISTER_PATH")
    validate_path: str = env_field("/api/auth/validate", "VALIDATE_PATH")
    validate_method: ValidateMethod = env_field(ValidateMethod.POST, "VALIDATE_METHOD")
    me_path: str = env_field("/api/auth/me", "ME_PATH")
    refresh_path: str = env_field("/api/auth/refresh", "REFRESH_PATH")
    passport_path: str = env_field("/api/user/passport", "PASSPORT_PATH")
    passport_sync_path: str = env_field("/api/user/passport/sync", "PASSPORT_SYNC_PATH")
    health_check_path: str = env_field("/api/health-check", "HEALTH_CHECK_PATH")

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

    @field_validator("storage_backend")
    @classmethod
    def _validate_storage_backend(cls, value: StorageBackend) -> StorageBackend:
        return StorageBackend(value)

    @field_validator("validate_method", mode="before")
    @classmethod
    def _normalize_validate_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("renewal_interval_seconds", "keepalive_interval_seconds")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval must be positive")
        return value

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_days * 24 * 60 * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            api_base_url=_settings_cache.api_base_url,
            storage_backend=_settings_cache.storage_backend.value,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
