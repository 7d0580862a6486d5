from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from staffledger.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core and its HTTP surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/staffledger", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/staffledger", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, runtime resets).",
    )
    signing_secret: str | None = env_field(
        None,
        "JWT_SIGNING_SECRET",
        description="Base64-encoded HMAC key; at least 256 bits once decoded",
    )
    token_validity_minutes: int = env_field(
        60,
        "TOKEN_VALIDITY_MINUTES",
        description="Lifetime of issued bearer tokens",
    )
    lockout_threshold: int = env_field(
        5,
        "LOCKOUT_THRESHOLD",
        description="Consecutive failures inside the failure window that lock an account",
    )
    lockout_duration_minutes: int = env_field(
        24 * 60,
        "LOCKOUT_DURATION_MINUTES",
        description="How long an account stays locked once the threshold is hit",
    )
    failure_window_minutes: int = env_field(
        60,
        "FAILURE_WINDOW_MINUTES",
        description="A failure older than this restarts the failure count at one",
    )
    revocation_prune_interval_seconds: int = env_field(
        3600,
        "REVOCATION_PRUNE_INTERVAL_SECONDS",
        description="Cadence of the background sweep that drops expired revocations",
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
        "token_validity_minutes",
        "lockout_threshold",
        "lockout_duration_minutes",
        "failure_window_minutes",
        "revocation_prune_interval_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("signing_secret")
    @classmethod
    def _strip_signing_secret(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            logger.warning("signing_secret_blank")
            return None
        return stripped


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
