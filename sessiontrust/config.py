from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessiontrust.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session trust engine."""

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_key_id: str = env_field("primary", "JWT_KEY_ID")
    jwt_previous_keys: dict[str, str] = env_field(
        {},
        "JWT_PREVIOUS_KEYS",
        description="Verification-only keys as 'kid:secret,kid:secret'",
    )
    jwt_issuer: str = env_field("sessiontrust", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    session_ttl_hours: int = env_field(24 * 7, "SESSION_TTL_HOURS", gt=0)
    token_clock_skew_seconds: int = env_field(0, "TOKEN_CLOCK_SKEW_SECONDS", ge=0)
    mfa_issuer: str = env_field("SessionManagement", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    impossible_travel_speed_kmh: float = env_field(
        800.0, "IMPOSSIBLE_TRAVEL_SPEED_KMH", gt=0
    )
    impossible_travel_min_distance_km: float = env_field(
        100.0, "IMPOSSIBLE_TRAVEL_MIN_DISTANCE_KM", ge=0
    )
    event_max_attempts: int = env_field(3, "EVENT_MAX_ATTEMPTS", ge=1)
    event_retry_delay_seconds: float = env_field(0.05, "EVENT_RETRY_DELAY_SECONDS", ge=0)
    shared_fs_root: str | None = env_field(None, "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow generated secrets and runtime resets for test runs",
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

    @field_validator("jwt_previous_keys", mode="before")
    @classmethod
    def _parse_previous_keys(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            parsed: dict[str, str] = {}
            for item in value.split(","):
                item = item.strip()
                if not item:
                    continue
                kid, sep, secret = item.partition(":")
                if not sep or not kid or not secret:
                    raise ValueError("JWT_PREVIOUS_KEYS entries must look like 'kid:secret'")
                parsed[kid.strip()] = secret.strip()
            return parsed
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if self.jwt_key_id in self.jwt_previous_keys:
                raise ValueError("JWT_KEY_ID must not also appear in JWT_PREVIOUS_KEYS")
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside of TEST_MODE")
        # Tokens signed with this secret do not survive a restart
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_generated", reason="test_mode")
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
