from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from mitbot.storage.common import DEFAULT_CONVERSATION_TTL_SECONDS


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment, then ``.env``."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field(
        "", "REDIS_KEY_PREFIX", description="Prefix prepended to every Redis key"
    )
    conversation_ttl_seconds: int = env_field(
        DEFAULT_CONVERSATION_TTL_SECONDS,
        "CONVERSATION_TTL_SECONDS",
        description="How long an idle conversation is kept",
    )
    provider_url: str = env_field("http://localhost:8080", "MIT_URL")
    provider_timeout_seconds: float = env_field(5.0, "MIT_TIMEOUT_SECONDS")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_root: str | None = env_field(
        None,
        "MEMORY_STORE_ROOT",
        description="Directory where the in-memory store snapshots its state",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the in-memory store and skip the Redis connectivity check",
    )
    max_concurrent_requests: int = env_field(30, "MAX_CONCURRENT_REQUESTS")
    request_timeout_seconds: float = env_field(
        30.0, "REQUEST_TIMEOUT_SECONDS", description="Deadline for handling one request"
    )
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

    @field_validator("provider_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("max_concurrent_requests", "conversation_ttl_seconds")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
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
