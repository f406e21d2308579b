from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/collabauth", "DATABASE_URL"
    )
    database_timeout_seconds: float = env_field(
        5.0,
        "DATABASE_TIMEOUT_SECONDS",
        description="Pool checkout timeout; exceeding it surfaces StoreUnavailable",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/collabauth", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables runtime resets between tests",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Navigation
    app_base_path: str = env_field("/", "APP_BASE_PATH")
    app_origin: str | None = env_field(
        None,
        "APP_ORIGIN",
        description="scheme://host[:port] of the application; absolute URLs on it are accepted",
    )
    login_paths: list[str] = env_field(
        ["/login", "/login.php", "/index.php"], "LOGIN_PATHS"
    )
    admin_landing_path: str = env_field("/admin/index", "ADMIN_LANDING_PATH")
    default_landing_path: str = env_field("/home", "DEFAULT_LANDING_PATH")
    redirect_loop_threshold: int = env_field(3, "REDIRECT_LOOP_THRESHOLD")

    # Sessions
    session_cookie_name: str = env_field("COLLAB_SESSID", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    session_idle_minutes: int = env_field(120, "SESSION_IDLE_MINUTES")
    session_renewal_minutes: int = env_field(
        60,
        "SESSION_RENEWAL_MINUTES",
        description="Session ids older than this are regenerated on the next authenticated request",
    )
    csrf_token_ttl_seconds: int = env_field(3600, "CSRF_TOKEN_TTL_SECONDS")

    # Credentials
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    login_rate_limit: int = env_field(
        10, "LOGIN_RATE_LIMIT", description="Login attempts allowed per client IP per window"
    )
    login_rate_window_seconds: int = env_field(900, "LOGIN_RATE_WINDOW_SECONDS")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("login_paths", "cors_allow_origins", mode="before")
    @classmethod
    def _split_lists(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("app_base_path")
    @classmethod
    def _normalize_base_path(cls, value: str) -> str:
        value = (value or "/").strip()
        if not value.startswith("/"):
            value = "/" + value
        if len(value) > 1:
            value = value.rstrip("/")
        return value

    @field_validator("app_origin", "redis_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("app_origin")
    @classmethod
    def _normalize_origin(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().rstrip("/").lower()

    @field_validator(
        "session_idle_minutes",
        "session_renewal_minutes",
        "max_login_attempts",
        "lockout_minutes",
        "redirect_loop_threshold",
        "csrf_token_ttl_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
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
