from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from novachat.logging import get_logger

logger = get_logger(__name__)

_SAMESITE_VALUES = {"lax", "strict", "none"}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/novachat", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/novachat", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks for Redis-backed state and runtime resets.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("novachat", "JWT_ISSUER")
    jwt_audience: str = env_field("novachat-clients", "JWT_AUDIENCE")
    credential_ttl_minutes: int = env_field(
        60 * 24 * 7,
        "CREDENTIAL_TTL_MINUTES",
        description="Absolute credential lifetime, independent of session supersession",
    )
    credential_cookie_name: str = env_field("jwt", "CREDENTIAL_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field(
        "lax",
        "COOKIE_SAMESITE",
        description="Use 'none' when the frontend is served from a different site",
    )
    revocation_force_close: bool = env_field(
        True,
        "REVOCATION_FORCE_CLOSE",
        description="Close superseded sockets server-side after the revocation event",
    )
    revocation_channel: str = env_field("auth:revocations", "REVOCATION_CHANNEL")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    client_url: str | None = env_field(None, "CLIENT_URL")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        """Map each field to the environment variable it is read from."""
        names = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra
            names[name] = extra.get("env", name.upper()) if isinstance(extra, dict) else name.upper()
        return names

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, then ``.env``; the process wins."""
        sources = [os.environ, dotenv_values(".env")]
        values: dict[str, Any] = {}
        for name, env_name in cls.env_names().items():
            for source in sources:
                if env_name in source:
                    values[name] = source[env_name]
                    break
        return cls(**values)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = (value or "lax").lower()
        if normalized not in _SAMESITE_VALUES:
            raise ValueError(f"cookie_samesite must be one of {sorted(_SAMESITE_VALUES)}")
        return normalized

    @field_validator("credential_ttl_minutes")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("credential_ttl_minutes must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # shared_fs_root is declared earlier, so it is already resolved here
        return _load_or_create_secret(Path(info.data.get("shared_fs_root") or "/srv/novachat"))


_MIN_SECRET_LENGTH = 32


def _load_or_create_secret(root: Path) -> str:
    """Return the signing secret kept under ``root``, creating it on first use.

    Reusing the stored secret keeps issued credentials valid across restarts.
    """
    secret_file = root / ".jwt_secret"
    try:
        root.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(root))

    # a symlink here could point the secret at an attacker-readable file
    if secret_file.is_file() and not secret_file.is_symlink():
        try:
            stored = secret_file.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_file))
        else:
            if len(stored) >= _MIN_SECRET_LENGTH:
                return stored

    secret = secrets.token_urlsafe(64)
    staging = root / f".jwt_secret.{secrets.token_hex(4)}.tmp"
    try:
        staging.touch(mode=0o600)
        staging.write_text(secret)
        os.replace(staging, secret_file)
    except OSError as exc:
        staging.unlink(missing_ok=True)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_file))
        raise RuntimeError(
            "cannot store a generated JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_file))
    return secret


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
