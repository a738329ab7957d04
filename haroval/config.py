from __future__ import annotations

import base64
import binascii
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from haroval.logging import get_logger

logger = get_logger(__name__)

ENCRYPTION_KEY_BYTES = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings for the auth/session core.

    The cipher key and signing secret are read once at startup and never
    rotated at runtime; rotating either one silently invalidates every
    outstanding token.
    """

    encryption_key: str | None = env_field(
        None,
        "ENCRYPTION_KEY",
        description="Base64 encoded 32-byte AES-256-GCM key for token envelopes",
        validate_default=True,
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("haroval", "JWT_ISSUER")
    jwt_audience: str = env_field("haroval-users", "JWT_AUDIENCE")
    access_token_ttl_days: int = env_field(7, "ACCESS_TOKEN_TTL_DAYS")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    min_password_length: int = env_field(6, "MIN_PASSWORD_LENGTH")
    environment: str = env_field(
        "development",
        "APP_ENV",
        description="Cookies are only marked secure when this is 'production'",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    # Persistence and cache
    database_url: str = env_field("postgresql://localhost:5432/haroval", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/haroval", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    user_cache_ttl_seconds: int = env_field(300, "USER_CACHE_TTL_SECONDS")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
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

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def google_redirect_uri(self) -> str:
        if self.oauth_redirect_uri:
            return self.oauth_redirect_uri
        return f"{self.app_base_url.rstrip('/')}/api/auth/google/callback"

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("encryption_key")
    @classmethod
    def _require_encryption_key(cls, value: str | None) -> str:
        if not value:
            raise ValueError("ENCRYPTION_KEY environment variable is required")
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("ENCRYPTION_KEY must be base64 encoded") from exc
        if len(raw) != ENCRYPTION_KEY_BYTES:
            raise ValueError(
                f"ENCRYPTION_KEY must decode to {ENCRYPTION_KEY_BYTES} bytes, got {len(raw)}"
            )
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if not self.jwt_secret:
            self.jwt_secret = _load_or_create_jwt_secret(Path(self.shared_fs_root))
        return self

    @field_validator("access_token_ttl_days", "refresh_token_ttl_days", "min_password_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value


def _load_or_create_jwt_secret(fs_root: Path) -> str:
    """Persist a generated signing secret so tokens remain valid across restarts."""

    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in a container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
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
