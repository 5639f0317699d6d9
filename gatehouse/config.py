from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class RefreshPolicy(str, Enum):
    """What happens to a refresh token when it is used to renew an access token.

    - REUSE: the refresh token stays live and can be presented again
    - ROTATE: the presented token is revoked and a fresh one is returned
    """

    REUSE = "reuse"
    ROTATE = "rotate"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings, read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/gatehouse", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Memory store keeps no snapshot on disk and the runtime may be reset",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("gatehouse", "JWT_ISSUER")
    jwt_audience: str = env_field("gatehouse-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of signed access tokens",
        gt=0,
    )
    token_clock_skew_seconds: int = env_field(
        0,
        "TOKEN_CLOCK_SKEW_SECONDS",
        description="Leeway applied when checking access token expiry",
        ge=0,
    )
    refresh_token_bytes: int = env_field(
        48,
        "REFRESH_TOKEN_BYTES",
        description="Entropy of opaque refresh tokens, in bytes",
        ge=32,
    )
    refresh_policy: RefreshPolicy = env_field(
        RefreshPolicy.REUSE,
        "REFRESH_POLICY",
        description="reuse: keep the refresh token on renewal; rotate: replace it",
    )
    max_sessions_per_user: int = env_field(
        0,
        "MAX_SESSIONS_PER_USER",
        description="Cap on live refresh tokens per user; 0 disables the cap",
        ge=0,
    )
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("refresh_policy")
    @classmethod
    def _validate_refresh_policy(cls, value: RefreshPolicy) -> RefreshPolicy:
        return RefreshPolicy(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/gatehouse"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
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
        tmp_path = None
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
        logger.info("jwt_secret_generated", path=str(secret_path))
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
