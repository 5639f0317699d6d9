from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from gatehouse.config import get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthService
from gatehouse.service.authz import Authorizer
from gatehouse.service.directory import DirectoryService
from gatehouse.service.passwords import PasswordHasher
from gatehouse.service.sessions import SessionRegistry
from gatehouse.service.tokens import TokenIssuer
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        # signing secret is read here once and handed to the issuer
        self.tokens = TokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl_seconds=self.settings.access_token_ttl_minutes * 60,
            refresh_token_bytes=self.settings.refresh_token_bytes,
            leeway_seconds=self.settings.token_clock_skew_seconds,
        )
        self.sessions = SessionRegistry(
            self.store, max_sessions_per_user=self.settings.max_sessions_per_user
        )
        self.authz = Authorizer(self.store)
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.sessions,
            self.settings,
            hasher=PasswordHasher(),
            permissions=self.authz,
        )
        self.directory = DirectoryService(self.store)
        logger.info(
            "runtime_init_complete",
            refresh_policy=self.settings.refresh_policy.value,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close:
            close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once built.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
