from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from haroval.config import get_settings, reset_settings_cache
from haroval.logging import get_logger
from haroval.service.auth import AuthService
from haroval.service.oauth import GoogleOAuthClient
from haroval.service.passwords import CredentialVerifier
from haroval.service.token_service import EncryptedTokenService
from haroval.storage.cache import MemoryCache, RedisCache
from haroval.storage.memory import MemoryStore
from haroval.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the process-wide service instances for the FastAPI app.

    Secrets are loaded once here; a missing or malformed encryption key
    aborts construction.
    """

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=None if self.settings.test_mode else self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[MemoryCache, RedisCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    default_ttl_seconds=self.settings.user_cache_ttl_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if self.settings.redis_url and not (
                self.settings.test_mode or self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis, unset REDIS_URL, "
                    "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
            )
            self.cache = MemoryCache(self.settings.user_cache_ttl_seconds)

        self.tokens = EncryptedTokenService.from_settings(self.settings)
        self.verifier = CredentialVerifier()
        self.google = GoogleOAuthClient(
            self.settings.oauth_google_client_id,
            self.settings.oauth_google_client_secret,
            self.settings.google_redirect_uri,
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.verifier,
            self.settings,
            cache=self.cache,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            google_configured=self.google.configured,
            environment=self.settings.environment,
        )

    async def aclose(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from building two runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
