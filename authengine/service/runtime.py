from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authengine.config import RateLimitBackend, get_settings, reset_settings_cache
from authengine.logging import get_logger
from authengine.service.auth import AuthService
from authengine.service.email import EmailService
from authengine.service.rate_limit import (
    InMemoryRateLimitStore,
    RateLimiter,
    RedisRateLimitStore,
)
from authengine.storage.memory import MemoryStore
from authengine.storage.postgres import PostgresStore
from authengine.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
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
        mfa_key = self.settings.mfa_encryption_key or self.settings.jwt_secret

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root, mfa_encryption_key=mfa_key
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=mfa_key,
                )
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

        self.cache: RedisCache | SyncRedisCache | None = None
        if self.settings.rate_limit_backend == RateLimitBackend.REDIS:
            if not self.settings.redis_url:
                raise RuntimeError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
            # Use sync Redis client in test mode to avoid event loop issues
            cache = (
                SyncRedisCache(self.settings.redis_url)
                if self.settings.test_mode
                else RedisCache(self.settings.redis_url)
            )
            try:
                cache.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise
            self.cache = cache
            self.rate_limit_store = RedisRateLimitStore(cache)
        else:
            self.rate_limit_store = InMemoryRateLimitStore()
        self.rate_limiter = RateLimiter(self.rate_limit_store)

        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(self.store, self.settings, email=self.email)

        logger.info(
            "runtime_initialized",
            rate_limit_backend=self.settings.rate_limit_backend.value,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        await self.auth.drain_notifications()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
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
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        runtime = Runtime()
        return runtime
