from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for shared rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    # Atomic window step: open a new window when the old one expired, stop
    # counting once blocked, otherwise increment and block past the limit.
    _WINDOW_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'count', 'reset_at', 'blocked')
local count = tonumber(data[1])
local reset_at = tonumber(data[2])
local blocked = tonumber(data[3])

if count == nil or reset_at == nil or reset_at <= now_ms then
  count = 0
  reset_at = now_ms + window_ms
  blocked = 0
end

if blocked == 1 then
  return {count, reset_at, 1}
end

count = count + 1
if count > limit then
  blocked = 1
end

redis.call('HSET', key, 'count', count, 'reset_at', reset_at, 'blocked', blocked)
redis.call('PEXPIREAT', key, reset_at)
return {count, reset_at, blocked}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window = self.client.register_script(self._WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(endpoint_class: str, identity_key: str) -> str:
        """Hash the identity so emails and IPs never collide on delimiters."""

        digest = hashlib.sha256(identity_key.encode()).hexdigest()
        return f"rate:{endpoint_class}:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit_window(
        self,
        endpoint_class: str,
        identity_key: str,
        limit: int,
        window_seconds: int,
        *,
        now: Optional[float] = None,
    ) -> Tuple[int, float, bool]:
        """Count one request; return ``(count, reset_at_epoch_seconds, blocked)``."""

        now_ms = int((now if now is not None else time.time()) * 1000)
        count, reset_at_ms, blocked = await self._window(
            keys=[self._normalize_rate_key(endpoint_class, identity_key)],
            args=[now_ms, int(window_seconds * 1000), limit],
        )
        return int(count), int(reset_at_ms) / 1000.0, bool(int(blocked))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window = self._sync_client.register_script(RedisCache._WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def hit_window(
        self,
        endpoint_class: str,
        identity_key: str,
        limit: int,
        window_seconds: int,
        *,
        now: Optional[float] = None,
    ) -> Tuple[int, float, bool]:
        now_ms = int((now if now is not None else time.time()) * 1000)
        count, reset_at_ms, blocked = self._window(
            keys=[RedisCache._normalize_rate_key(endpoint_class, identity_key)],
            args=[now_ms, int(window_seconds * 1000), limit],
        )
        return int(count), int(reset_at_ms) / 1000.0, bool(int(blocked))

    async def close(self) -> None:
        self._sync_client.close()
