"""Per-endpoint request throttling.

Each ``(endpoint_class, identity_key)`` pair owns a window that opens on the
first request and lasts ``window_seconds``. Once the count passes the limit the
window is blocked and later requests are refused without being counted until
the window resets.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Optional, Protocol, Tuple

from authengine.logging import get_logger
from authengine.service.errors import RateLimitedError

if TYPE_CHECKING:
    from authengine.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


_MINUTE = 60
_HOUR = 60 * _MINUTE

RATE_LIMIT_CLASSES: Dict[str, RateLimitRule] = {
    "login": RateLimitRule(5, 15 * _MINUTE),
    "register": RateLimitRule(3, _HOUR),
    "forgot_password": RateLimitRule(3, _HOUR),
    "reset_password": RateLimitRule(5, 15 * _MINUTE),
    "verify_email": RateLimitRule(5, 15 * _MINUTE),
    "resend_verification": RateLimitRule(3, _HOUR),
    "two_factor_enable": RateLimitRule(3, _HOUR),
    "two_factor_verify_setup": RateLimitRule(10, 15 * _MINUTE),
    "two_factor_disable": RateLimitRule(3, _HOUR),
    "two_factor_verify": RateLimitRule(10, 15 * _MINUTE),
    "refresh": RateLimitRule(20, 15 * _MINUTE),
    "reactivation": RateLimitRule(3, _HOUR),
    "default": RateLimitRule(100, 15 * _MINUTE),
}


def resolve_identity_key(
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    ip: Optional[str] = None,
) -> str:
    """First available of authenticated user, submitted email, client IP."""
    client_ip = ip or "unknown"
    if user_id:
        return f"user:{user_id}:{client_ip}"
    if email:
        return f"email:{email.strip().lower()}:{client_ip}"
    return f"ip:{client_ip}"


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float
    blocked: bool = False


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int
    reset_in: int = 0


class RateLimitStore(Protocol):
    async def hit(
        self, endpoint_class: str, identity_key: str, rule: RateLimitRule, now: float
    ) -> RateLimitEntry: ...


class InMemoryRateLimitStore:
    """Process-local window counters.

    Lost on restart and not shared between workers; the email lockout is the
    durable control.
    """

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], RateLimitEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def hit(
        self, endpoint_class: str, identity_key: str, rule: RateLimitRule, now: float
    ) -> RateLimitEntry:
        key = (endpoint_class, identity_key)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_at <= now:
                entry = RateLimitEntry(count=0, reset_at=now + rule.window_seconds)
                self._entries[key] = entry
            if entry.blocked:
                return RateLimitEntry(entry.count, entry.reset_at, True)
            entry.count += 1
            if entry.count > rule.limit:
                entry.blocked = True
            return RateLimitEntry(entry.count, entry.reset_at, entry.blocked)

    async def sweep(self, now: Optional[float] = None) -> int:
        """Drop expired windows; returns how many were evicted."""
        now = time.time() if now is None else now
        async with self._lock:
            expired = [k for k, e in self._entries.items() if e.reset_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)


class RedisRateLimitStore:
    """Window counters shared across processes through a Lua script."""

    def __init__(self, cache: "RedisCache | SyncRedisCache") -> None:
        self.cache = cache

    async def hit(
        self, endpoint_class: str, identity_key: str, rule: RateLimitRule, now: float
    ) -> RateLimitEntry:
        count, reset_at, blocked = await self.cache.hit_window(
            endpoint_class, identity_key, rule.limit, rule.window_seconds, now=now
        )
        return RateLimitEntry(count=count, reset_at=reset_at, blocked=blocked)


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        *,
        rules: Optional[Dict[str, RateLimitRule]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.rules = dict(rules or RATE_LIMIT_CLASSES)
        self._clock = clock

    def rule_for(self, endpoint_class: str) -> RateLimitRule:
        return self.rules.get(endpoint_class) or self.rules["default"]

    def _decision(self, rule: RateLimitRule, entry: RateLimitEntry, now: float) -> RateLimitDecision:
        retry_after = max(1, math.ceil(entry.reset_at - now)) if entry.blocked else 0
        return RateLimitDecision(
            allowed=not entry.blocked,
            limit=rule.limit,
            remaining=max(0, rule.limit - entry.count),
            reset_at=entry.reset_at,
            retry_after=retry_after,
            reset_in=max(0, math.ceil(entry.reset_at - now)),
        )

    async def hit(self, endpoint_class: str, identity_key: str) -> RateLimitDecision:
        rule = self.rule_for(endpoint_class)
        now = self._clock()
        entry = await self.store.hit(endpoint_class, identity_key, rule, now)
        decision = self._decision(rule, entry, now)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                endpoint_class=endpoint_class,
                identity=identity_key.split(":", 1)[0],
                retry_after=decision.retry_after,
            )
        return decision

    async def check(self, endpoint_class: str, identity_key: str) -> RateLimitDecision:
        decision = await self.hit(endpoint_class, identity_key)
        if not decision.allowed:
            raise RateLimitedError(retry_after_seconds=decision.retry_after, limit=decision.limit)
        return decision

