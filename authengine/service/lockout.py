from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from authengine.config import Settings
from authengine.logging import get_logger, hash_email
from authengine.service.errors import AccountLockedError
from authengine.storage.common import ensure_utc
from authengine.storage.models import LockoutRecord, utcnow

if TYPE_CHECKING:
    from authengine.service.auth import AuthStore

logger = get_logger(__name__)


class LockoutTracker:
    """Failed-login counter keyed by email address.

    Independent of the request rate limiter: this one survives restarts and
    follows the targeted address across client IPs.
    """

    def __init__(
        self,
        store: "AuthStore",
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_minutes)

    def record_failure(self, email: str, ip: Optional[str] = None) -> LockoutRecord:
        record = self.store.record_failed_login(
            email,
            ip,
            now=self._clock(),
            max_attempts=self.settings.lockout_max_attempts,
            lockout=self.lockout_duration,
        )
        logger.info(
            "login_failure_recorded",
            email_hash=hash_email(email),
            failed_attempts=record.failed_attempts,
            locked=record.locked_until is not None,
        )
        return record

    def remaining_lock_seconds(self, email: str) -> int:
        record = self.store.get_lockout(email)
        locked_until = ensure_utc(record.locked_until) if record else None
        if locked_until is None:
            return 0
        remaining = (locked_until - self._clock()).total_seconds()
        if remaining <= 0:
            return 0
        return max(1, math.ceil(remaining))

    def check_locked(self, email: str) -> None:
        retry_after = self.remaining_lock_seconds(email)
        if retry_after:
            logger.warning(
                "account_locked", email_hash=hash_email(email), retry_after=retry_after
            )
            raise AccountLockedError(retry_after)

    def reset(self, email: str) -> None:
        self.store.clear_lockout(email)

    def failed_attempts(self, email: str) -> int:
        record = self.store.get_lockout(email)
        return record.failed_attempts if record else 0
