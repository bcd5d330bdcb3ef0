"""Short-lived verification codes and tokens.

Only a SHA-256 digest of each artifact is persisted. Codes are meant to be
typed by a person and may be retried until the attempt ceiling; tokens travel
in links and are kept after use so a replay can be recognised.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from authengine.config import Settings
from authengine.logging import get_logger, hash_email
from authengine.storage.models import (
    ArtifactCheck,
    ArtifactKind,
    ArtifactPurpose,
    VerificationArtifact,
    utcnow,
)

if TYPE_CHECKING:
    from authengine.service.auth import AuthStore

logger = get_logger(__name__)

CODE_DIGITS = 6
TOKEN_BYTES = 32

_DEFAULT_KIND = {
    ArtifactPurpose.EMAIL_VERIFICATION: ArtifactKind.TOKEN,
    ArtifactPurpose.PASSWORD_RESET: ArtifactKind.CODE,
    ArtifactPurpose.TWO_FACTOR: ArtifactKind.CODE,
    ArtifactPurpose.ACCOUNT_REACTIVATION: ArtifactKind.CODE,
}


def hash_artifact(value: str) -> str:
    return hashlib.sha256(value.strip().encode()).hexdigest()


def generate_code(digits: int = CODE_DIGITS) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(digits))


def generate_token(nbytes: int = TOKEN_BYTES) -> str:
    return secrets.token_hex(nbytes)


class ArtifactIssuer:
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

    def default_ttl(self, purpose: ArtifactPurpose) -> timedelta:
        minutes = {
            ArtifactPurpose.EMAIL_VERIFICATION: self.settings.email_verification_ttl_minutes,
            ArtifactPurpose.PASSWORD_RESET: self.settings.password_reset_ttl_minutes,
            ArtifactPurpose.TWO_FACTOR: self.settings.two_factor_code_ttl_minutes,
            ArtifactPurpose.ACCOUNT_REACTIVATION: self.settings.reactivation_ttl_minutes,
        }[purpose]
        return timedelta(minutes=minutes)

    def issue(
        self,
        email: str,
        purpose: ArtifactPurpose,
        kind: Optional[ArtifactKind] = None,
        ttl: Optional[timedelta] = None,
    ) -> str:
        """Create a fresh artifact for ``(email, purpose)`` and return its raw value.

        Any artifact previously issued for the same pair stops working.
        """
        kind = kind or _DEFAULT_KIND[purpose]
        ttl = ttl or self.default_ttl(purpose)
        value = generate_code() if kind == ArtifactKind.CODE else generate_token()
        now = self._clock()
        self.store.upsert_artifact(
            VerificationArtifact(
                email=email,
                purpose=purpose,
                kind=kind,
                value_hash=hash_artifact(value),
                expires_at=now + ttl,
                attempts=0,
                is_used=False,
                created_at=now,
            )
        )
        logger.info(
            "artifact_issued",
            email_hash=hash_email(email),
            purpose=purpose.value,
            kind=kind.value,
            ttl_seconds=int(ttl.total_seconds()),
        )
        return value

    def check(self, email: str, purpose: ArtifactPurpose, presented: str) -> ArtifactCheck:
        outcome = self.store.check_artifact(
            email,
            purpose,
            hash_artifact(presented or ""),
            now=self._clock(),
            max_attempts=self.settings.artifact_max_attempts,
        )
        if outcome != ArtifactCheck.MATCH:
            logger.info(
                "artifact_rejected",
                email_hash=hash_email(email),
                purpose=purpose.value,
                outcome=outcome.value,
            )
        return outcome

    def verify(self, email: str, purpose: ArtifactPurpose, presented: str) -> bool:
        """Return True only for a live, unused, matching artifact. Never raises."""
        return self.check(email, purpose, presented) == ArtifactCheck.MATCH

    def discard(self, email: str, purpose: ArtifactPurpose) -> None:
        self.store.delete_artifact(email, purpose)
