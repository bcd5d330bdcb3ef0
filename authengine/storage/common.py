"""Common storage utilities shared between memory and postgres implementations.

Both backends must apply identical artifact and lockout transitions, so the
decision logic lives here and each backend only supplies the atomicity.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from authengine.storage.models import (
    ArtifactCheck,
    ArtifactKind,
    LockoutRecord,
    VerificationArtifact,
)

# Store-side follow-up for a checked artifact
ARTIFACT_KEEP = "keep"
ARTIFACT_DELETE = "delete"
ARTIFACT_INCREMENT = "increment"
ARTIFACT_MARK_USED = "mark_used"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive timestamps (legacy rows, JSON state) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def decide_artifact_check(
    artifact: Optional[VerificationArtifact],
    value_hash: str,
    *,
    now: datetime,
    max_attempts: int,
) -> Tuple[ArtifactCheck, str]:
    """Classify a verification attempt and name the mutation the store must apply.

    Codes are retried until ``max_attempts`` mismatches and deleted on success;
    tokens are marked used on success and kept so a replay is detectable.
    """
    if artifact is None:
        return ArtifactCheck.MISSING, ARTIFACT_KEEP
    if ensure_utc(artifact.expires_at) < now:
        return ArtifactCheck.EXPIRED, ARTIFACT_DELETE
    if artifact.is_used:
        return ArtifactCheck.USED, ARTIFACT_KEEP
    if artifact.attempts >= max_attempts:
        return ArtifactCheck.EXHAUSTED, ARTIFACT_DELETE
    if not hmac.compare_digest(artifact.value_hash, value_hash):
        if artifact.attempts + 1 >= max_attempts:
            return ArtifactCheck.MISMATCH, ARTIFACT_DELETE
        return ArtifactCheck.MISMATCH, ARTIFACT_INCREMENT
    if artifact.kind == ArtifactKind.TOKEN:
        return ArtifactCheck.MATCH, ARTIFACT_MARK_USED
    return ArtifactCheck.MATCH, ARTIFACT_DELETE


def next_lockout_state(
    current: Optional[LockoutRecord],
    email: str,
    ip: Optional[str],
    *,
    now: datetime,
    max_attempts: int,
    lockout: timedelta,
) -> LockoutRecord:
    """Return the lockout record after one more failed login."""
    attempts = 0
    locked_until = None
    if current is not None:
        attempts = current.failed_attempts
        locked_until = ensure_utc(current.locked_until)
        if locked_until is not None and locked_until <= now:
            # Previous lock served; start counting afresh
            attempts = 0
            locked_until = None
    attempts += 1
    if attempts >= max_attempts and locked_until is None:
        locked_until = now + lockout
    return LockoutRecord(
        email=email,
        failed_attempts=attempts,
        last_failed_attempt=now,
        locked_until=locked_until,
        last_ip=ip,
    )


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: str) -> Fernet:
    """Fernet cipher used to encrypt TOTP secrets at rest."""
    if not key_material:
        raise RuntimeError("MFA encryption key material is required")
    return Fernet(derive_cipher_key(key_material))


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken as exc:
        raise RuntimeError("stored two-factor secret cannot be decrypted") from exc


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse metadata field from JSON string or dict.

    Args:
        raw_meta: Raw metadata value (string, dict, or None)

    Returns:
        Parsed dict or None
    """
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def generate_uuid() -> str:
    return str(uuid.uuid4())
