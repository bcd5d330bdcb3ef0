"""TOTP enrollment and verification with backup-code fallback.

Per-account state moves NONE -> PENDING -> CONFIRMED -> NONE. PENDING
enrollments may be overwritten by a new ``enroll`` call; CONFIRMED ones only
go away through ``disable`` with a valid proof.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List
from urllib.parse import quote

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authengine.config import Settings
from authengine.logging import get_logger
from authengine.service.errors import ConflictError, InvalidTwoFactorCodeError
from authengine.storage.models import TwoFactorEnrollment, utcnow

if TYPE_CHECKING:
    from authengine.service.auth import AuthStore

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20
BACKUP_CODE_BYTES = 4


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_uri: str
    backup_codes: List[str]


@dataclass
class TwoFactorStatus:
    enabled: bool
    confirmed: bool
    backup_codes_remaining: int


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str, code: str, *, at: float, window: int, interval: int = TOTP_INTERVAL
) -> bool:
    code = (code or "").strip().replace(" ", "")
    # isdigit alone admits non-ASCII digits such as Arabic-Indic numerals
    if len(code) != TOTP_DIGITS or not (code.isascii() and code.isdigit()):
        return False
    matched = False
    # Walk the whole window so the timing does not reveal which step matched
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, at + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            matched = True
    return matched


def normalize_backup_code(code: str) -> str:
    return (code or "").replace("-", "").replace(" ", "").strip().upper()


class TwoFactorService:
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
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _generate_secret(self) -> str:
        return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode().rstrip("=")

    def _otpauth_uri(self, email: str, secret: str) -> str:
        issuer = self.settings.totp_issuer
        label = quote(f"{issuer}:{email}")
        return (
            f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
            f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={TOTP_INTERVAL}"
        )

    def _new_backup_codes(self, account_id: str) -> List[str]:
        codes = [
            secrets.token_hex(BACKUP_CODE_BYTES).upper()
            for _ in range(self.settings.backup_code_count)
        ]
        self.store.replace_backup_codes(
            account_id, [self._pwd_hasher.hash(code) for code in codes]
        )
        return codes

    def _verify_totp_for(self, enrollment: TwoFactorEnrollment, proof: str) -> bool:
        return verify_totp(
            enrollment.secret,
            proof,
            at=self._clock().timestamp(),
            window=self.settings.totp_window,
        )

    def _consume_backup_code(self, account_id: str, proof: str) -> bool:
        candidate = normalize_backup_code(proof)
        if not candidate:
            return False
        for code in self.store.list_unused_backup_codes(account_id):
            try:
                self._pwd_hasher.verify(code.code_hash, candidate)
            except (InvalidHash, VerifyMismatchError, VerificationError):
                continue
            # A concurrent request may have consumed it first
            if self.store.mark_backup_code_used(code.id, self._clock()):
                logger.info("backup_code_consumed", account_id=account_id)
                return True
            return False
        return False

    def enroll(self, account_id: str, email: str) -> TwoFactorSetup:
        existing = self.store.get_two_factor_enrollment(account_id)
        if existing and existing.is_confirmed:
            raise ConflictError("two-factor authentication is already enabled")
        secret = self._generate_secret()
        self.store.save_two_factor_enrollment(
            TwoFactorEnrollment(
                account_id=account_id,
                secret=secret,
                is_confirmed=False,
                created_at=self._clock(),
            )
        )
        backup_codes = self._new_backup_codes(account_id)
        logger.info("two_factor_enrollment_started", account_id=account_id)
        return TwoFactorSetup(
            secret=secret,
            otpauth_uri=self._otpauth_uri(email, secret),
            backup_codes=backup_codes,
        )

    def confirm(self, account_id: str, proof: str) -> bool:
        enrollment = self.store.get_two_factor_enrollment(account_id)
        if not enrollment or enrollment.is_confirmed:
            return False
        if not self._verify_totp_for(enrollment, proof):
            logger.info("two_factor_confirm_rejected", account_id=account_id)
            return False
        return self.store.confirm_two_factor_enrollment(account_id, self._clock())

    def challenge(self, account_id: str, proof: str) -> bool:
        """Accept a current TOTP code or an unused backup code."""
        enrollment = self.store.get_two_factor_enrollment(account_id)
        if not enrollment or not enrollment.is_confirmed:
            return False
        if self._verify_totp_for(enrollment, proof):
            return True
        return self._consume_backup_code(account_id, proof)

    def disable(self, account_id: str, proof: str) -> None:
        if not self.challenge(account_id, proof):
            raise InvalidTwoFactorCodeError()
        self.store.delete_two_factor_enrollment(account_id)
        logger.info("two_factor_disabled", account_id=account_id)

    def regenerate_backup_codes(self, account_id: str, proof: str) -> List[str]:
        if not self.challenge(account_id, proof):
            raise InvalidTwoFactorCodeError()
        return self._new_backup_codes(account_id)

    def is_enabled(self, account_id: str) -> bool:
        enrollment = self.store.get_two_factor_enrollment(account_id)
        return bool(enrollment and enrollment.is_confirmed)

    def status(self, account_id: str) -> TwoFactorStatus:
        enrollment = self.store.get_two_factor_enrollment(account_id)
        confirmed = bool(enrollment and enrollment.is_confirmed)
        remaining = len(self.store.list_unused_backup_codes(account_id)) if enrollment else 0
        # enabled covers a pending enrollment; only confirmed gates login
        return TwoFactorStatus(
            enabled=enrollment is not None,
            confirmed=confirmed,
            backup_codes_remaining=remaining,
        )
