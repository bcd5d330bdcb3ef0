from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authengine.logging import get_logger, hash_email
from authengine.service.errors import (
    AccessReason,
    AccountAccessError,
    AccountInactiveError,
    AccountNotVerifiedError,
    AccountSuspendedError,
)
from authengine.storage.models import Account, AccountStatus

if TYPE_CHECKING:
    from authengine.service.auth import AuthStore

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


def describe_account_access(account: Account) -> Optional[AccessReason]:
    """Explain why ``account`` may not sign in, or return None when it may.

    Verification is checked before status so a fresh registration is told to
    confirm its email rather than that it is inactive.
    """
    if not account.is_verified:
        return AccessReason(
            code="account_not_verified",
            message="Email address has not been verified.",
            action="Check your inbox for the verification link or request a new one.",
        )
    status = AccountStatus(account.status)
    if status == AccountStatus.ACTIVE:
        return None
    elif status == AccountStatus.INACTIVE:
        return AccessReason(
            code="account_inactive",
            message="Account is deactivated.",
            action="Request a reactivation code to restore access.",
        )
    elif status == AccountStatus.SUSPENDED:
        return AccessReason(
            code="account_suspended",
            message="Account is suspended.",
            action="Contact support to review the suspension.",
        )
    raise ValueError(f"unhandled account status: {status!r}")


_REASON_ERRORS = {
    "account_not_verified": AccountNotVerifiedError,
    "account_inactive": AccountInactiveError,
    "account_suspended": AccountSuspendedError,
}


class CredentialValidator:
    """Password hashing and account eligibility checks."""

    def __init__(self, store: "AuthStore") -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("authengine-timing-equaliser")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_account_password(self, account_id: str, password: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            logger.warning("password_record_missing", account_id=account_id)
            self._verify_hash(self._dummy_hash, password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", account_id=account_id, algo=algo)
            return False
        return self._verify_hash(stored_hash, password)

    def validate(self, email: str, password: str) -> Optional[Account]:
        """Return the account for a correct email/password pair, else None."""
        account = self.store.get_account_by_email(email)
        if not account:
            self._verify_hash(self._dummy_hash, password)
            logger.info("credentials_rejected", email_hash=hash_email(email))
            return None
        if not self.verify_account_password(account.id, password):
            logger.info("credentials_rejected", email_hash=hash_email(email))
            return None
        return account

    def check_eligibility(self, account: Account) -> None:
        reason = describe_account_access(account)
        if reason is None:
            return
        error_cls = _REASON_ERRORS.get(reason.code, AccountAccessError)
        raise error_cls(reason)
