from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from authengine.config import Settings
from authengine.logging import get_logger, hash_email
from authengine.service.artifacts import ArtifactIssuer
from authengine.service.credentials import CredentialValidator, describe_account_access
from authengine.service.email import EmailService
from authengine.service.errors import (
    AccountAccessError,
    AccountNotVerifiedError,
    AccountSuspendedError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredArtifactError,
    InvalidSessionError,
    InvalidTwoFactorCodeError,
    NotFoundError,
    ValidationError,
)
from authengine.service.lockout import LockoutTracker
from authengine.service.sessions import SessionManager, TokenPair
from authengine.service.two_factor import TwoFactorService, TwoFactorSetup, TwoFactorStatus
from authengine.storage.errors import ConstraintViolation
from authengine.storage.models import (
    Account,
    AccountStatus,
    ArtifactCheck,
    ArtifactPurpose,
    BackupCode,
    LockoutRecord,
    SecurityEvent,
    SecurityEventType,
    Session,
    TwoFactorEnrollment,
    VerificationArtifact,
    utcnow,
)

logger = get_logger(__name__)

SELF_SERVICE_ROLES = {"student", "employer", "university"}

ROLE_PERMISSIONS: Dict[str, Set[str]] = {
    "student": {"profile:read", "profile:write", "jobs:read", "applications:write"},
    "employer": {"profile:read", "profile:write", "jobs:read", "jobs:write", "applications:read"},
    "university": {"profile:read", "profile:write", "jobs:read", "students:read"},
    "admin": {
        "profile:read",
        "profile:write",
        "jobs:read",
        "jobs:write",
        "applications:read",
        "students:read",
        "users:read",
        "users:write",
        "security:audit",
    },
    "super_admin": {"*"},
}


class AuthStore(Protocol):
    # accounts
    def create_account(
        self,
        email: str,
        *,
        role: str = "student",
        status: AccountStatus = AccountStatus.INACTIVE,
        is_verified: bool = False,
        meta: Optional[Dict] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def mark_account_verified(self, account_id: str) -> Optional[Account]: ...

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]: ...

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]: ...

    def record_login(self, account_id: str, at: datetime) -> Optional[Account]: ...

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    # verification artifacts
    def upsert_artifact(self, artifact: VerificationArtifact) -> VerificationArtifact: ...

    def get_artifact(
        self, email: str, purpose: ArtifactPurpose
    ) -> Optional[VerificationArtifact]: ...

    def delete_artifact(self, email: str, purpose: ArtifactPurpose) -> bool: ...

    def check_artifact(
        self,
        email: str,
        purpose: ArtifactPurpose,
        value_hash: str,
        *,
        now: datetime,
        max_attempts: int,
    ) -> ArtifactCheck: ...

    # sessions
    def create_session(
        self,
        account_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_name: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> None: ...

    def set_session_meta(self, session_id: str, meta: Dict) -> None: ...

    def swap_refresh_token(
        self, session_id: str, expected_jti: str, meta: Dict
    ) -> bool: ...

    def deactivate_session(
        self, session_id: str, account_id: Optional[str] = None
    ) -> bool: ...

    def deactivate_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_sessions(self, account_id: str, *, active_only: bool = True) -> List[Session]: ...

    # two-factor
    def save_two_factor_enrollment(
        self, enrollment: TwoFactorEnrollment
    ) -> TwoFactorEnrollment: ...

    def get_two_factor_enrollment(self, account_id: str) -> Optional[TwoFactorEnrollment]: ...

    def confirm_two_factor_enrollment(self, account_id: str, at: datetime) -> bool: ...

    def delete_two_factor_enrollment(self, account_id: str) -> bool: ...

    def replace_backup_codes(self, account_id: str, code_hashes: List[str]) -> List[BackupCode]: ...

    def list_unused_backup_codes(self, account_id: str) -> List[BackupCode]: ...

    def mark_backup_code_used(self, code_id: str, at: datetime) -> bool: ...

    # lockout
    def record_failed_login(
        self,
        email: str,
        ip: Optional[str],
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
    ) -> LockoutRecord: ...

    def get_lockout(self, email: str) -> Optional[LockoutRecord]: ...

    def clear_lockout(self, email: str) -> None: ...

    # security events
    def record_security_event(
        self,
        account_id: str,
        event: SecurityEventType,
        meta: Optional[Dict] = None,
        *,
        at: Optional[datetime] = None,
    ) -> SecurityEvent: ...

    def list_security_events(
        self,
        account_id: str,
        *,
        since: Optional[datetime] = None,
        event: Optional[SecurityEventType] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]: ...


@dataclass
class AccountIdentity:
    """Who is behind a bearer token, as re-validated on this request."""

    account_id: str
    email: str
    role: str
    session_id: str
    is_verified: bool = True
    status: AccountStatus = AccountStatus.ACTIVE


@dataclass
class RegistrationResult:
    account: Account
    verification_expires_at: datetime


@dataclass
class LoginResult:
    account: Account
    requires_two_factor: bool = False
    tokens: Optional[TokenPair] = None
    session: Optional[Session] = None
    is_first_login: bool = False
    password_expires_in_days: Optional[int] = None


@dataclass
class SecurityAudit:
    recent_logins: List[SecurityEvent] = field(default_factory=list)
    failed_attempts: int = 0
    active_sessions: List[Session] = field(default_factory=list)
    two_factor_enabled: bool = False
    last_password_change: Optional[datetime] = None
    last_login: Optional[datetime] = None


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Registration, login and account-security use cases.

    The only place that decides policy: which checks run in which order,
    which failures count towards lockout and which events are recorded.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email = email or EmailService.from_settings(settings)
        self._clock = clock
        self.artifacts = ArtifactIssuer(store, settings, clock=clock)
        self.credentials = CredentialValidator(store)
        self.two_factor = TwoFactorService(store, settings, clock=clock)
        self.sessions = SessionManager(store, settings, clock=clock)
        self.lockout = LockoutTracker(store, settings, clock=clock)
        self._pending_notifications: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return self._clock()

    # notifications
    def _notify(self, send: Callable[..., bool], *args: Any) -> None:
        """Dispatch an email on a worker thread without waiting for it."""
        task = asyncio.create_task(asyncio.to_thread(send, *args))
        self._pending_notifications.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._pending_notifications.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "notification_failed", error_type=type(exc).__name__, error=str(exc)
            )
        elif task.result() is False:
            logger.warning("notification_not_delivered")

    async def drain_notifications(self) -> None:
        """Wait for every queued email to finish (shutdown and tests)."""
        while self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    def _alert(self, account: Account, alert_type: str, details: Optional[Dict[str, str]] = None) -> None:
        self._notify(self.email.send_security_alert, account.email, alert_type, details or {})

    def _record_event(
        self, account_id: str, event: SecurityEventType, meta: Optional[Dict] = None
    ) -> SecurityEvent:
        logger.info("security_event", account_id=account_id, security_event=event.value)
        return self.store.record_security_event(account_id, event, meta, at=self._now())

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    def _record_login_failure(
        self, email: str, ip: Optional[str], account: Optional[Account], reason: str
    ) -> LockoutRecord:
        record = self.lockout.record_failure(email, ip)
        if account is None:
            return record
        event = (
            SecurityEventType.TWO_FACTOR_FAILED
            if reason == "invalid_two_factor_code"
            else SecurityEventType.LOGIN_FAILED
        )
        self._record_event(
            account.id,
            event,
            {"reason": reason, "ip_address": ip, "failed_attempts": record.failed_attempts},
        )
        just_locked = (
            record.locked_until is not None
            and record.failed_attempts == self.settings.lockout_max_attempts
        )
        if just_locked:
            self._record_event(
                account.id,
                SecurityEventType.ACCOUNT_LOCKED,
                {"ip_address": ip, "locked_until": record.locked_until.isoformat()},
            )
            self._alert(
                account,
                "account_locked",
                {"locked_until": record.locked_until.isoformat()},
            )
        return record

    def _password_expires_in_days(self, account: Account, now: datetime) -> int:
        anchor = account.password_changed_at or account.created_at
        age_days = max(0, (now - anchor).days)
        return max(0, self.settings.password_max_age_days - age_days)

    # registration and verification
    async def register(
        self,
        email: str,
        password: str,
        *,
        role: str = "student",
        ip: Optional[str] = None,
    ) -> RegistrationResult:
        if not self.settings.allow_registration:
            raise ForbiddenError("registration is disabled")
        if role not in SELF_SERVICE_ROLES:
            raise ValidationError("role is not available for registration", detail={"role": role})
        email = normalize_email(email)
        if self.store.get_account_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        try:
            account = self.store.create_account(email, role=role)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        pwd_hash, algo = self.credentials.hash_password(password)
        self.store.save_password(account.id, pwd_hash, algo)
        account = self.store.get_account(account.id) or account
        token = self.artifacts.issue(email, ArtifactPurpose.EMAIL_VERIFICATION)
        self._notify(self.email.send_email_verification, email, token)
        self._record_event(account.id, SecurityEventType.REGISTRATION, {"ip_address": ip, "role": role})
        expires_at = self._now() + self.artifacts.default_ttl(ArtifactPurpose.EMAIL_VERIFICATION)
        return RegistrationResult(account=account, verification_expires_at=expires_at)

    async def verify_email(self, email: str, token: str) -> Account:
        email = normalize_email(email)
        if not self.artifacts.verify(email, ArtifactPurpose.EMAIL_VERIFICATION, token):
            raise InvalidOrExpiredArtifactError("invalid or expired verification token")
        account = self.store.get_account_by_email(email)
        if not account:
            raise InvalidOrExpiredArtifactError("invalid or expired verification token")
        account = self.store.mark_account_verified(account.id) or account
        self._record_event(account.id, SecurityEventType.EMAIL_VERIFIED)
        self._alert(account, "email_verified")
        return account

    async def resend_verification(self, email: str) -> None:
        email = normalize_email(email)
        account = self.store.get_account_by_email(email)
        if not account or account.is_verified:
            logger.info("resend_verification_skipped", email_hash=hash_email(email))
            return
        token = self.artifacts.issue(email, ArtifactPurpose.EMAIL_VERIFICATION)
        self._notify(self.email.send_email_verification, email, token)

    # login and tokens
    async def login(
        self,
        email: str,
        password: str,
        *,
        two_factor_code: Optional[str] = None,
        remember_me: bool = False,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_name: Optional[str] = None,
    ) -> LoginResult:
        email = normalize_email(email)
        self.lockout.check_locked(email)

        account = self.credentials.validate(email, password)
        if not account:
            known = self.store.get_account_by_email(email)
            self._record_login_failure(email, ip, known, "invalid_credentials")
            raise InvalidCredentialsError()

        self.credentials.check_eligibility(account)

        used_two_factor = False
        if self.two_factor.is_enabled(account.id):
            if not two_factor_code:
                code = self.artifacts.issue(email, ArtifactPurpose.TWO_FACTOR)
                self._notify(
                    self.email.send_two_factor_code, email, code, {"ip_address": ip or ""}
                )
                logger.info("two_factor_required", account_id=account.id)
                return LoginResult(account=account, requires_two_factor=True)
            passed = self.two_factor.challenge(account.id, two_factor_code) or self.artifacts.verify(
                email, ArtifactPurpose.TWO_FACTOR, two_factor_code
            )
            if not passed:
                self._record_login_failure(email, ip, account, "invalid_two_factor_code")
                raise InvalidTwoFactorCodeError()
            self.artifacts.discard(email, ArtifactPurpose.TWO_FACTOR)
            used_two_factor = True

        now = self._now()
        known_ips = {
            s.ip_address for s in self.store.list_sessions(account.id, active_only=False) if s.ip_address
        }
        is_first_login = account.last_login is None
        session = self.sessions.create_session(account.id, ip, user_agent, device_name)
        tokens = self.sessions.issue_tokens(account, session, remember_me)
        self.lockout.reset(email)
        account = self.store.record_login(account.id, now) or account
        new_ip = bool(ip) and not is_first_login and ip not in known_ips
        self._record_event(
            account.id,
            SecurityEventType.LOGIN_SUCCESS,
            {
                "session_id": session.id,
                "ip_address": ip,
                "user_agent": user_agent,
                "two_factor": used_two_factor,
                "new_ip": new_ip,
            },
        )
        if new_ip:
            self._alert(account, "new_login", {"ip_address": ip, "device": device_name or user_agent or "unknown"})
        return LoginResult(
            account=account,
            tokens=tokens,
            session=session,
            is_first_login=is_first_login,
            password_expires_in_days=self._password_expires_in_days(account, now),
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        account, session, tokens = self.sessions.refresh(refresh_token)
        try:
            self.credentials.check_eligibility(account)
        except AccountAccessError:
            self.sessions.revoke(account.id, session.id)
            raise
        self._record_event(account.id, SecurityEventType.TOKEN_REFRESHED, {"session_id": session.id})
        return tokens

    async def authenticate(self, bearer_token: str) -> AccountIdentity:
        """Validate a bearer token against its session and owning account."""
        _, session = self.sessions.resolve_access_token(bearer_token)
        account = self.store.get_account(session.account_id)
        if not account:
            raise InvalidSessionError()
        self.credentials.check_eligibility(account)
        self.sessions.touch(session)
        return AccountIdentity(
            account_id=account.id,
            email=account.email,
            role=account.role,
            session_id=session.id,
            is_verified=account.is_verified,
            status=account.status,
        )

    def has_capability(self, account_id: str, permission: str) -> bool:
        account = self.store.get_account(account_id)
        if not account:
            return False
        granted = ROLE_PERMISSIONS.get(account.role, set())
        return "*" in granted or permission in granted

    # sessions
    async def logout(self, identity: AccountIdentity) -> None:
        if self.sessions.revoke(identity.account_id, identity.session_id):
            self._record_event(
                identity.account_id,
                SecurityEventType.SESSION_REVOKED,
                {"session_id": identity.session_id, "reason": "logout"},
            )

    async def list_sessions(self, account_id: str) -> List[Session]:
        return self.sessions.list_active(account_id)

    async def revoke_session(self, account_id: str, session_id: str) -> None:
        if not self.sessions.revoke(account_id, session_id):
            raise NotFoundError("session not found")
        self._record_event(account_id, SecurityEventType.SESSION_REVOKED, {"session_id": session_id})

    async def revoke_all_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        count = self.sessions.revoke_all(account_id, except_session_id)
        self._record_event(
            account_id,
            SecurityEventType.ALL_SESSIONS_REVOKED,
            {"count": count, "kept_session_id": except_session_id},
        )
        return count

    # passwords
    async def forgot_password(self, email: str, *, ip: Optional[str] = None) -> None:
        """Email a reset code if the address is known. Silent either way."""
        email = normalize_email(email)
        account = self.store.get_account_by_email(email)
        if not account:
            logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return
        code = self.artifacts.issue(email, ArtifactPurpose.PASSWORD_RESET)
        self._notify(self.email.send_password_reset, email, code)
        self._record_event(account.id, SecurityEventType.PASSWORD_RESET_REQUESTED, {"ip_address": ip})

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        email = normalize_email(email)
        if not self.artifacts.verify(email, ArtifactPurpose.PASSWORD_RESET, code):
            raise InvalidOrExpiredArtifactError("invalid or expired reset code")
        account = self.store.get_account_by_email(email)
        if not account:
            raise InvalidOrExpiredArtifactError("invalid or expired reset code")
        pwd_hash, algo = self.credentials.hash_password(new_password)
        self.store.save_password(account.id, pwd_hash, algo)
        revoked = self.sessions.revoke_all(account.id)
        self.lockout.reset(email)
        self._record_event(
            account.id, SecurityEventType.PASSWORD_RESET_COMPLETED, {"sessions_revoked": revoked}
        )
        self._alert(account, "password_reset")

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[str] = None,
    ) -> None:
        account = self._require_account(account_id)
        if not self.credentials.verify_account_password(account.id, current_password):
            raise InvalidCredentialsError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError("new password must differ from the current password")
        pwd_hash, algo = self.credentials.hash_password(new_password)
        self.store.save_password(account.id, pwd_hash, algo)
        revoked = self.sessions.revoke_all(account.id, except_session_id=keep_session_id)
        self._record_event(account.id, SecurityEventType.PASSWORD_CHANGED, {"sessions_revoked": revoked})
        self._alert(account, "password_changed")

    # two-factor
    async def start_two_factor_enrollment(self, account_id: str) -> TwoFactorSetup:
        account = self._require_account(account_id)
        return self.two_factor.enroll(account.id, account.email)

    async def confirm_two_factor_enrollment(self, account_id: str, code: str) -> None:
        account = self._require_account(account_id)
        if not self.two_factor.confirm(account.id, code):
            raise InvalidTwoFactorCodeError()
        self._record_event(account.id, SecurityEventType.TWO_FACTOR_ENABLED)
        self._alert(account, "two_factor_enabled")

    async def disable_two_factor(self, account_id: str, code: str) -> None:
        account = self._require_account(account_id)
        try:
            self.two_factor.disable(account.id, code)
        except InvalidTwoFactorCodeError:
            self._record_event(account.id, SecurityEventType.TWO_FACTOR_FAILED, {"action": "disable"})
            raise
        self._record_event(account.id, SecurityEventType.TWO_FACTOR_DISABLED)
        self._alert(account, "two_factor_disabled")

    async def regenerate_backup_codes(self, account_id: str, code: str) -> List[str]:
        account = self._require_account(account_id)
        try:
            codes = self.two_factor.regenerate_backup_codes(account.id, code)
        except InvalidTwoFactorCodeError:
            self._record_event(
                account.id, SecurityEventType.TWO_FACTOR_FAILED, {"action": "regenerate_backup_codes"}
            )
            raise
        self._record_event(account.id, SecurityEventType.BACKUP_CODES_REGENERATED)
        self._alert(account, "backup_codes_regenerated")
        return codes

    async def two_factor_status(self, account_id: str) -> TwoFactorStatus:
        return self.two_factor.status(account_id)

    # account lifecycle
    async def deactivate_account(
        self, account_id: str, password: str, *, reason: Optional[str] = None
    ) -> None:
        account = self._require_account(account_id)
        if not self.credentials.verify_account_password(account.id, password):
            raise InvalidCredentialsError("password is incorrect")
        self.store.set_account_status(account.id, AccountStatus.INACTIVE)
        revoked = self.sessions.revoke_all(account.id)
        self._record_event(
            account.id,
            SecurityEventType.ACCOUNT_DEACTIVATED,
            {"reason": reason, "sessions_revoked": revoked},
        )
        self._alert(account, "account_deactivated")

    async def request_reactivation(self, email: str) -> None:
        email = normalize_email(email)
        account = self.store.get_account_by_email(email)
        if (
            not account
            or not account.is_verified
            or account.status != AccountStatus.INACTIVE
        ):
            logger.info("reactivation_request_skipped", email_hash=hash_email(email))
            return
        code = self.artifacts.issue(email, ArtifactPurpose.ACCOUNT_REACTIVATION)
        self._notify(self.email.send_reactivation_code, email, code)

    async def reactivate_account(self, email: str, code: str) -> Account:
        email = normalize_email(email)
        if not self.artifacts.verify(email, ArtifactPurpose.ACCOUNT_REACTIVATION, code):
            raise InvalidOrExpiredArtifactError("invalid or expired reactivation code")
        account = self.store.get_account_by_email(email)
        if not account:
            raise InvalidOrExpiredArtifactError("invalid or expired reactivation code")
        reason = describe_account_access(account)
        if not account.is_verified:
            raise AccountNotVerifiedError(reason)
        if account.status == AccountStatus.SUSPENDED:
            raise AccountSuspendedError(reason)
        account = self.store.set_account_status(account.id, AccountStatus.ACTIVE) or account
        self._record_event(account.id, SecurityEventType.ACCOUNT_REACTIVATED)
        self._alert(account, "account_reactivated")
        return account

    async def security_audit(self, account_id: str) -> SecurityAudit:
        account = self._require_account(account_id)
        since = self._now() - timedelta(days=self.settings.security_audit_days)
        recent_logins = self.store.list_security_events(
            account.id, since=since, event=SecurityEventType.LOGIN_SUCCESS
        )
        failed = self.store.list_security_events(
            account.id, since=since, event=SecurityEventType.LOGIN_FAILED
        )
        return SecurityAudit(
            recent_logins=recent_logins,
            failed_attempts=len(failed),
            active_sessions=self.sessions.list_active(account.id),
            two_factor_enabled=self.two_factor.is_enabled(account.id),
            last_password_change=account.password_changed_at,
            last_login=account.last_login,
        )
