"""Scenario tests for the auth orchestrator.

Tests for:
- Registration and email verification
- Login with lockout and two-factor
- Password reset and change
- Deactivation and reactivation
- Bearer authentication and capabilities
"""

import pytest

from authengine.service.auth import AuthService
from authengine.service.errors import (
    AccountInactiveError,
    AccountLockedError,
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
from authengine.service.two_factor import generate_totp
from authengine.storage.errors import ConstraintViolation
from authengine.storage.models import AccountStatus, ArtifactPurpose, SecurityEventType

PASSWORD = "CorrectHorse42"
NEW_PASSWORD = "BatteryStaple77"
EMAIL = "active@example.com"


def _events(store, account_id, event):
    return store.list_security_events(account_id, event=event)


async def _enable_two_factor(auth_service, account, clock):
    setup = await auth_service.start_two_factor_enrollment(account.id)
    await auth_service.confirm_two_factor_enrollment(
        account.id, generate_totp(setup.secret, clock().timestamp())
    )
    return setup


class TestRegistration:
    async def test_register_verify_login(self, auth_service, fake_email, memory_store):
        """New accounts start unverified and inactive; the emailed token activates them."""
        result = await auth_service.register("New@Example.com", PASSWORD, ip="1.1.1.1")
        account = result.account
        assert account.email == "new@example.com"
        assert account.is_verified is False
        assert account.status == AccountStatus.INACTIVE
        assert result.verification_expires_at > account.created_at

        with pytest.raises(AccountNotVerifiedError):
            await auth_service.login("new@example.com", PASSWORD)

        await auth_service.drain_notifications()
        (token,) = fake_email.last("verification")
        with pytest.raises(InvalidOrExpiredArtifactError):
            await auth_service.verify_email("new@example.com", "not-the-emailed-token")
        assert memory_store.get_account(account.id).is_verified is False

        verified = await auth_service.verify_email("new@example.com", token)
        assert verified.is_verified is True
        assert verified.status == AccountStatus.ACTIVE

        login = await auth_service.login("new@example.com", PASSWORD, ip="1.1.1.1")
        assert login.tokens is not None
        assert login.is_first_login is True
        assert login.password_expires_in_days == 90

        second = await auth_service.login("new@example.com", PASSWORD, ip="1.1.1.1")
        assert second.is_first_login is False

        assert _events(memory_store, account.id, SecurityEventType.REGISTRATION)
        assert _events(memory_store, account.id, SecurityEventType.EMAIL_VERIFIED)
        await auth_service.drain_notifications()
        assert "email_verified" in fake_email.alerts()

    async def test_verification_token_single_use(self, auth_service, fake_email):
        await auth_service.register("new@example.com", PASSWORD)
        await auth_service.drain_notifications()
        (token,) = fake_email.last("verification")
        await auth_service.verify_email("new@example.com", token)
        with pytest.raises(InvalidOrExpiredArtifactError):
            await auth_service.verify_email("new@example.com", token)

    async def test_expired_verification_token(self, auth_service, fake_email, clock):
        await auth_service.register("new@example.com", PASSWORD)
        await auth_service.drain_notifications()
        (token,) = fake_email.last("verification")
        clock.advance(hours=24, seconds=1)
        with pytest.raises(InvalidOrExpiredArtifactError):
            await auth_service.verify_email("new@example.com", token)

    async def test_duplicate_email(self, auth_service, active_account):
        with pytest.raises(ConflictError):
            await auth_service.register(EMAIL.upper(), PASSWORD)

    async def test_privileged_role_refused(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("boss@example.com", PASSWORD, role="admin")

    async def test_registration_disabled(self, memory_store, settings, fake_email, clock):
        closed = AuthService(
            memory_store,
            settings.model_copy(update={"allow_registration": False}),
            email=fake_email,
            clock=clock,
        )
        with pytest.raises(ForbiddenError):
            await closed.register("new@example.com", PASSWORD)

    async def test_resend_is_silent_for_unknown_and_verified(self, auth_service, fake_email, active_account):
        await auth_service.resend_verification("ghost@example.com")
        await auth_service.resend_verification(EMAIL)
        await auth_service.drain_notifications()
        assert fake_email.sent == []

    async def test_resend_replaces_token(self, auth_service, fake_email):
        await auth_service.register("new@example.com", PASSWORD)
        await auth_service.drain_notifications()
        (first,) = fake_email.last("verification")
        await auth_service.resend_verification("new@example.com")
        await auth_service.drain_notifications()
        (second,) = fake_email.last("verification")
        assert first != second
        with pytest.raises(InvalidOrExpiredArtifactError):
            await auth_service.verify_email("new@example.com", first)
        await auth_service.verify_email("new@example.com", second)


class TestLogin:
    async def test_unknown_email_and_wrong_password_look_alike(self, auth_service, active_account):
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("ghost@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login(EMAIL, "WrongHorse42")
        assert unknown.value.message == wrong.value.message

    async def test_lockout_after_five_failures(self, auth_service, active_account, memory_store, fake_email, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login(EMAIL, "WrongHorse42", ip="6.6.6.6")

        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login(EMAIL, PASSWORD)
        assert exc_info.value.retry_after_seconds == 15 * 60

        assert len(_events(memory_store, active_account.id, SecurityEventType.LOGIN_FAILED)) == 5
        assert len(_events(memory_store, active_account.id, SecurityEventType.ACCOUNT_LOCKED)) == 1
        await auth_service.drain_notifications()
        assert "account_locked" in fake_email.alerts()

        clock.advance(minutes=15)
        result = await auth_service.login(EMAIL, PASSWORD)
        assert result.tokens is not None
        assert auth_service.lockout.failed_attempts(EMAIL) == 0

    async def test_success_resets_failure_count(self, auth_service, active_account):
        """Failures separated by a successful login never add up to a lock."""
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login(EMAIL, "WrongHorse42")
        assert (await auth_service.login(EMAIL, PASSWORD)).tokens is not None
        assert auth_service.lockout.failed_attempts(EMAIL) == 0

        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login(EMAIL, "WrongHorse42")
        assert auth_service.lockout.failed_attempts(EMAIL) == 4
        assert (await auth_service.login(EMAIL, PASSWORD)).tokens is not None

    async def test_unknown_email_can_be_locked(self, auth_service):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("ghost@example.com", PASSWORD)
        with pytest.raises(AccountLockedError):
            await auth_service.login("ghost@example.com", PASSWORD)

    async def test_inactive_and_suspended_accounts(self, auth_service, active_account, memory_store):
        memory_store.set_account_status(active_account.id, AccountStatus.SUSPENDED)
        with pytest.raises(AccountSuspendedError):
            await auth_service.login(EMAIL, PASSWORD)
        memory_store.set_account_status(active_account.id, AccountStatus.INACTIVE)
        with pytest.raises(AccountInactiveError) as exc_info:
            await auth_service.login(EMAIL, PASSWORD)
        assert exc_info.value.detail["reason"]["code"] == "account_inactive"

    async def test_new_ip_alert(self, auth_service, active_account, fake_email):
        await auth_service.login(EMAIL, PASSWORD, ip="1.1.1.1")
        await auth_service.login(EMAIL, PASSWORD, ip="1.1.1.1")
        await auth_service.drain_notifications()
        assert "new_login" not in fake_email.alerts()
        await auth_service.login(EMAIL, PASSWORD, ip="2.2.2.2")
        await auth_service.drain_notifications()
        assert "new_login" in fake_email.alerts()

    async def test_password_age_counts_down(self, auth_service, active_account, clock):
        clock.advance(days=30)
        result = await auth_service.login(EMAIL, PASSWORD)
        assert result.password_expires_in_days in (60, 61)
        clock.advance(days=365)
        result = await auth_service.login(EMAIL, PASSWORD)
        assert result.password_expires_in_days == 0


class TestTwoFactorLogin:
    async def test_two_step_login(self, auth_service, active_account, fake_email, memory_store, clock):
        setup = await _enable_two_factor(auth_service, active_account, clock)

        first = await auth_service.login(EMAIL, PASSWORD, ip="1.1.1.1")
        assert first.requires_two_factor is True
        assert first.tokens is None
        assert first.session is None
        await auth_service.drain_notifications()
        emailed_code = fake_email.last("two_factor")[0]

        via_email = await auth_service.login(EMAIL, PASSWORD, two_factor_code=emailed_code)
        assert via_email.tokens is not None
        assert memory_store.get_artifact(EMAIL, ArtifactPurpose.TWO_FACTOR) is None

        via_totp = await auth_service.login(
            EMAIL, PASSWORD, two_factor_code=generate_totp(setup.secret, clock().timestamp())
        )
        assert via_totp.tokens is not None

        via_backup = await auth_service.login(EMAIL, PASSWORD, two_factor_code=setup.backup_codes[0])
        assert via_backup.tokens is not None
        with pytest.raises(InvalidTwoFactorCodeError):
            await auth_service.login(EMAIL, PASSWORD, two_factor_code=setup.backup_codes[0])

    async def test_bad_code_counts_toward_lockout(self, auth_service, active_account, memory_store, clock):
        await _enable_two_factor(auth_service, active_account, clock)
        with pytest.raises(InvalidTwoFactorCodeError):
            await auth_service.login(EMAIL, PASSWORD, two_factor_code="ZZZZ-ZZZZ")
        assert auth_service.lockout.failed_attempts(EMAIL) == 1
        assert _events(memory_store, active_account.id, SecurityEventType.TWO_FACTOR_FAILED)

    async def test_non_ascii_digit_code_counts_toward_lockout(self, auth_service, active_account, clock):
        setup = await _enable_two_factor(auth_service, active_account, clock)
        code = generate_totp(setup.secret, clock().timestamp())
        arabic_indic = "".join(chr(0x0660 + int(d)) for d in code)
        with pytest.raises(InvalidTwoFactorCodeError):
            await auth_service.login(EMAIL, PASSWORD, two_factor_code=arabic_indic)
        assert auth_service.lockout.failed_attempts(EMAIL) == 1

    async def test_confirm_with_bad_code(self, auth_service, active_account):
        await auth_service.start_two_factor_enrollment(active_account.id)
        with pytest.raises(InvalidTwoFactorCodeError):
            await auth_service.confirm_two_factor_enrollment(active_account.id, "12345a")
        status = await auth_service.two_factor_status(active_account.id)
        assert status.confirmed is False

    async def test_disable_and_regenerate(self, auth_service, active_account, memory_store, clock, fake_email):
        setup = await _enable_two_factor(auth_service, active_account, clock)
        codes = await auth_service.regenerate_backup_codes(
            active_account.id, generate_totp(setup.secret, clock().timestamp())
        )
        assert set(codes).isdisjoint(setup.backup_codes)

        with pytest.raises(InvalidTwoFactorCodeError):
            await auth_service.disable_two_factor(active_account.id, setup.backup_codes[0])

        await auth_service.disable_two_factor(active_account.id, codes[0])
        status = await auth_service.two_factor_status(active_account.id)
        assert status.enabled is False
        result = await auth_service.login(EMAIL, PASSWORD)
        assert result.requires_two_factor is False
        assert _events(memory_store, active_account.id, SecurityEventType.TWO_FACTOR_DISABLED)
        await auth_service.drain_notifications()
        assert {"two_factor_enabled", "backup_codes_regenerated", "two_factor_disabled"} <= set(
            fake_email.alerts()
        )


class TestTokensAndSessions:
    async def test_authenticate_and_logout(self, auth_service, active_account):
        result = await auth_service.login(EMAIL, PASSWORD)
        identity = await auth_service.authenticate(result.tokens.access_token)
        assert identity.account_id == active_account.id
        assert identity.session_id == result.session.id

        await auth_service.logout(identity)
        with pytest.raises(InvalidSessionError):
            await auth_service.authenticate(result.tokens.access_token)

    async def test_authenticate_rechecks_account(self, auth_service, active_account, memory_store):
        result = await auth_service.login(EMAIL, PASSWORD)
        memory_store.set_account_status(active_account.id, AccountStatus.SUSPENDED)
        with pytest.raises(AccountSuspendedError):
            await auth_service.authenticate(result.tokens.access_token)

    async def test_refresh_rechecks_account(self, auth_service, active_account, memory_store):
        result = await auth_service.login(EMAIL, PASSWORD)
        fresh = await auth_service.refresh(result.tokens.refresh_token)
        assert fresh.access_token != result.tokens.access_token
        assert _events(memory_store, active_account.id, SecurityEventType.TOKEN_REFRESHED)

        memory_store.set_account_status(active_account.id, AccountStatus.SUSPENDED)
        with pytest.raises(AccountSuspendedError):
            await auth_service.refresh(fresh.refresh_token)
        assert memory_store.get_session(result.session.id).is_active is False

    async def test_revoke_foreign_session(self, auth_service, active_account, memory_store):
        result = await auth_service.login(EMAIL, PASSWORD)
        other = memory_store.create_account("other@example.com")
        with pytest.raises(NotFoundError):
            await auth_service.revoke_session(other.id, result.session.id)
        await auth_service.revoke_session(active_account.id, result.session.id)
        assert await auth_service.list_sessions(active_account.id) == []

    async def test_revoke_all_except_current(self, auth_service, active_account):
        keep = await auth_service.login(EMAIL, PASSWORD)
        drop = await auth_service.login(EMAIL, PASSWORD)
        count = await auth_service.revoke_all_sessions(
            active_account.id, except_session_id=keep.session.id
        )
        assert count == 1
        await auth_service.authenticate(keep.tokens.access_token)
        with pytest.raises(InvalidSessionError):
            await auth_service.authenticate(drop.tokens.access_token)

    async def test_capabilities(self, auth_service, active_account, memory_store):
        assert auth_service.has_capability(active_account.id, "profile:read") is True
        assert auth_service.has_capability(active_account.id, "security:audit") is False
        memory_store.update_account_role(active_account.id, "admin")
        assert auth_service.has_capability(active_account.id, "security:audit") is True
        memory_store.update_account_role(active_account.id, "super_admin")
        assert auth_service.has_capability(active_account.id, "anything:at-all") is True
        assert auth_service.has_capability("missing", "profile:read") is False


class TestPasswords:
    async def test_forgot_password_is_silent_for_unknown(self, auth_service, fake_email):
        await auth_service.forgot_password("ghost@example.com")
        await auth_service.drain_notifications()
        assert fake_email.sent == []

    async def test_reset_password(self, auth_service, active_account, fake_email, memory_store):
        session = await auth_service.login(EMAIL, PASSWORD)
        await auth_service.forgot_password(EMAIL, ip="3.3.3.3")
        await auth_service.drain_notifications()
        (code,) = fake_email.last("password_reset")

        with pytest.raises(InvalidOrExpiredArtifactError):
            await auth_service.reset_password(EMAIL, "abcdef", NEW_PASSWORD)
        await auth_service.reset_password(EMAIL, code, NEW_PASSWORD)

        with pytest.raises(InvalidSessionError):
            await auth_service.authenticate(session.tokens.access_token)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(EMAIL, PASSWORD)
        assert (await auth_service.login(EMAIL, NEW_PASSWORD)).tokens is not None
        with pytest.raises(InvalidOrExpiredArtifactError):
            await auth_service.reset_password(EMAIL, code, "Another123x")

        assert _events(memory_store, active_account.id, SecurityEventType.PASSWORD_RESET_REQUESTED)
        assert _events(memory_store, active_account.id, SecurityEventType.PASSWORD_RESET_COMPLETED)
        await auth_service.drain_notifications()
        assert "password_reset" in fake_email.alerts()

    async def test_reset_clears_lockout(self, auth_service, active_account, fake_email):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login(EMAIL, "WrongHorse42")
        await auth_service.forgot_password(EMAIL)
        await auth_service.drain_notifications()
        (code,) = fake_email.last("password_reset")
        await auth_service.reset_password(EMAIL, code, NEW_PASSWORD)
        assert (await auth_service.login(EMAIL, NEW_PASSWORD)).tokens is not None

    async def test_change_password(self, auth_service, active_account):
        current = await auth_service.login(EMAIL, PASSWORD)
        other = await auth_service.login(EMAIL, PASSWORD)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(active_account.id, "WrongHorse42", NEW_PASSWORD)
        with pytest.raises(ValidationError):
            await auth_service.change_password(active_account.id, PASSWORD, PASSWORD)

        await auth_service.change_password(
            active_account.id, PASSWORD, NEW_PASSWORD, keep_session_id=current.session.id
        )
        await auth_service.authenticate(current.tokens.access_token)
        with pytest.raises(InvalidSessionError):
            await auth_service.authenticate(other.tokens.access_token)
        assert (await auth_service.login(EMAIL, NEW_PASSWORD)).tokens is not None


class TestAccountLifecycle:
    async def test_deactivate_and_reactivate(self, auth_service, active_account, fake_email, memory_store):
        session = await auth_service.login(EMAIL, PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.deactivate_account(active_account.id, "WrongHorse42")

        await auth_service.deactivate_account(active_account.id, PASSWORD, reason="break")
        assert memory_store.get_account(active_account.id).status == AccountStatus.INACTIVE
        with pytest.raises(InvalidSessionError):
            await auth_service.authenticate(session.tokens.access_token)
        with pytest.raises(AccountInactiveError):
            await auth_service.login(EMAIL, PASSWORD)

        await auth_service.request_reactivation(EMAIL)
        await auth_service.drain_notifications()
        (code,) = fake_email.last("reactivation")
        account = await auth_service.reactivate_account(EMAIL, code)
        assert account.status == AccountStatus.ACTIVE
        assert (await auth_service.login(EMAIL, PASSWORD)).tokens is not None
        assert _events(memory_store, active_account.id, SecurityEventType.ACCOUNT_REACTIVATED)

    async def test_reactivation_silent_for_active_accounts(self, auth_service, active_account, fake_email):
        await auth_service.request_reactivation(EMAIL)
        await auth_service.request_reactivation("ghost@example.com")
        await auth_service.drain_notifications()
        assert fake_email.last("reactivation") is None

    async def test_unverified_account_cannot_be_reactivated(self, auth_service, memory_store):
        account = memory_store.create_account("pending@example.com")
        code = auth_service.artifacts.issue("pending@example.com", ArtifactPurpose.ACCOUNT_REACTIVATION)
        with pytest.raises(AccountNotVerifiedError):
            await auth_service.reactivate_account("pending@example.com", code)
        assert memory_store.get_account(account.id).status == AccountStatus.INACTIVE

    async def test_suspended_account_cannot_self_reactivate(self, auth_service, active_account, memory_store):
        memory_store.set_account_status(active_account.id, AccountStatus.SUSPENDED)
        code = auth_service.artifacts.issue(EMAIL, ArtifactPurpose.ACCOUNT_REACTIVATION)
        with pytest.raises(AccountSuspendedError):
            await auth_service.reactivate_account(EMAIL, code)

    def test_active_requires_verified(self, memory_store):
        account = memory_store.create_account("pending@example.com")
        with pytest.raises(ConstraintViolation):
            memory_store.set_account_status(account.id, AccountStatus.ACTIVE)
        with pytest.raises(ConstraintViolation):
            memory_store.create_account("x@example.com", status=AccountStatus.ACTIVE)

    async def test_security_audit(self, auth_service, active_account, clock):
        await auth_service.login(EMAIL, PASSWORD, ip="1.1.1.1")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(EMAIL, "WrongHorse42")
        audit = await auth_service.security_audit(active_account.id)
        assert len(audit.recent_logins) == 1
        assert audit.failed_attempts == 1
        assert len(audit.active_sessions) == 1
        assert audit.two_factor_enabled is False
        assert audit.last_login == clock()

        clock.advance(days=31)
        later = await auth_service.security_audit(active_account.id)
        assert later.recent_logins == []
        assert later.failed_attempts == 0
