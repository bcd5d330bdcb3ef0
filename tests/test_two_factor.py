"""Unit tests for TOTP enrollment, challenge and backup codes."""

import pytest

from authengine.service.errors import ConflictError, InvalidTwoFactorCodeError
from authengine.service.two_factor import (
    TwoFactorService,
    generate_totp,
    normalize_backup_code,
    verify_totp,
)

RFC6238_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def two_factor(memory_store, settings, clock):
    return TwoFactorService(memory_store, settings, clock=clock)


def _current_code(secret, clock):
    return generate_totp(secret, clock().timestamp())


def _confirmed(two_factor, account, clock):
    setup = two_factor.enroll(account.id, account.email)
    assert two_factor.confirm(account.id, _current_code(setup.secret, clock)) is True
    return setup


class TestTotp:
    def test_rfc6238_vector(self):
        """SHA-1 vector from RFC 6238 truncated to six digits."""
        assert generate_totp(RFC6238_SECRET, 59) == "287082"
        assert generate_totp(RFC6238_SECRET, 1111111109) == "081804"

    def test_window_accepts_neighbouring_steps(self):
        code = generate_totp(RFC6238_SECRET, 1_000_000)
        assert verify_totp(RFC6238_SECRET, code, at=1_000_000 + 60, window=2)
        assert verify_totp(RFC6238_SECRET, code, at=1_000_000 - 60, window=2)

    def test_window_rejects_distant_steps(self):
        code = generate_totp(RFC6238_SECRET, 1_000_020)
        assert not verify_totp(RFC6238_SECRET, code, at=1_000_020 + 90, window=2)

    def test_malformed_codes_rejected(self):
        assert not verify_totp(RFC6238_SECRET, "12345", at=59, window=2)
        assert not verify_totp(RFC6238_SECRET, "abcdef", at=59, window=2)
        assert not verify_totp(RFC6238_SECRET, "", at=59, window=2)

    def test_non_ascii_digits_rejected(self):
        arabic_indic = "".join(chr(0x0660 + int(d)) for d in generate_totp(RFC6238_SECRET, 59))
        assert arabic_indic.isdigit()
        assert not verify_totp(RFC6238_SECRET, arabic_indic, at=59, window=2)
        assert not verify_totp(RFC6238_SECRET, "\uff12\uff18\uff17\uff10\uff18\uff12", at=59, window=2)

    def test_backup_code_normalisation(self):
        assert normalize_backup_code(" ab12-cd34 ") == "AB12CD34"


class TestEnrollment:
    def test_enroll_returns_setup(self, two_factor, active_account, settings):
        setup = two_factor.enroll(active_account.id, active_account.email)
        assert setup.otpauth_uri.startswith("otpauth://totp/")
        assert "algorithm=SHA1" in setup.otpauth_uri
        assert len(setup.backup_codes) == settings.backup_code_count
        assert all(len(code) == 8 and code == code.upper() for code in setup.backup_codes)

    def test_pending_enrollment_does_not_gate_login(self, two_factor, active_account):
        two_factor.enroll(active_account.id, active_account.email)
        assert two_factor.is_enabled(active_account.id) is False
        status = two_factor.status(active_account.id)
        assert status.enabled is True
        assert status.confirmed is False

    def test_confirm_with_wrong_code(self, two_factor, active_account, clock):
        setup = two_factor.enroll(active_account.id, active_account.email)
        stale = generate_totp(setup.secret, clock().timestamp() - 600)
        assert two_factor.confirm(active_account.id, stale) is False
        assert two_factor.confirm(active_account.id, "000000x") is False
        assert two_factor.is_enabled(active_account.id) is False

    def test_confirm_enables(self, two_factor, active_account, clock):
        _confirmed(two_factor, active_account, clock)
        assert two_factor.is_enabled(active_account.id) is True

    def test_secret_encrypted_at_rest(self, two_factor, active_account, memory_store):
        setup = two_factor.enroll(active_account.id, active_account.email)
        raw = memory_store.two_factor[active_account.id].secret
        assert raw != setup.secret
        assert memory_store.get_two_factor_enrollment(active_account.id).secret == setup.secret

    def test_reenroll_refused_when_confirmed(self, two_factor, active_account, clock):
        _confirmed(two_factor, active_account, clock)
        with pytest.raises(ConflictError):
            two_factor.enroll(active_account.id, active_account.email)

    def test_reenroll_allowed_while_pending(self, two_factor, active_account):
        first = two_factor.enroll(active_account.id, active_account.email)
        second = two_factor.enroll(active_account.id, active_account.email)
        assert first.secret != second.secret


class TestChallenge:
    def test_totp_accepted(self, two_factor, active_account, clock):
        setup = _confirmed(two_factor, active_account, clock)
        clock.advance(seconds=30)
        assert two_factor.challenge(active_account.id, _current_code(setup.secret, clock))

    def test_backup_code_is_single_use(self, two_factor, active_account, clock, settings):
        setup = _confirmed(two_factor, active_account, clock)
        code = setup.backup_codes[0]

        assert two_factor.challenge(active_account.id, code.lower()) is True
        assert two_factor.challenge(active_account.id, code) is False
        assert two_factor.status(active_account.id).backup_codes_remaining == settings.backup_code_count - 1

    def test_challenge_without_enrollment(self, two_factor, active_account):
        assert two_factor.challenge(active_account.id, "123456") is False


class TestDisableAndRegenerate:
    def test_disable_requires_proof(self, two_factor, active_account, clock):
        _confirmed(two_factor, active_account, clock)
        with pytest.raises(InvalidTwoFactorCodeError):
            two_factor.disable(active_account.id, "ZZZZZZZZ")
        assert two_factor.is_enabled(active_account.id) is True

    def test_disable_with_backup_code(self, two_factor, active_account, clock, memory_store):
        setup = _confirmed(two_factor, active_account, clock)
        two_factor.disable(active_account.id, setup.backup_codes[1])
        assert two_factor.is_enabled(active_account.id) is False
        assert memory_store.list_unused_backup_codes(active_account.id) == []

    def test_regenerate_invalidates_old_codes(self, two_factor, active_account, clock):
        setup = _confirmed(two_factor, active_account, clock)
        fresh = two_factor.regenerate_backup_codes(
            active_account.id, _current_code(setup.secret, clock)
        )
        assert two_factor.challenge(active_account.id, setup.backup_codes[2]) is False
        assert two_factor.challenge(active_account.id, fresh[0]) is True
