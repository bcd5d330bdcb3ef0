"""Unit tests for verification codes and tokens.

Tests for:
- Code retry ceiling and deletion
- Single-use tokens
- Expiry and re-issue
"""

from datetime import timedelta

import pytest

from authengine.service.artifacts import ArtifactIssuer, generate_code, hash_artifact
from authengine.storage.common import decide_artifact_check
from authengine.storage.models import (
    ArtifactCheck,
    ArtifactKind,
    ArtifactPurpose,
    VerificationArtifact,
)

EMAIL = "someone@example.com"


@pytest.fixture
def issuer(memory_store, settings, clock):
    return ArtifactIssuer(memory_store, settings, clock=clock)


def _wrong(code: str) -> str:
    return str((int(code) + 1) % 1_000_000).zfill(6)


class TestCodes:
    def test_code_is_six_digits(self):
        code = generate_code()
        assert len(code) == 6
        assert code.isdigit()

    def test_only_digest_is_stored(self, issuer, memory_store):
        code = issuer.issue(EMAIL, ArtifactPurpose.PASSWORD_RESET)
        stored = memory_store.get_artifact(EMAIL, ArtifactPurpose.PASSWORD_RESET)
        assert stored.value_hash == hash_artifact(code)
        assert code not in stored.value_hash

    def test_matching_code_verifies_once(self, issuer, memory_store):
        code = issuer.issue(EMAIL, ArtifactPurpose.PASSWORD_RESET)
        assert issuer.verify(EMAIL, ArtifactPurpose.PASSWORD_RESET, code) is True
        assert memory_store.get_artifact(EMAIL, ArtifactPurpose.PASSWORD_RESET) is None
        assert issuer.verify(EMAIL, ArtifactPurpose.PASSWORD_RESET, code) is False

    def test_code_deleted_after_max_mismatches(self, issuer, memory_store, settings):
        """A correct code stops working once the mismatch ceiling is reached."""
        code = issuer.issue(EMAIL, ArtifactPurpose.PASSWORD_RESET)
        for attempt in range(1, settings.artifact_max_attempts):
            assert issuer.check(EMAIL, ArtifactPurpose.PASSWORD_RESET, _wrong(code)) == ArtifactCheck.MISMATCH
            stored = memory_store.get_artifact(EMAIL, ArtifactPurpose.PASSWORD_RESET)
            assert stored.attempts == attempt

        assert issuer.check(EMAIL, ArtifactPurpose.PASSWORD_RESET, _wrong(code)) == ArtifactCheck.MISMATCH
        assert memory_store.get_artifact(EMAIL, ArtifactPurpose.PASSWORD_RESET) is None
        assert issuer.verify(EMAIL, ArtifactPurpose.PASSWORD_RESET, code) is False

    def test_code_still_valid_before_ceiling(self, issuer):
        code = issuer.issue(EMAIL, ArtifactPurpose.TWO_FACTOR)
        assert issuer.verify(EMAIL, ArtifactPurpose.TWO_FACTOR, _wrong(code)) is False
        assert issuer.verify(EMAIL, ArtifactPurpose.TWO_FACTOR, _wrong(code)) is False
        assert issuer.verify(EMAIL, ArtifactPurpose.TWO_FACTOR, code) is True

    def test_expired_code_is_rejected_and_removed(self, issuer, memory_store, clock):
        code = issuer.issue(EMAIL, ArtifactPurpose.PASSWORD_RESET)
        clock.advance(minutes=15, seconds=1)
        assert issuer.check(EMAIL, ArtifactPurpose.PASSWORD_RESET, code) == ArtifactCheck.EXPIRED
        assert memory_store.get_artifact(EMAIL, ArtifactPurpose.PASSWORD_RESET) is None

    def test_reissue_replaces_previous_code(self, issuer):
        first = issuer.issue(EMAIL, ArtifactPurpose.ACCOUNT_REACTIVATION)
        second = issuer.issue(EMAIL, ArtifactPurpose.ACCOUNT_REACTIVATION)
        if first != second:
            assert issuer.verify(EMAIL, ArtifactPurpose.ACCOUNT_REACTIVATION, first) is False
        assert issuer.verify(EMAIL, ArtifactPurpose.ACCOUNT_REACTIVATION, second) is True

    def test_purposes_are_independent(self, issuer):
        reset = issuer.issue(EMAIL, ArtifactPurpose.PASSWORD_RESET)
        issuer.issue(EMAIL, ArtifactPurpose.TWO_FACTOR)
        assert issuer.verify(EMAIL, ArtifactPurpose.PASSWORD_RESET, reset) is True

    def test_missing_artifact(self, issuer):
        assert issuer.check(EMAIL, ArtifactPurpose.PASSWORD_RESET, "123456") == ArtifactCheck.MISSING


class TestTokens:
    def test_token_defaults_for_email_verification(self, issuer, memory_store):
        token = issuer.issue(EMAIL, ArtifactPurpose.EMAIL_VERIFICATION)
        stored = memory_store.get_artifact(EMAIL, ArtifactPurpose.EMAIL_VERIFICATION)
        assert stored.kind == ArtifactKind.TOKEN
        assert len(token) == 64
        assert stored.expires_at - stored.created_at == timedelta(hours=24)

    def test_token_replay_fails(self, issuer, memory_store):
        """A used token is kept but never verifies again."""
        token = issuer.issue(EMAIL, ArtifactPurpose.EMAIL_VERIFICATION)
        assert issuer.verify(EMAIL, ArtifactPurpose.EMAIL_VERIFICATION, token) is True

        stored = memory_store.get_artifact(EMAIL, ArtifactPurpose.EMAIL_VERIFICATION)
        assert stored is not None and stored.is_used is True
        assert issuer.check(EMAIL, ArtifactPurpose.EMAIL_VERIFICATION, token) == ArtifactCheck.USED

    def test_token_mismatches_count(self, issuer, memory_store):
        issuer.issue(EMAIL, ArtifactPurpose.EMAIL_VERIFICATION)
        issuer.verify(EMAIL, ArtifactPurpose.EMAIL_VERIFICATION, "not-the-token")
        stored = memory_store.get_artifact(EMAIL, ArtifactPurpose.EMAIL_VERIFICATION)
        assert stored.attempts == 1


class TestDecideArtifactCheck:
    def _artifact(self, clock, **overrides):
        values = dict(
            email=EMAIL,
            purpose=ArtifactPurpose.PASSWORD_RESET,
            kind=ArtifactKind.CODE,
            value_hash=hash_artifact("123456"),
            expires_at=clock() + timedelta(minutes=5),
            attempts=0,
            is_used=False,
            created_at=clock(),
        )
        values.update(overrides)
        return VerificationArtifact(**values)

    def test_exhausted_artifact_is_deleted_even_on_match(self, clock):
        artifact = self._artifact(clock, attempts=3)
        outcome, action = decide_artifact_check(
            artifact, hash_artifact("123456"), now=clock(), max_attempts=3
        )
        assert outcome == ArtifactCheck.EXHAUSTED
        assert action == "delete"

    def test_expiry_checked_before_match(self, clock):
        artifact = self._artifact(clock, expires_at=clock() - timedelta(seconds=1))
        outcome, _ = decide_artifact_check(
            artifact, hash_artifact("123456"), now=clock(), max_attempts=3
        )
        assert outcome == ArtifactCheck.EXPIRED

    def test_artifact_valid_at_expiry_instant(self, clock):
        artifact = self._artifact(clock, expires_at=clock())
        outcome, action = decide_artifact_check(
            artifact, hash_artifact("123456"), now=clock(), max_attempts=3
        )
        assert outcome == ArtifactCheck.MATCH
        assert action == "delete"
