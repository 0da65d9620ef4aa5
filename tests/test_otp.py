"""Unit tests for one-time code issuance and verification."""

import pytest

from authflow.service.errors import (
    AccountHardLockedError,
    AccountSoftLockedError,
    AlreadyConsumedError,
    CodeMismatchError,
    ExpiredError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from authflow.service.lockout import FailureStage, LockoutTracker
from authflow.service.otp import OTPChallengeManager
from authflow.storage.models import ChallengePurpose, LockStatus
from conftest import create_principal


@pytest.fixture
def lockout(memory_store, settings, clock):
    return LockoutTracker(memory_store, settings, clock=clock)


@pytest.fixture
def otp(memory_store, lockout, settings, clock):
    return OTPChallengeManager(memory_store, lockout, settings, clock=clock)


@pytest.fixture
def stored_principal(memory_store):
    return create_principal(memory_store)


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestIssue:
    def test_code_shape_and_deadlines(self, otp, stored_principal, settings, clock):
        issued = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        assert len(issued.code) == settings.otp_length
        assert issued.code.isdigit()
        challenge = issued.challenge
        assert (challenge.expires_at - clock.now).total_seconds() == settings.otp_ttl_seconds
        assert (
            challenge.resend_allowed_at - clock.now
        ).total_seconds() == settings.otp_resend_cooldown_seconds

    def test_plaintext_code_is_not_stored(self, otp, stored_principal, memory_store):
        issued = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        stored = memory_store.get_challenge(issued.id)
        assert stored.code_hash != issued.code
        assert issued.code not in stored.code_hash

    def test_unknown_purpose_rejected(self, otp, stored_principal):
        with pytest.raises(ValidationError):
            otp.issue(stored_principal.id, "transfer_everything")

    def test_issue_inside_cooldown_is_rate_limited(self, otp, stored_principal, clock):
        otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        clock.advance(10)
        with pytest.raises(RateLimitedError) as excinfo:
            otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        assert excinfo.value.retry_after_seconds == 20

    def test_reissue_after_cooldown_supersedes(self, otp, stored_principal, clock):
        first = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        clock.advance(31)
        second = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        assert second.id != first.id
        with pytest.raises(AlreadyConsumedError):
            otp.verify(first.code, challenge_id=first.id)
        assert otp.verify(second.code, challenge_id=second.id).consumed

    def test_purposes_do_not_share_cooldown(self, otp, stored_principal):
        otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        otp.issue(stored_principal.id, ChallengePurpose.WALLET_ACTION)

    def test_resend_requires_existing_challenge(self, otp, stored_principal):
        with pytest.raises(NotFoundError):
            otp.resend(stored_principal.id, ChallengePurpose.LOGIN)

    def test_deadlines_not_recomputed_on_read(self, otp, stored_principal, memory_store, clock):
        issued = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        expires_at = issued.challenge.expires_at
        clock.advance(100)
        assert memory_store.get_challenge(issued.id).expires_at == expires_at


class TestVerify:
    def test_correct_code_consumes(self, otp, stored_principal):
        issued = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        challenge = otp.verify(issued.code, challenge_id=issued.id)
        assert challenge.consumed

    def test_lookup_by_principal_and_purpose(self, otp, stored_principal):
        issued = otp.issue(stored_principal.id, ChallengePurpose.WALLET_ACTION)
        challenge = otp.verify(
            issued.code,
            principal_id=stored_principal.id,
            purpose=ChallengePurpose.WALLET_ACTION,
        )
        assert challenge.id == issued.id

    def test_single_use(self, otp, stored_principal):
        issued = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        otp.verify(issued.code, challenge_id=issued.id)
        with pytest.raises(AlreadyConsumedError):
            otp.verify(issued.code, challenge_id=issued.id)

    def test_mismatch_keeps_challenge_open(self, otp, stored_principal, memory_store):
        issued = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        with pytest.raises(CodeMismatchError) as excinfo:
            otp.verify(_wrong(issued.code), challenge_id=issued.id)
        assert excinfo.value.detail["attempts_remaining"] == 4
        assert memory_store.get_challenge(issued.id).attempts == 1
        assert otp.verify(issued.code, challenge_id=issued.id).consumed

    def test_expired_code(self, otp, stored_principal, clock, settings):
        issued = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        clock.advance(settings.otp_ttl_seconds)
        with pytest.raises(ExpiredError):
            otp.verify(issued.code, challenge_id=issued.id)

    def test_unknown_challenge_reads_as_expired(self, otp):
        with pytest.raises(ExpiredError):
            otp.verify("123456", challenge_id="does-not-exist")

    def test_purpose_mismatch_reads_as_expired(self, otp, stored_principal):
        issued = otp.issue(stored_principal.id, ChallengePurpose.WALLET_ACTION)
        with pytest.raises(ExpiredError):
            otp.verify(issued.code, challenge_id=issued.id, purpose=ChallengePurpose.LOGIN)

    def test_fifth_mismatch_soft_locks_and_blocks(self, otp, stored_principal, lockout):
        issued = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        for _ in range(5):
            with pytest.raises(CodeMismatchError) as excinfo:
                otp.verify(_wrong(issued.code), challenge_id=issued.id)
        assert excinfo.value.detail["lock_state"] == LockStatus.SOFT_LOCKED
        with pytest.raises(AccountSoftLockedError):
            otp.verify(issued.code, challenge_id=issued.id)

    def test_reset_codes_allowed_while_soft_locked(self, otp, stored_principal, lockout):
        for _ in range(5):
            lockout.record_failure(stored_principal.id, FailureStage.CREDENTIAL)
        issued = otp.issue(stored_principal.id, ChallengePurpose.PASSWORD_RESET)
        assert otp.verify(issued.code, challenge_id=issued.id).consumed

    def test_hard_lock_blocks_reset_codes(self, otp, stored_principal, lockout):
        lockout.record_failure(stored_principal.id, FailureStage.CREDENTIAL, high_risk=True)
        for _ in range(4):
            lockout.record_failure(stored_principal.id, FailureStage.CREDENTIAL)
        issued = otp.issue(stored_principal.id, ChallengePurpose.PASSWORD_RESET)
        with pytest.raises(AccountHardLockedError):
            otp.verify(issued.code, challenge_id=issued.id)


def test_purge_removes_expired(otp, stored_principal, memory_store, clock, settings):
    issued = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
    assert otp.purge_expired() == 0
    clock.advance(settings.otp_ttl_seconds + 1)
    assert otp.purge_expired() == 1
    assert memory_store.get_challenge(issued.id) is None
