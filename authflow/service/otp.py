from __future__ import annotations

import hashlib
import hmac
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import (
    AlreadyConsumedError,
    CodeMismatchError,
    ExpiredError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from authflow.service.lockout import FailureStage, LockoutTracker
from authflow.storage.models import Challenge, ChallengePurpose, utcnow
from authflow.storage.protocol import AuthStore

logger = get_logger(__name__)


@dataclass
class IssuedChallenge:
    """A freshly stored challenge plus the plaintext code for delivery only."""

    challenge: Challenge
    code: str

    @property
    def id(self) -> str:
        return self.challenge.id


class OTPChallengeManager:
    """Issues and verifies one-time codes for login, password reset and wallet actions.

    Expiry and resend cooldown are absolute deadlines written at issuance;
    nothing is recomputed or re-armed when a challenge is read. Only an HMAC
    digest of the code is stored.
    """

    def __init__(
        self,
        store: AuthStore,
        lockout: LockoutTracker,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _generate_code(self) -> str:
        length = self.settings.otp_length
        return str(secrets.randbelow(10**length)).zfill(length)

    def _digest(self, challenge_id: str, code: str) -> str:
        message = f"{challenge_id}:{code}".encode()
        return hmac.new(self.settings.otp_hmac_key, message, hashlib.sha256).hexdigest()

    @staticmethod
    def _validate_purpose(purpose: str) -> None:
        if purpose not in ChallengePurpose.ALL:
            raise ValidationError(
                "unsupported challenge purpose",
                detail={"purpose": purpose, "allowed": list(ChallengePurpose.ALL)},
            )

    def issue(self, principal_id: str, purpose: str) -> IssuedChallenge:
        self._validate_purpose(purpose)
        now = self._now()
        code = self._generate_code()
        challenge = Challenge.new(
            principal_id,
            purpose,
            code_hash="",
            issued_at=now,
            expires_at=now + timedelta(seconds=self.settings.otp_ttl_seconds),
            resend_allowed_at=now + timedelta(seconds=self.settings.otp_resend_cooldown_seconds),
        )
        challenge.code_hash = self._digest(challenge.id, code)
        issued, current = self.store.issue_challenge(challenge, now=now)
        if not issued:
            retry_after = max(1, math.ceil((current.resend_allowed_at - now).total_seconds()))
            logger.info(
                "otp_issue_rate_limited",
                principal_id=principal_id,
                purpose=purpose,
                retry_after_seconds=retry_after,
            )
            raise RateLimitedError(
                "a code was sent recently; wait before requesting another",
                retry_after_seconds=retry_after,
                detail={"resend_allowed_at": current.resend_allowed_at.isoformat()},
            )
        logger.info(
            "otp_issued",
            principal_id=principal_id,
            purpose=purpose,
            challenge_id=challenge.id,
            expires_at=challenge.expires_at.isoformat(),
        )
        return IssuedChallenge(challenge=challenge, code=code)

    def resend(self, principal_id: str, purpose: str) -> IssuedChallenge:
        """Re-issue for a pair that already has a challenge (the caller passed the earlier stage)."""
        self._validate_purpose(purpose)
        if self.store.get_latest_challenge(principal_id, purpose) is None:
            raise NotFoundError("no challenge to resend", detail={"purpose": purpose})
        return self.issue(principal_id, purpose)

    def _lookup(
        self,
        challenge_id: Optional[str],
        principal_id: Optional[str],
        purpose: Optional[str],
    ) -> Optional[Challenge]:
        if challenge_id:
            challenge = self.store.get_challenge(challenge_id)
            if challenge and principal_id and challenge.principal_id != principal_id:
                return None
            if challenge and purpose and challenge.purpose != purpose:
                return None
            return challenge
        if not principal_id or not purpose:
            raise ValidationError("challenge_id or principal_id and purpose are required")
        return self.store.get_latest_challenge(principal_id, purpose)

    def verify(
        self,
        code: str,
        *,
        challenge_id: Optional[str] = None,
        principal_id: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> Challenge:
        if purpose is not None:
            self._validate_purpose(purpose)
        now = self._now()
        challenge = self._lookup(challenge_id, principal_id, purpose)
        if challenge is None:
            # Nothing issued (or a decoy handle); same remedy as an expired code
            raise ExpiredError("code expired; request a new one")

        # The reset flow is the soft-lock remedy, so only hard locks stop it
        self.lockout.ensure_unlocked(
            challenge.principal_id,
            allow_soft=challenge.purpose == ChallengePurpose.PASSWORD_RESET,
        )

        if challenge.consumed_at is not None or challenge.superseded_at is not None:
            raise AlreadyConsumedError("code already used; request a new one")
        if now >= challenge.expires_at:
            raise ExpiredError("code expired; request a new one")

        submitted = self._digest(challenge.id, (code or "").strip())
        if not hmac.compare_digest(submitted, challenge.code_hash):
            self.store.record_challenge_attempt(challenge.id)
            record = self.lockout.record_failure(challenge.principal_id, FailureStage.OTP)
            logger.warning(
                "otp_code_mismatch",
                principal_id=challenge.principal_id,
                purpose=challenge.purpose,
                challenge_id=challenge.id,
                lock_state=record.state,
            )
            raise CodeMismatchError(
                "incorrect code; try again",
                detail={
                    "lock_state": record.state,
                    "attempts_remaining": self.lockout.attempts_remaining(record),
                },
            )

        if not self.store.consume_challenge(challenge.id, now=now):
            # Lost a race with a concurrent verify or a resend
            raise AlreadyConsumedError("code already used; request a new one")
        logger.info(
            "otp_verified",
            principal_id=challenge.principal_id,
            purpose=challenge.purpose,
            challenge_id=challenge.id,
        )
        return self.store.get_challenge(challenge.id) or challenge

    def purge_expired(self, *, grace_seconds: int = 0) -> int:
        cutoff = self._now() - timedelta(seconds=grace_seconds)
        removed = self.store.purge_expired_challenges(cutoff)
        if removed:
            logger.info("otp_challenges_purged", removed=removed)
        return removed
