from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import AccountHardLockedError, AccountSoftLockedError
from authflow.storage.models import LockRecord, LockStatus, utcnow
from authflow.storage.protocol import AuthStore

logger = get_logger(__name__)


class FailureStage:
    CREDENTIAL = "credential"
    OTP = "otp"
    DEVICE = "device"


class LockoutTracker:
    """Counts verification failures per subject and moves it Open -> SoftLocked -> HardLocked.

    A subject is a principal id, or an ``identifier:<digest>`` bucket for
    identifiers that did not resolve to a principal. Locks never clear on a
    later success: a soft lock clears through :meth:`clear_soft_lock` (the
    credential reset) and a hard lock only through :meth:`support_unlock`.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @property
    def threshold(self) -> int:
        return self.settings.lockout_threshold

    def _window_expired(self, record: LockRecord, now: datetime) -> bool:
        window = self.settings.lockout_window_seconds
        if not window or record.window_started_at is None:
            return False
        return now - record.window_started_at >= timedelta(seconds=window)

    def current_state(self, subject: str) -> LockRecord:
        return self.store.get_lock_record(subject) or LockRecord(subject=subject)

    def attempts_remaining(self, record: LockRecord) -> int:
        if record.state != LockStatus.OPEN:
            return 0
        return max(0, self.threshold - record.failures)

    def ensure_unlocked(self, subject: str, *, allow_soft: bool = False) -> LockRecord:
        """Raise the lock error for ``subject`` without evaluating anything else."""
        record = self.current_state(subject)
        if record.state == LockStatus.HARD_LOCKED:
            raise AccountHardLockedError(
                "account is locked; contact support to restore access",
                detail={"lock_state": record.state},
            )
        if record.state == LockStatus.SOFT_LOCKED and not allow_soft:
            raise AccountSoftLockedError(
                "account is locked; reset your password to continue",
                detail={"lock_state": record.state},
            )
        return record

    def record_failure(
        self, subject: str, stage: str, *, high_risk: bool = False
    ) -> LockRecord:
        now = self._now()
        threshold = self.threshold
        escalate_after = self.settings.hard_lock_after_soft_locks

        def _apply(record: LockRecord) -> LockRecord:
            if record.state == LockStatus.HARD_LOCKED:
                record.last_failure_stage = stage
                record.updated_at = now
                return record
            if self._window_expired(record, now):
                record.failures = 0
                record.high_risk_failures = 0
                record.window_started_at = None
            if record.window_started_at is None:
                record.window_started_at = now
            record.failures += 1
            if high_risk:
                record.high_risk_failures += 1
            record.last_failure_stage = stage
            record.updated_at = now
            if record.failures < threshold:
                return record

            if record.state == LockStatus.SOFT_LOCKED:
                # Failures continued after the soft lock (during the reset flow)
                record.state = LockStatus.HARD_LOCKED
                record.locked_at = now
            elif record.high_risk_failures > 0:
                record.state = LockStatus.HARD_LOCKED
                record.locked_at = now
            else:
                record.soft_lock_count += 1
                if escalate_after and record.soft_lock_count >= escalate_after:
                    record.state = LockStatus.HARD_LOCKED
                else:
                    record.state = LockStatus.SOFT_LOCKED
                record.locked_at = now
            record.failures = 0
            record.high_risk_failures = 0
            record.window_started_at = None
            return record

        before = self.current_state(subject).state
        updated = self.store.mutate_lock_record(subject, _apply)
        if updated.state != before:
            log_fn = logger.error if updated.state == LockStatus.HARD_LOCKED else logger.warning
            log_fn(
                f"lockout_{updated.state}",
                subject=subject,
                stage=stage,
                high_risk=high_risk,
                soft_lock_count=updated.soft_lock_count,
            )
        else:
            logger.info(
                "lockout_failure_recorded",
                subject=subject,
                stage=stage,
                failures=updated.failures,
                state=updated.state,
            )
        return updated

    def record_success(self, subject: str) -> LockRecord:
        """Reset the episode counter; an existing lock stays in place."""
        now = self._now()

        def _apply(record: LockRecord) -> LockRecord:
            record.failures = 0
            record.high_risk_failures = 0
            record.window_started_at = None
            record.updated_at = now
            return record

        return self.store.mutate_lock_record(subject, _apply)

    def clear_soft_lock(self, subject: str) -> LockRecord:
        """Credential-reset clearing action. Hard locks are left untouched."""
        now = self._now()

        def _apply(record: LockRecord) -> LockRecord:
            if record.state == LockStatus.SOFT_LOCKED:
                record.state = LockStatus.OPEN
                record.locked_at = None
            if record.state == LockStatus.OPEN:
                record.failures = 0
                record.high_risk_failures = 0
                record.window_started_at = None
            record.updated_at = now
            return record

        updated = self.store.mutate_lock_record(subject, _apply)
        logger.info("lockout_soft_lock_cleared", subject=subject, state=updated.state)
        return updated

    def support_unlock(self, subject: str, *, operator: str) -> LockRecord:
        """Operator action; the only transition out of a hard lock."""
        now = self._now()

        def _apply(record: LockRecord) -> LockRecord:
            record.state = LockStatus.OPEN
            record.failures = 0
            record.high_risk_failures = 0
            record.window_started_at = None
            record.soft_lock_count = 0
            record.locked_at = None
            record.updated_at = now
            return record

        updated = self.store.mutate_lock_record(subject, _apply)
        logger.warning("lockout_support_unlock", subject=subject, operator=operator)
        return updated
