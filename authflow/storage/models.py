from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockStatus:
    OPEN = "open"
    SOFT_LOCKED = "soft_locked"
    HARD_LOCKED = "hard_locked"


class ChallengePurpose:
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"
    WALLET_ACTION = "wallet_action"

    ALL = (LOGIN, PASSWORD_RESET, WALLET_ACTION)


class ConfirmationStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"

    TERMINAL = (CONFIRMED, TIMED_OUT, REJECTED)


class DeviceTrust:
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"
    NOT_REQUIRED = "not_required"
    CONFIRMED_LATE = "confirmed_late"


class RefreshStatus:
    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"


class AuthPath:
    PASSWORD = "password"
    PASSWORD_OTP = "password_otp"
    PASSWORD_OTP_DEVICE = "password_otp_device"
    FALLBACK = "fallback"


@dataclass
class DeviceContext:
    """What the caller tells us about the device a login comes from."""

    device_id: str
    platform: str = "web"
    risk_flags: List[str] = field(default_factory=list)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Principal:
    id: str
    identifiers: List[str]
    credential_hash: Optional[str] = None
    credential_algo: str = "argon2id"
    locale: str = "ar"
    national_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    date_of_birth: Optional[str] = None
    trusted_devices: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class Challenge:
    id: str
    principal_id: str
    purpose: str
    code_hash: str
    issued_at: datetime
    expires_at: datetime
    resend_allowed_at: datetime
    consumed_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None
    attempts: int = 0

    @classmethod
    def new(
        cls,
        principal_id: str,
        purpose: str,
        code_hash: str,
        *,
        issued_at: datetime,
        expires_at: datetime,
        resend_allowed_at: datetime,
    ) -> "Challenge":
        return cls(
            id=str(uuid.uuid4()),
            principal_id=principal_id,
            purpose=purpose,
            code_hash=code_hash,
            issued_at=issued_at,
            expires_at=expires_at,
            resend_allowed_at=resend_allowed_at,
        )

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None

    def is_active(self, now: datetime) -> bool:
        return (
            self.consumed_at is None
            and self.superseded_at is None
            and now < self.expires_at
        )


@dataclass
class DeviceConfirmation:
    callback_id: str
    device_id: str
    principal_id: str
    status: str
    created_at: datetime
    deadline_at: datetime
    resolved_at: Optional[datetime] = None
    family_id: Optional[str] = None
    meta: Dict | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ConfirmationStatus.TERMINAL


@dataclass
class LockRecord:
    subject: str
    state: str = LockStatus.OPEN
    failures: int = 0
    window_started_at: Optional[datetime] = None
    high_risk_failures: int = 0
    soft_lock_count: int = 0
    locked_at: Optional[datetime] = None
    last_failure_stage: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass
class TokenFamily:
    id: str
    principal_id: str
    device_id: str
    device_trust: str
    auth_path: str
    created_at: datetime
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class RefreshTokenRecord:
    jti: str
    family_id: str
    principal_id: str
    device_id: str
    issued_at: datetime
    expires_at: datetime
    status: str = RefreshStatus.ACTIVE
    replaced_by: Optional[str] = None
    rotated_at: Optional[datetime] = None


@dataclass
class ResetTicket:
    ticket_hash: str
    principal_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None


@dataclass
class RotationOutcome:
    """Result of a compare-and-set refresh rotation."""

    status: str  # rotated | reused | revoked | missing
    record: Optional[RefreshTokenRecord] = None
    family: Optional[TokenFamily] = None
