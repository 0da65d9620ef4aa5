from __future__ import annotations

import unicodedata
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from authflow.storage.models import ChallengePurpose, DeviceContext

# Stable error codes clients branch on
_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "expired",
    "code_mismatch",
    "already_consumed",
    "already_resolved",
    "account_locked",
    "account_soft_locked",
    "account_hard_locked",
    "token_invalid",
    "token_reused",
    "token_expired",
    "device_rejected",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class DevicePayload(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=128)
    platform: str = Field(default="web", max_length=16)
    risk_flags: List[str] = Field(default_factory=list, max_length=16)
    user_agent: Optional[str] = Field(default=None, max_length=512)

    @field_validator("platform")
    @classmethod
    def _normalize_platform(cls, value: str) -> str:
        normalized = (value or "web").lower()
        if normalized not in {"web", "ios", "android", "mobile"}:
            raise ValueError("platform must be one of web, ios, android, mobile")
        return normalized

    def to_context(self, ip_address: Optional[str] = None) -> DeviceContext:
        return DeviceContext(
            device_id=self.device_id,
            platform=self.platform,
            risk_flags=list(self.risk_flags),
            ip_address=ip_address,
            user_agent=self.user_agent,
        )


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    secret: str = Field(..., min_length=1, max_length=1024)
    device: DevicePayload

    @field_validator("identifier")
    @classmethod
    def _clean_identifier(cls, value: str) -> str:
        normalized = _normalize_unicode(value.strip())
        if "@" in normalized:
            normalized = normalized.lower()
        return normalized


class VerifyOtpRequest(BaseModel):
    principal_id: Optional[str] = Field(default=None, max_length=64)
    code: str = Field(..., min_length=4, max_length=10, pattern=r"^\d+$")
    purpose: Literal["login", "password_reset", "wallet_action"]
    challenge_id: Optional[str] = Field(default=None, max_length=64)
    device: Optional[DevicePayload] = None

    @model_validator(mode="after")
    def _require_lookup_key(self):
        if not self.challenge_id and not self.principal_id:
            raise ValueError("challenge_id or principal_id is required")
        return self


class ResendOtpRequest(BaseModel):
    principal_id: str = Field(..., max_length=64)
    purpose: Literal["login", "password_reset", "wallet_action"]


class ActionOtpRequest(BaseModel):
    purpose: Literal["wallet_action"] = ChallengePurpose.WALLET_ACTION


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)
    all: bool = False

    @model_validator(mode="after")
    def _require_target(self):
        if not self.all and not self.refresh_token:
            raise ValueError("refresh_token is required unless all is true")
        return self


class DeactivateDeviceRequest(BaseModel):
    challenge_id: str = Field(..., max_length=64)
    code: str = Field(..., min_length=4, max_length=10, pattern=r"^\d+$")


class ResolveConfirmationRequest(BaseModel):
    approved: bool = True


class PasswordResetStartRequest(BaseModel):
    national_id: str = Field(..., min_length=10, max_length=10)
    phone: Optional[str] = Field(default=None, max_length=32)
    date_of_birth: Optional[str] = Field(default=None, max_length=10)


class PasswordResetVerifyRequest(BaseModel):
    challenge_id: str = Field(..., max_length=64)
    code: str = Field(..., min_length=4, max_length=10, pattern=r"^\d+$")


class PasswordResetCompleteRequest(BaseModel):
    reset_ticket: str = Field(..., min_length=16, max_length=256)
    new_secret: str = Field(..., min_length=8, max_length=1024)


class ChallengeResponse(BaseModel):
    status: Literal["otp_required", "code_sent"] = "otp_required"
    challenge_id: str
    purpose: str
    expires_at: str
    resend_allowed_at: str
    principal_id: Optional[str] = None
    debug_code: Optional[str] = None


class SessionResponse(BaseModel):
    status: Literal["authenticated"] = "authenticated"
    principal_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: str
    refresh_expires_at: str
    family_id: str
    device_id: str
    device_trust: str
    auth_path: str
    device_confirmation: Optional[dict] = None


class ActionReceiptResponse(BaseModel):
    status: Literal["verified"] = "verified"
    principal_id: str
    purpose: str
    challenge_id: str
    verified_at: str


class ResetTicketResponse(BaseModel):
    status: Literal["reset_ticket_issued"] = "reset_ticket_issued"
    reset_ticket: str
    expires_at: str


class LockStateResponse(BaseModel):
    principal_id: str
    state: str
    failures: int
    attempts_remaining: int
    unlock_method: Optional[str] = None
    locked_at: Optional[str] = None


class TrustedDevicesResponse(BaseModel):
    principal_id: str
    devices: List[str]
    current_device_id: Optional[str] = None


class DeviceDeactivatedResponse(BaseModel):
    device_id: str
    deactivated: bool
    revoked_families: int = 0


class ConfirmationStatusResponse(BaseModel):
    callback_id: str
    device_id: str
    status: str
    deadline_at: str
    resolved_at: Optional[str] = None
    remaining_seconds: float = 0.0


class ResolveConfirmationResponse(BaseModel):
    callback_id: str
    status: str
    already_resolved: bool = False
    trust_upgraded: bool = False
