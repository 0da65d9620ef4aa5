from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from authflow.api.schemas import (
    ActionOtpRequest,
    ActionReceiptResponse,
    ChallengeResponse,
    ConfirmationStatusResponse,
    DeactivateDeviceRequest,
    DeviceDeactivatedResponse,
    Envelope,
    LockStateResponse,
    LoginRequest,
    LogoutRequest,
    PasswordResetCompleteRequest,
    PasswordResetStartRequest,
    PasswordResetVerifyRequest,
    ResendOtpRequest,
    ResetTicketResponse,
    ResolveConfirmationRequest,
    ResolveConfirmationResponse,
    SessionResponse,
    TokenRefreshRequest,
    TrustedDevicesResponse,
    VerifyOtpRequest,
)
from authflow.logging import get_logger
from authflow.service.auth import (
    ActionReceipt,
    ChallengeHandle,
    ResetTicketGrant,
    SessionResult,
)
from authflow.service.errors import AlreadyResolvedError
from authflow.service.identifiers import normalize_identifier
from authflow.service.runtime import check_rate_limit, get_runtime
from authflow.service.tokens import AccessClaims, SessionTokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count the request against ``key``; raises 429 ``rate_limited`` once the window is spent."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": max(1, reset_seconds)},
            headers={"Retry-After": str(max(1, reset_seconds))},
        )
    return info


@dataclass
class BearerContext:
    claims: AccessClaims
    token: str

    @property
    def principal_id(self) -> str:
        return self.claims.principal_id


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_bearer(authorization: Optional[str] = Header(None)) -> BearerContext:
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "bearer token required", status_code=401)
    runtime = get_runtime()
    claims = await runtime.auth.authenticate(token)
    return BearerContext(claims=claims, token=token)


async def get_optional_bearer(
    authorization: Optional[str] = Header(None),
) -> Optional[BearerContext]:
    if not authorization:
        return None
    return await get_bearer(authorization)


def _challenge_response(handle: ChallengeHandle, status: str = "otp_required") -> ChallengeResponse:
    return ChallengeResponse(status=status, **handle.to_dict())


def _session_response(tokens: SessionTokenPair, device_confirmation: Optional[dict] = None) -> SessionResponse:
    return SessionResponse(**tokens.to_dict(), device_confirmation=device_confirmation)


def _verification_response(result) -> object:
    if isinstance(result, SessionResult):
        return _session_response(result.tokens, result.device_confirmation)
    if isinstance(result, ResetTicketGrant):
        return ResetTicketResponse(
            reset_ticket=result.reset_ticket, expires_at=result.expires_at.isoformat()
        )
    if isinstance(result, ActionReceipt):
        return ActionReceiptResponse(
            principal_id=result.principal_id,
            purpose=result.purpose,
            challenge_id=result.challenge_id,
            verified_at=result.verified_at.isoformat(),
        )
    return _challenge_response(result)


# ----------------------------------------------------------------------------
# Login and codes
# ----------------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Verify an identifier and secret.

    Returns ``otp_required`` with a challenge handle, or a session when the
    deployment does not require a login code.
    """
    runtime = get_runtime()
    # Every spelling of a phone number shares one bucket
    identifier = normalize_identifier(
        body.identifier,
        country_code=runtime.settings.phone_country_code,
        local_pattern=runtime.settings.phone_local_pattern,
    )
    await _enforce_rate_limit(
        runtime,
        f"login:{identifier}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    device = body.device.to_context(request.client.host if request.client else None)
    result = await runtime.auth.login(body.identifier, body.secret, device)
    return Envelope(status="ok", data=_verification_response(result))


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOtpRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:verify:{body.principal_id or body.challenge_id}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
        response=response,
    )
    device = None
    if body.device is not None:
        device = body.device.to_context(request.client.host if request.client else None)
    result = await runtime.auth.verify_otp(
        body.principal_id,
        body.code,
        body.purpose,
        challenge_id=body.challenge_id,
        device_context=device,
    )
    return Envelope(status="ok", data=_verification_response(result))


@router.post("/auth/otp/resend", response_model=Envelope, tags=["auth"])
async def resend_otp(body: ResendOtpRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:resend:{body.principal_id}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
        response=response,
    )
    handle = await runtime.auth.resend_otp(body.principal_id, body.purpose)
    return Envelope(status="ok", data=_challenge_response(handle, status="code_sent"))


@router.post("/auth/otp/request", response_model=Envelope, tags=["auth"])
async def request_action_otp(
    body: ActionOtpRequest,
    response: Response,
    bearer: BearerContext = Depends(get_bearer),
):
    """Step-up code for a sensitive action by an authenticated principal."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:request:{bearer.principal_id}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
        response=response,
    )
    handle = await runtime.auth.request_action_otp(bearer.principal_id, body.purpose)
    return Envelope(status="ok", data=_challenge_response(handle, status="code_sent"))


# ----------------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_session_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    bearer: Optional[BearerContext] = Depends(get_optional_bearer),
):
    runtime = get_runtime()
    if body.all and bearer is None:
        raise _http_error("unauthorized", "bearer token required", status_code=401)
    result = await runtime.auth.logout(
        refresh_token=body.refresh_token,
        all_devices=body.all,
        claims=bearer.claims if bearer else None,
        access_token=bearer.token if bearer else None,
    )
    return Envelope(status="ok", data={"logged_out": True, **result})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(bearer: BearerContext = Depends(get_bearer)):
    runtime = get_runtime()
    profile = runtime.auth.profile(bearer.principal_id)
    return Envelope(
        status="ok",
        data={
            **profile,
            "device_id": bearer.claims.device_id,
            "device_trust": bearer.claims.device_trust,
            "auth_path": bearer.claims.auth_path,
        },
    )


@router.get("/auth/lock-state/{principal_id}", response_model=Envelope, tags=["auth"])
async def lock_state(
    principal_id: str = Path(..., max_length=64),
    challenge_id: Optional[str] = Query(None, max_length=64),
    bearer: Optional[BearerContext] = Depends(get_optional_bearer),
):
    """Lock state for the bearer's own principal, or for the holder of one of its challenges.

    The challenge handle covers locked principals who cannot sign in.
    """
    runtime = get_runtime()
    if bearer is None and not challenge_id:
        raise _http_error("unauthorized", "bearer token or challenge_id required", status_code=401)
    allowed = (bearer is not None and bearer.principal_id == principal_id) or (
        challenge_id is not None and runtime.auth.owns_challenge(principal_id, challenge_id)
    )
    if not allowed:
        raise _http_error("forbidden", "not allowed to view this lock state", status_code=403)
    return Envelope(status="ok", data=LockStateResponse(**runtime.auth.lock_state(principal_id)))


# ----------------------------------------------------------------------------
# Trusted devices
# ----------------------------------------------------------------------------


@router.get("/auth/devices", response_model=Envelope, tags=["device"])
async def list_trusted_devices(bearer: BearerContext = Depends(get_bearer)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=TrustedDevicesResponse(
            principal_id=bearer.principal_id,
            devices=runtime.auth.list_trusted_devices(bearer.principal_id),
            current_device_id=bearer.claims.device_id,
        ),
    )


@router.post("/auth/devices/{device_id}/deactivate", response_model=Envelope, tags=["device"])
async def deactivate_trusted_device(
    body: DeactivateDeviceRequest,
    response: Response,
    device_id: str = Path(..., max_length=128),
    bearer: BearerContext = Depends(get_bearer),
):
    """Needs a wallet_action code from ``/auth/otp/request``; revokes the device's sessions."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:verify:{bearer.principal_id}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.deactivate_trusted_device(
        bearer.principal_id, device_id, challenge_id=body.challenge_id, code=body.code
    )
    return Envelope(status="ok", data=DeviceDeactivatedResponse(**result))


# ----------------------------------------------------------------------------
# Device confirmation channel
# ----------------------------------------------------------------------------


def _require_channel_token(x_channel_token: Optional[str]) -> None:
    expected = get_runtime().settings.confirmation_channel_token
    if not expected:
        raise _http_error(
            "forbidden", "confirmation channel is not configured", status_code=403
        )
    if not x_channel_token or not hmac.compare_digest(x_channel_token, expected):
        raise _http_error("forbidden", "invalid channel token", status_code=403)


@router.get(
    "/auth/device-confirmations/{callback_id}", response_model=Envelope, tags=["device"]
)
async def confirmation_status(callback_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    status = runtime.auth.devices.status(callback_id)
    return Envelope(status="ok", data=ConfirmationStatusResponse(**status))


@router.post(
    "/auth/device-confirmations/{callback_id}/resolve",
    response_model=Envelope,
    tags=["device"],
)
async def resolve_confirmation(
    body: ResolveConfirmationRequest,
    callback_id: str = Path(..., max_length=64),
    x_channel_token: Optional[str] = Header(None, alias="X-Channel-Token"),
):
    """Called by the companion channel; repeat calls are acknowledged without side effects."""
    _require_channel_token(x_channel_token)
    runtime = get_runtime()
    try:
        record = runtime.auth.devices.resolve(callback_id, approved=body.approved)
    except AlreadyResolvedError as exc:
        return Envelope(
            status="ok",
            data=ResolveConfirmationResponse(
                callback_id=callback_id,
                status=exc.detail.get("status", "unknown"),
                already_resolved=True,
                trust_upgraded=bool(exc.detail.get("trust_upgraded")),
            ),
        )
    return Envelope(
        status="ok",
        data=ResolveConfirmationResponse(callback_id=record.callback_id, status=record.status),
    )


# ----------------------------------------------------------------------------
# Password reset
# ----------------------------------------------------------------------------


@router.post("/auth/password-reset/start", response_model=Envelope, tags=["password-reset"])
async def password_reset_start(body: PasswordResetStartRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:start:{body.national_id}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    handle = await runtime.auth.start_password_reset(
        body.national_id, phone=body.phone, date_of_birth=body.date_of_birth
    )
    return Envelope(status="ok", data=_challenge_response(handle, status="code_sent"))


@router.post("/auth/password-reset/verify", response_model=Envelope, tags=["password-reset"])
async def password_reset_verify(body: PasswordResetVerifyRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:verify:{body.challenge_id}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
        response=response,
    )
    grant = await runtime.auth.verify_password_reset(body.challenge_id, body.code)
    return Envelope(status="ok", data=_verification_response(grant))


@router.post(
    "/auth/password-reset/complete", response_model=Envelope, tags=["password-reset"]
)
async def password_reset_complete(body: PasswordResetCompleteRequest):
    runtime = get_runtime()
    principal_id = await runtime.auth.complete_password_reset(
        body.reset_ticket, body.new_secret
    )
    logger.info("password_reset_route_completed", principal_id=principal_id)
    return Envelope(status="ok", data={"status": "credential_updated"})
