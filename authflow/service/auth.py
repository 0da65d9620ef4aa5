from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

from authflow.config import RESET_PRECEDENCE_REJECT, ResetPath, Settings
from authflow.logging import get_logger
from authflow.service.credentials import CredentialVerifier
from authflow.service.delivery import (
    DeviceConfirmationChannel,
    Dispatcher,
    OtpDeliveryChannel,
)
from authflow.service.device_confirmation import DeviceConfirmationCoordinator
from authflow.service.errors import (
    DeviceRejectedError,
    ExpiredError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from authflow.service.identifiers import is_national_id, mask_identifier, normalize_phone
from authflow.service.lockout import FailureStage, LockoutTracker
from authflow.service.otp import IssuedChallenge, OTPChallengeManager
from authflow.service.tokens import AccessClaims, SessionTokenAuthority, SessionTokenPair
from authflow.storage.models import (
    AuthPath,
    Challenge,
    ChallengePurpose,
    ConfirmationStatus,
    DeviceContext,
    DeviceTrust,
    LockStatus,
    Principal,
    ResetTicket,
    utcnow,
)
from authflow.storage.protocol import AuthStore
from authflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class ChallengeHandle:
    """What a caller needs to submit a code; never carries the code itself
    except in test mode with code exposure switched on."""

    challenge_id: str
    purpose: str
    expires_at: datetime
    resend_allowed_at: datetime
    principal_id: Optional[str] = None
    debug_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "challenge_id": self.challenge_id,
            "purpose": self.purpose,
            "expires_at": self.expires_at.isoformat(),
            "resend_allowed_at": self.resend_allowed_at.isoformat(),
        }
        if self.principal_id is not None:
            data["principal_id"] = self.principal_id
        if self.debug_code is not None:
            data["debug_code"] = self.debug_code
        return data


@dataclass
class SessionResult:
    tokens: SessionTokenPair
    device_confirmation: Optional[Dict[str, Any]] = None


@dataclass
class ActionReceipt:
    principal_id: str
    purpose: str
    challenge_id: str
    verified_at: datetime


@dataclass
class ResetTicketGrant:
    reset_ticket: str
    expires_at: datetime


def _hash_ticket(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class AuthFlowService:
    """Login, step-up and recovery flows built from the five core components.

    Pipeline: credential verifier -> OTP challenge -> optional device
    confirmation -> session tokens, with the lockout tracker observing
    failures from every stage.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        otp_channel: Optional[OtpDeliveryChannel] = None,
        confirmation_channel: Optional[DeviceConfirmationChannel] = None,
        dispatcher: Optional[Dispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow
        self.dispatcher = dispatcher or Dispatcher()
        self.otp_channel = otp_channel
        self.lockout = LockoutTracker(store, settings, clock=self._clock)
        self.credentials = CredentialVerifier(store, self.lockout, settings)
        self.otp = OTPChallengeManager(store, self.lockout, settings, clock=self._clock)
        self.devices = DeviceConfirmationCoordinator(
            store,
            settings,
            channel=confirmation_channel,
            dispatcher=self.dispatcher,
            clock=self._clock,
        )
        self.tokens = SessionTokenAuthority(store, settings, cache=cache, clock=self._clock)

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _expose_codes(self) -> bool:
        return self.settings.test_mode and self.settings.expose_otp_codes

    def _deliver(self, principal: Principal, issued: IssuedChallenge) -> None:
        if self.otp_channel is None:
            logger.warning(
                "otp_delivery_skipped", principal_id=principal.id, purpose=issued.challenge.purpose
            )
            return
        self.dispatcher.submit(
            self.otp_channel.send(principal, issued.code, issued.challenge.purpose),
            event="otp_delivery",
            principal_id=principal.id,
            purpose=issued.challenge.purpose,
        )

    def _handle(
        self,
        challenge: Challenge,
        *,
        code: Optional[str] = None,
        include_principal: bool = True,
    ) -> ChallengeHandle:
        return ChallengeHandle(
            challenge_id=challenge.id,
            purpose=challenge.purpose,
            expires_at=challenge.expires_at,
            resend_allowed_at=challenge.resend_allowed_at,
            principal_id=challenge.principal_id if include_principal else None,
            debug_code=code if (code and self._expose_codes()) else None,
        )

    def _issue_or_current(
        self, principal: Principal, purpose: str, *, include_principal: bool = True
    ) -> ChallengeHandle:
        """Issue and deliver a code, or hand back the active one while in cooldown."""
        try:
            issued = self.otp.issue(principal.id, purpose)
        except RateLimitedError:
            current = self.store.get_latest_challenge(principal.id, purpose)
            if current is None or not current.is_active(self._now()):
                raise
            return self._handle(current, include_principal=include_principal)
        self._deliver(principal, issued)
        return self._handle(issued.challenge, code=issued.code, include_principal=include_principal)

    def _require_principal(self, principal_id: str) -> Principal:
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found")
        return principal

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(
        self, identifier: str, secret: str, device_context: DeviceContext
    ) -> ChallengeHandle | SessionResult:
        if not identifier or not secret:
            raise ValidationError("identifier and secret are required")
        result = self.credentials.verify(
            identifier, secret, risk_flags=device_context.risk_flags
        )
        logger.info(
            "login_credentials_verified",
            principal_id=result.principal_id,
            identifier=mask_identifier(result.identifier),
        )
        if self.settings.require_login_otp:
            return self._issue_or_current(result.principal, ChallengePurpose.LOGIN)
        return await self._complete_login(result.principal, device_context, otp_verified=False)

    async def _complete_login(
        self, principal: Principal, device_context: DeviceContext, *, otp_verified: bool
    ) -> SessionResult:
        if not self.devices.requires_confirmation(principal, device_context):
            tokens = self.tokens.issue(
                principal.id,
                device_context,
                device_trust=DeviceTrust.NOT_REQUIRED,
                auth_path=AuthPath.PASSWORD_OTP if otp_verified else AuthPath.PASSWORD,
            )
            self.lockout.record_success(principal.id)
            return SessionResult(tokens=tokens)

        pending = self.devices.request_confirmation(principal.id, device_context.device_id)
        record = await self.devices.await_confirmation(pending.callback_id)

        if record.status == ConfirmationStatus.REJECTED:
            lock = self.lockout.record_failure(principal.id, FailureStage.DEVICE)
            logger.warning(
                "login_device_rejected",
                principal_id=principal.id,
                device_id=device_context.device_id,
                callback_id=record.callback_id,
            )
            raise DeviceRejectedError(
                "login was rejected from the confirmation device",
                detail={
                    "callback_id": record.callback_id,
                    "lock_state": lock.state,
                    "attempts_remaining": self.lockout.attempts_remaining(lock),
                },
            )

        if record.status == ConfirmationStatus.CONFIRMED:
            self.store.add_trusted_device(principal.id, device_context.device_id)
            tokens = self.tokens.issue(
                principal.id,
                device_context,
                device_trust=DeviceTrust.CONFIRMED,
                auth_path=AuthPath.PASSWORD_OTP_DEVICE,
            )
        else:
            tokens = self.tokens.issue(
                principal.id,
                device_context,
                device_trust=DeviceTrust.UNCONFIRMED,
                auth_path=AuthPath.FALLBACK,
            )
            self.devices.attach_family(record.callback_id, tokens.family_id)
            logger.info(
                "login_fallback_session_issued",
                principal_id=principal.id,
                callback_id=record.callback_id,
                family_id=tokens.family_id,
            )
        self.lockout.record_success(principal.id)
        return SessionResult(
            tokens=tokens,
            device_confirmation={"callback_id": record.callback_id, "status": record.status},
        )

    # ------------------------------------------------------------------
    # Codes
    # ------------------------------------------------------------------

    async def verify_otp(
        self,
        principal_id: Optional[str],
        code: str,
        purpose: str,
        *,
        challenge_id: Optional[str] = None,
        device_context: Optional[DeviceContext] = None,
    ) -> SessionResult | ActionReceipt | ResetTicketGrant:
        if purpose == ChallengePurpose.LOGIN and device_context is None:
            raise ValidationError("device is required to complete a login")
        challenge = self.otp.verify(
            code, challenge_id=challenge_id, principal_id=principal_id, purpose=purpose
        )
        if challenge.purpose == ChallengePurpose.LOGIN:
            principal = self._require_principal(challenge.principal_id)
            return await self._complete_login(principal, device_context, otp_verified=True)
        if challenge.purpose == ChallengePurpose.PASSWORD_RESET:
            return self._mint_reset_ticket(challenge.principal_id)
        logger.info(
            "action_verified",
            principal_id=challenge.principal_id,
            purpose=challenge.purpose,
            challenge_id=challenge.id,
        )
        return ActionReceipt(
            principal_id=challenge.principal_id,
            purpose=challenge.purpose,
            challenge_id=challenge.id,
            verified_at=challenge.consumed_at or self._now(),
        )

    async def resend_otp(self, principal_id: str, purpose: str) -> ChallengeHandle:
        self.lockout.ensure_unlocked(
            principal_id, allow_soft=purpose == ChallengePurpose.PASSWORD_RESET
        )
        principal = self._require_principal(principal_id)
        issued = self.otp.resend(principal.id, purpose)
        self._deliver(principal, issued)
        return self._handle(
            issued.challenge,
            code=issued.code,
            include_principal=purpose != ChallengePurpose.PASSWORD_RESET,
        )

    async def request_action_otp(
        self, principal_id: str, purpose: str = ChallengePurpose.WALLET_ACTION
    ) -> ChallengeHandle:
        if purpose == ChallengePurpose.PASSWORD_RESET:
            raise ValidationError("password reset codes are requested through the reset flow")
        self.lockout.ensure_unlocked(principal_id)
        principal = self._require_principal(principal_id)
        issued = self.otp.issue(principal.id, purpose)
        self._deliver(principal, issued)
        return self._handle(issued.challenge, code=issued.code)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def _select_reset_path(
        self, phone: Optional[str], date_of_birth: Optional[str]
    ) -> ResetPath:
        supplied = []
        if phone:
            supplied.append(ResetPath.PHONE_AND_NATIONAL_ID)
        if date_of_birth:
            supplied.append(ResetPath.NATIONAL_ID_AND_DOB)
        if not supplied:
            raise ValidationError("phone or date_of_birth is required with national_id")
        enabled = set(self.settings.password_reset_paths)
        for path in supplied:
            if path not in enabled:
                raise ValidationError(
                    "identification path is not enabled", detail={"path": path.value}
                )
        if len(supplied) == 1:
            return supplied[0]
        precedence = self.settings.password_reset_precedence
        if precedence == RESET_PRECEDENCE_REJECT:
            raise ValidationError(
                "supply either phone or date_of_birth, not both",
                detail={"paths": [p.value for p in supplied]},
            )
        return ResetPath(precedence)

    @staticmethod
    def _parse_dob(value: str) -> str:
        try:
            return date.fromisoformat(value.strip()).isoformat()
        except ValueError:
            raise ValidationError("date_of_birth must be YYYY-MM-DD") from None

    def _decoy_handle(self) -> ChallengeHandle:
        now = self._now()
        return ChallengeHandle(
            challenge_id=str(uuid.uuid4()),
            purpose=ChallengePurpose.PASSWORD_RESET,
            expires_at=now + timedelta(seconds=self.settings.otp_ttl_seconds),
            resend_allowed_at=now + timedelta(seconds=self.settings.otp_resend_cooldown_seconds),
        )

    async def start_password_reset(
        self,
        national_id: str,
        *,
        phone: Optional[str] = None,
        date_of_birth: Optional[str] = None,
    ) -> ChallengeHandle:
        """Start the forgot-password flow.

        The response has the same shape whether or not the details match an
        account; unmatched requests get a decoy handle and nothing is sent.
        """
        national_id = (national_id or "").strip()
        if not is_national_id(national_id):
            raise ValidationError("national_id must be 10 digits starting with 1 or 2")
        path = self._select_reset_path(phone, date_of_birth)

        principal = self.store.find_principal_by_identifier(national_id)
        matched = False
        if principal is not None:
            if path == ResetPath.PHONE_AND_NATIONAL_ID:
                normalized = normalize_phone(
                    phone or "",
                    country_code=self.settings.phone_country_code,
                    local_pattern=self.settings.phone_local_pattern,
                )
                matched = normalized is not None and normalized == principal.phone
            else:
                matched = (
                    principal.date_of_birth is not None
                    and self._parse_dob(date_of_birth or "") == principal.date_of_birth
                )
        elif path == ResetPath.NATIONAL_ID_AND_DOB:
            self._parse_dob(date_of_birth or "")

        if not matched or self.lockout.current_state(principal.id).state == LockStatus.HARD_LOCKED:
            logger.info("password_reset_unmatched", path=path.value)
            return self._decoy_handle()

        logger.info("password_reset_started", principal_id=principal.id, path=path.value)
        return self._issue_or_current(
            principal, ChallengePurpose.PASSWORD_RESET, include_principal=False
        )

    def _mint_reset_ticket(self, principal_id: str) -> ResetTicketGrant:
        now = self._now()
        raw = secrets.token_urlsafe(32)
        ticket = ResetTicket(
            ticket_hash=_hash_ticket(raw),
            principal_id=principal_id,
            expires_at=now + timedelta(seconds=self.settings.reset_ticket_ttl_seconds),
            created_at=now,
        )
        self.store.save_reset_ticket(ticket)
        logger.info("password_reset_ticket_issued", principal_id=principal_id)
        return ResetTicketGrant(reset_ticket=raw, expires_at=ticket.expires_at)

    async def verify_password_reset(self, challenge_id: str, code: str) -> ResetTicketGrant:
        challenge = self.otp.verify(
            code, challenge_id=challenge_id, purpose=ChallengePurpose.PASSWORD_RESET
        )
        return self._mint_reset_ticket(challenge.principal_id)

    async def complete_password_reset(self, ticket: str, new_secret: str) -> str:
        if not new_secret:
            raise ValidationError("new secret is required")
        redeemed = self.store.consume_reset_ticket(_hash_ticket(ticket or ""), now=self._now())
        if redeemed is None:
            raise ExpiredError("reset ticket is invalid or expired; start again")
        principal_id = redeemed.principal_id
        self.lockout.ensure_unlocked(principal_id, allow_soft=True)
        credential_hash, algo = self.credentials.hash_secret(new_secret)
        self.store.update_credential(principal_id, credential_hash, algo)
        self.lockout.clear_soft_lock(principal_id)
        revoked = await self.tokens.revoke(
            principal_id, all_devices=True, reason="password_reset"
        )
        logger.info(
            "password_reset_completed", principal_id=principal_id, revoked_families=len(revoked)
        )
        return principal_id

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> SessionTokenPair:
        return await self.tokens.refresh(refresh_token)

    async def authenticate(self, access_token: str) -> AccessClaims:
        return await self.tokens.verify_access(access_token)

    async def logout(
        self,
        *,
        refresh_token: Optional[str] = None,
        all_devices: bool = False,
        claims: Optional[AccessClaims] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        if all_devices:
            if claims is None:
                raise ValidationError("a bearer token is required to log out everywhere")
            revoked = await self.tokens.revoke(
                claims.principal_id, all_devices=True, access_token=access_token
            )
            return {"revoked_families": len(revoked)}
        if not refresh_token:
            raise ValidationError("refresh_token is required")
        family_id = await self.tokens.revoke_token(refresh_token, access_token=access_token)
        return {"revoked_families": 1 if family_id else 0}

    def owns_challenge(self, principal_id: str, challenge_id: str) -> bool:
        """True if ``challenge_id`` was issued to ``principal_id``, whatever its state."""
        challenge = self.store.get_challenge(challenge_id)
        return challenge is not None and challenge.principal_id == principal_id

    def lock_state(self, principal_id: str) -> Dict[str, Any]:
        self._require_principal(principal_id)
        record = self.lockout.current_state(principal_id)
        unlock_method = {
            LockStatus.SOFT_LOCKED: "credential_reset",
            LockStatus.HARD_LOCKED: "support",
        }.get(record.state)
        return {
            "principal_id": principal_id,
            "state": record.state,
            "failures": record.failures,
            "attempts_remaining": self.lockout.attempts_remaining(record),
            "unlock_method": unlock_method,
            "locked_at": record.locked_at.isoformat() if record.locked_at else None,
        }

    def profile(self, principal_id: str) -> Dict[str, Any]:
        principal = self._require_principal(principal_id)
        return {
            "principal_id": principal.id,
            "phone": mask_identifier(principal.phone),
            "email": mask_identifier(principal.email),
            "locale": principal.locale,
            "trusted_devices": len(principal.trusted_devices or []),
        }

    # ------------------------------------------------------------------
    # Trusted devices
    # ------------------------------------------------------------------

    def list_trusted_devices(self, principal_id: str) -> list[str]:
        principal = self._require_principal(principal_id)
        return list(principal.trusted_devices or [])

    async def deactivate_trusted_device(
        self, principal_id: str, device_id: str, *, challenge_id: str, code: str
    ) -> Dict[str, Any]:
        """Forget a trusted device and end its sessions.

        Guarded by a step-up code like any other sensitive action; the code
        is only spent once the device is known to be trusted.
        """
        if device_id not in self.list_trusted_devices(principal_id):
            raise NotFoundError("device is not trusted", detail={"device_id": device_id})
        self.otp.verify(
            code,
            challenge_id=challenge_id,
            principal_id=principal_id,
            purpose=ChallengePurpose.WALLET_ACTION,
        )
        removed = self.store.remove_trusted_device(principal_id, device_id)
        revoked = await self.tokens.revoke(
            principal_id, device_id=device_id, reason="device_deactivated"
        )
        logger.info(
            "trusted_device_deactivated",
            principal_id=principal_id,
            device_id=device_id,
            removed=removed,
            revoked_families=len(revoked),
        )
        return {"device_id": device_id, "deactivated": removed, "revoked_families": len(revoked)}

    def purge_expired_records(self) -> Dict[str, int]:
        """Delete records nothing can use any more; returns counts per kind.

        Challenges go as soon as they expire. Sessions, confirmations and
        reset tickets are kept for ``record_retention_seconds`` after they
        expire or resolve. Idle identifier lock buckets are kept for at least
        one lockout window.
        """
        now = self._now()
        retention = self.settings.record_retention_seconds
        cutoff = now - timedelta(seconds=retention)
        removed = {
            "challenges": self.otp.purge_expired(),
            "sessions": self.store.purge_expired_sessions(cutoff),
            "confirmations": self.store.purge_resolved_confirmations(cutoff),
            "reset_tickets": self.store.purge_reset_tickets(cutoff),
            "lock_buckets": 0,
        }
        window = self.settings.lockout_window_seconds
        # A zero window never resets the counter, so buckets are the only memory of failures
        if window > 0:
            idle_cutoff = now - timedelta(seconds=max(retention, window))
            removed["lock_buckets"] = self.store.purge_idle_lock_records(idle_cutoff)
        if any(removed.values()):
            logger.info("expired_records_purged", **removed)
        return removed

    async def aclose(self) -> None:
        await self.dispatcher.drain()
