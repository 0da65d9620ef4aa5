from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import (
    ServerError,
    TokenExpiredError,
    TokenInvalidError,
    TokenReusedError,
    ValidationError,
)
from authflow.storage.models import (
    DeviceContext,
    RefreshTokenRecord,
    TokenFamily,
    utcnow,
)
from authflow.storage.protocol import AuthStore
from authflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class SessionTokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    family_id: str
    principal_id: str
    device_id: str
    device_trust: str
    auth_path: str
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "access_expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
            "family_id": self.family_id,
            "principal_id": self.principal_id,
            "device_id": self.device_id,
            "device_trust": self.device_trust,
            "auth_path": self.auth_path,
        }


@dataclass
class AccessClaims:
    principal_id: str
    family_id: str
    device_id: str
    device_trust: str
    auth_path: str
    jti: str
    expires_at: datetime


class SessionTokenAuthority:
    """Issues, rotates and revokes HS256 access/refresh token pairs.

    Every pair belongs to a token family (one login on one device). Refresh
    tokens are single use: rotation is a compare-and-set in the store, and a
    rotated token presented again revokes its whole family.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._clock = clock or utcnow
        self._leeway = timedelta(seconds=settings.token_leeway_seconds)
        # In-process access denylist (jti -> expiry timestamp) used without Redis
        self._denylist: Dict[str, float] = {}
        self._denylist_lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # JWT encoding
    # ------------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, expected_type: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise TokenInvalidError("malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("malformed token") from None
        # Pin the algorithm so a token cannot choose its own verification
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=str(alg))
            raise TokenInvalidError("unsupported token algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalidError("bad token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalidError("unexpected token audience")
        if payload.get("token_type") != expected_type:
            raise TokenInvalidError("wrong token type")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("token has no expiry") from None
        if exp_ts <= (self._now() - self._leeway).timestamp():
            raise TokenExpiredError("token expired")
        if not payload.get("jti") or not payload.get("sub") or not payload.get("fid"):
            raise TokenInvalidError("token is missing required claims")
        return payload

    # ------------------------------------------------------------------
    # Issuance and rotation
    # ------------------------------------------------------------------

    def _new_refresh_record(
        self, family: TokenFamily, issued_at: datetime
    ) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            jti=str(uuid.uuid4()),
            family_id=family.id,
            principal_id=family.principal_id,
            device_id=family.device_id,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )

    def _build_pair(
        self, family: TokenFamily, refresh: RefreshTokenRecord, now: datetime
    ) -> SessionTokenPair:
        access_expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        if access_expires_at >= refresh.expires_at:
            raise ServerError("access token would outlive its refresh token")
        common = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": family.principal_id,
            "fid": family.id,
            "did": family.device_id,
            "device_trust": family.device_trust,
            "auth_path": family.auth_path,
            "iat": int(now.timestamp()),
        }
        access_token = self._encode_jwt(
            {
                **common,
                "jti": str(uuid.uuid4()),
                "token_type": "access",
                "exp": int(access_expires_at.timestamp()),
            }
        )
        refresh_token = self._encode_jwt(
            {
                **common,
                "jti": refresh.jti,
                "token_type": "refresh",
                "exp": int(refresh.expires_at.timestamp()),
            }
        )
        return SessionTokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh.expires_at,
            family_id=family.id,
            principal_id=family.principal_id,
            device_id=family.device_id,
            device_trust=family.device_trust,
            auth_path=family.auth_path,
        )

    def issue(
        self,
        principal_id: str,
        device_context: DeviceContext,
        *,
        device_trust: str,
        auth_path: str,
    ) -> SessionTokenPair:
        now = self._now()
        family = TokenFamily(
            id=str(uuid.uuid4()),
            principal_id=principal_id,
            device_id=device_context.device_id,
            device_trust=device_trust,
            auth_path=auth_path,
            created_at=now,
        )
        first = self._new_refresh_record(family, now)
        pair = self._build_pair(family, first, now)
        self.store.create_token_family(family, first)
        logger.info(
            "session_tokens_issued",
            principal_id=principal_id,
            family_id=family.id,
            device_id=device_context.device_id,
            device_trust=device_trust,
            auth_path=auth_path,
        )
        return pair

    async def refresh(self, refresh_token: str) -> SessionTokenPair:
        payload = self._decode_jwt(refresh_token, expected_type="refresh")
        jti = payload["jti"]
        record = self.store.get_refresh_token(jti)
        if record is None or record.principal_id != payload["sub"] or record.family_id != payload["fid"]:
            raise TokenInvalidError("unknown refresh token")

        now = self._now()
        family = self.store.get_token_family(record.family_id)
        if family is None:
            raise TokenInvalidError("unknown token family")
        successor = self._new_refresh_record(family, now)
        outcome = self.store.rotate_refresh_token(jti, successor, now=now)

        if outcome.status == "reused":
            self.store.revoke_token_family(record.family_id, reason="reuse_detected", now=now)
            logger.warning(
                "refresh_token_reuse_detected",
                principal_id=record.principal_id,
                family_id=record.family_id,
                device_id=record.device_id,
            )
            raise TokenReusedError("refresh token already used")
        if outcome.status != "rotated" or outcome.family is None or outcome.record is None:
            logger.info(
                "refresh_token_rejected",
                family_id=record.family_id,
                outcome=outcome.status,
            )
            raise TokenInvalidError("refresh token revoked")

        # Trust flag comes from the family so a late upgrade carries forward
        pair = self._build_pair(outcome.family, outcome.record, now)
        logger.info(
            "session_tokens_rotated",
            principal_id=record.principal_id,
            family_id=record.family_id,
        )
        return pair

    # ------------------------------------------------------------------
    # Access verification and revocation
    # ------------------------------------------------------------------

    async def _is_denylisted(self, jti: str) -> bool:
        now_ts = self._now().timestamp()
        with self._denylist_lock:
            expiry = self._denylist.get(jti)
            if expiry is not None:
                if expiry > now_ts:
                    return True
                self._denylist.pop(jti, None)
        if self.cache:
            try:
                return await self.cache.is_access_token_denylisted(jti)
            except Exception as exc:
                logger.warning("denylist_check_failed", jti=jti, error=str(exc))
        return False

    async def _denylist_access(self, jti: str, exp_ts: float) -> None:
        now_ts = self._now().timestamp()
        ttl = int(exp_ts - now_ts)
        if ttl <= 0:
            return
        with self._denylist_lock:
            # Expired tokens fail on exp alone, so their entries can go
            for stale in [k for k, expiry in self._denylist.items() if expiry <= now_ts]:
                del self._denylist[stale]
            self._denylist[jti] = exp_ts
        if self.cache:
            try:
                await self.cache.denylist_access_token(jti, ttl)
            except Exception as exc:
                logger.warning("access_token_denylist_failed", jti=jti, error=str(exc))

    async def verify_access(self, access_token: str) -> AccessClaims:
        payload = self._decode_jwt(access_token, expected_type="access")
        if await self._is_denylisted(payload["jti"]):
            logger.info("access_token_denylisted", jti=payload["jti"])
            raise TokenInvalidError("token revoked")
        family = self.store.get_token_family(payload["fid"])
        if family is None or family.revoked or family.principal_id != payload["sub"]:
            raise TokenInvalidError("token revoked")
        return AccessClaims(
            principal_id=payload["sub"],
            family_id=family.id,
            device_id=family.device_id,
            device_trust=family.device_trust,
            auth_path=family.auth_path,
            jti=payload["jti"],
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    async def revoke(
        self,
        principal_id: str,
        *,
        device_id: Optional[str] = None,
        all_devices: bool = False,
        reason: str = "logout",
        access_token: Optional[str] = None,
    ) -> list[str]:
        """Revoke the principal's families on ``device_id``, or all of them."""
        if not all_devices and device_id is None:
            raise ValidationError("device_id is required unless all_devices is set")
        revoked = self.store.revoke_principal_families(
            principal_id,
            reason=reason,
            now=self._now(),
            device_id=None if all_devices else device_id,
        )
        if access_token:
            await self._denylist_presented(access_token)
        logger.info(
            "session_families_revoked",
            principal_id=principal_id,
            device_id=device_id,
            all_devices=all_devices,
            reason=reason,
            count=len(revoked),
        )
        return revoked

    async def revoke_token(
        self, refresh_token: str, *, access_token: Optional[str] = None
    ) -> Optional[str]:
        """Logout of one session: revoke the family the refresh token belongs to."""
        try:
            payload = self._decode_jwt(refresh_token, expected_type="refresh")
        except TokenExpiredError:
            # Logging out with a stale token is still a logout
            return None
        record = self.store.get_refresh_token(payload["jti"])
        if record is None or record.family_id != payload["fid"]:
            raise TokenInvalidError("unknown refresh token")
        self.store.revoke_token_family(record.family_id, reason="logout", now=self._now())
        if access_token:
            await self._denylist_presented(access_token)
        logger.info(
            "session_family_revoked",
            principal_id=record.principal_id,
            family_id=record.family_id,
        )
        return record.family_id

    async def _denylist_presented(self, access_token: str) -> None:
        try:
            payload = self._decode_jwt(access_token, expected_type="access")
        except (TokenInvalidError, TokenExpiredError):
            return
        await self._denylist_access(payload["jti"], float(payload["exp"]))
