from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import InvalidCredentialsError
from authflow.service.identifiers import (
    identifier_bucket,
    mask_identifier,
    normalize_identifier,
)
from authflow.service.lockout import FailureStage, LockoutTracker
from authflow.storage.models import Principal
from authflow.storage.protocol import AuthStore

logger = get_logger(__name__)

CREDENTIAL_ALGO = "argon2id"


@dataclass
class CredentialResult:
    principal: Principal
    identifier: str
    subject: str

    @property
    def principal_id(self) -> str:
        return self.principal.id


class CredentialVerifier:
    """Checks an identifier + secret pair against the identity store.

    Unknown identifiers and wrong secrets take the same path: an argon2
    verification is always performed (against a dummy hash when needed) and
    the same error is raised, so neither timing nor payload reveals whether
    an account exists.
    """

    def __init__(
        self,
        store: AuthStore,
        lockout: LockoutTracker,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.settings = settings
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._hasher.hash("authflow-dummy-credential")

    def normalize(self, identifier: str) -> str:
        return normalize_identifier(
            identifier.strip(),
            country_code=self.settings.phone_country_code,
            local_pattern=self.settings.phone_local_pattern,
        )

    def hash_secret(self, secret: str) -> Tuple[str, str]:
        return self._hasher.hash(secret), CREDENTIAL_ALGO

    def resolve(self, identifier: str) -> Tuple[str, Optional[Principal], str]:
        """Return ``(normalized, principal, lockout_subject)`` for an identifier."""
        normalized = self.normalize(identifier)
        principal = self.store.find_principal_by_identifier(normalized)
        subject = principal.id if principal else identifier_bucket(normalized)
        return normalized, principal, subject

    def _is_high_risk(self, risk_flags: Iterable[str]) -> bool:
        configured = set(self.settings.high_risk_flags)
        return any(flag in configured for flag in risk_flags or ())

    def _check_secret(self, principal: Optional[Principal], secret: str) -> bool:
        stored = principal.credential_hash if principal else None
        if not stored or (principal and principal.credential_algo != CREDENTIAL_ALGO):
            # Burn the same work as a real comparison before failing
            try:
                self._hasher.verify(self._dummy_hash, secret + "\x00")
            except VerificationError:
                pass
            return False
        try:
            return self._hasher.verify(stored, secret)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def verify(
        self, identifier: str, secret: str, *, risk_flags: Iterable[str] = ()
    ) -> CredentialResult:
        normalized, principal, subject = self.resolve(identifier)
        # Locked subjects are rejected before the secret is evaluated
        self.lockout.ensure_unlocked(subject)

        if not self._check_secret(principal, secret):
            high_risk = self._is_high_risk(risk_flags)
            record = self.lockout.record_failure(
                subject, FailureStage.CREDENTIAL, high_risk=high_risk
            )
            logger.warning(
                "credential_verification_failed",
                identifier=mask_identifier(normalized),
                high_risk=high_risk,
                lock_state=record.state,
            )
            raise InvalidCredentialsError(
                "invalid credentials",
                detail={
                    "lock_state": record.state,
                    "attempts_remaining": self.lockout.attempts_remaining(record),
                },
            )

        if principal.credential_hash and self._hasher.check_needs_rehash(
            principal.credential_hash
        ):
            new_hash, algo = self.hash_secret(secret)
            self.store.update_credential(principal.id, new_hash, algo)
            logger.info("credential_rehashed", principal_id=principal.id)

        return CredentialResult(principal=principal, identifier=normalized, subject=subject)
