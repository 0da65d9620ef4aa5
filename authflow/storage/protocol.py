from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple

from authflow.storage.models import (
    Challenge,
    DeviceConfirmation,
    LockRecord,
    Principal,
    RefreshTokenRecord,
    ResetTicket,
    RotationOutcome,
    TokenFamily,
)


class AuthStore(Protocol):
    """Persistence contract shared by the memory and Postgres stores.

    Every method that enforces an invariant (one active challenge, monotonic
    confirmation status, single-use refresh rotation, lock record updates)
    is atomic with respect to concurrent callers for the same principal.
    """

    # Principals
    def create_principal(
        self,
        *,
        credential_hash: Optional[str],
        credential_algo: str = "argon2id",
        phone: Optional[str] = None,
        email: Optional[str] = None,
        national_id: Optional[str] = None,
        date_of_birth: Optional[str] = None,
        locale: str = "ar",
        meta: Optional[dict] = None,
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def find_principal_by_identifier(self, identifier: str) -> Optional[Principal]: ...

    def update_credential(
        self, principal_id: str, credential_hash: str, credential_algo: str
    ) -> None: ...

    def add_trusted_device(self, principal_id: str, device_id: str) -> None: ...

    def remove_trusted_device(self, principal_id: str, device_id: str) -> bool: ...

    # Challenges
    def issue_challenge(
        self, challenge: Challenge, *, now: datetime
    ) -> Tuple[bool, Challenge]: ...

    def get_challenge(self, challenge_id: str) -> Optional[Challenge]: ...

    def get_latest_challenge(
        self, principal_id: str, purpose: str
    ) -> Optional[Challenge]: ...

    def record_challenge_attempt(self, challenge_id: str) -> Optional[Challenge]: ...

    def consume_challenge(self, challenge_id: str, *, now: datetime) -> bool: ...

    def purge_expired_challenges(self, before: datetime) -> int: ...

    # Lock records
    def get_lock_record(self, subject: str) -> Optional[LockRecord]: ...

    def mutate_lock_record(
        self, subject: str, mutate: Callable[[LockRecord], LockRecord]
    ) -> LockRecord: ...

    def purge_idle_lock_records(self, before: datetime) -> int: ...

    # Device confirmations
    def create_device_confirmation(
        self, confirmation: DeviceConfirmation
    ) -> DeviceConfirmation: ...

    def get_device_confirmation(self, callback_id: str) -> Optional[DeviceConfirmation]: ...

    def transition_device_confirmation(
        self,
        callback_id: str,
        *,
        to_status: str,
        now: datetime,
        expected: str = "pending",
    ) -> Tuple[bool, Optional[DeviceConfirmation]]: ...

    def set_confirmation_family(self, callback_id: str, family_id: str) -> None: ...

    def purge_resolved_confirmations(self, before: datetime) -> int: ...

    # Token families
    def create_token_family(
        self, family: TokenFamily, first_token: RefreshTokenRecord
    ) -> None: ...

    def get_token_family(self, family_id: str) -> Optional[TokenFamily]: ...

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, jti: str, successor: RefreshTokenRecord, *, now: datetime
    ) -> RotationOutcome: ...

    def revoke_token_family(
        self, family_id: str, *, reason: str, now: datetime
    ) -> bool: ...

    def revoke_principal_families(
        self,
        principal_id: str,
        *,
        reason: str,
        now: datetime,
        device_id: Optional[str] = None,
    ) -> List[str]: ...

    def update_family_trust(
        self, family_id: str, device_trust: str
    ) -> Optional[TokenFamily]: ...

    def purge_expired_sessions(self, before: datetime) -> int: ...

    # Reset tickets
    def save_reset_ticket(self, ticket: ResetTicket) -> None: ...

    def consume_reset_ticket(
        self, ticket_hash: str, *, now: datetime
    ) -> Optional[ResetTicket]: ...

    def purge_reset_tickets(self, before: datetime) -> int: ...
