from __future__ import annotations

import dataclasses
import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from authflow.logging import get_logger
from authflow.storage.errors import ConstraintViolation, RecordNotFound
from authflow.storage.models import (
    Challenge,
    ConfirmationStatus,
    DeviceConfirmation,
    LockRecord,
    LockStatus,
    Principal,
    RefreshStatus,
    RefreshTokenRecord,
    ResetTicket,
    RotationOutcome,
    TokenFamily,
)

_DATETIME_FIELDS: Dict[type, Tuple[str, ...]] = {
    Principal: ("created_at",),
    Challenge: (
        "issued_at",
        "expires_at",
        "resend_allowed_at",
        "consumed_at",
        "superseded_at",
    ),
    DeviceConfirmation: ("created_at", "deadline_at", "resolved_at"),
    LockRecord: ("window_started_at", "locked_at", "updated_at"),
    TokenFamily: ("created_at", "revoked_at"),
    RefreshTokenRecord: ("issued_at", "expires_at", "rotated_at"),
    ResetTicket: ("expires_at", "created_at", "consumed_at"),
}


class MemoryStore:
    """In-process store persisted to a JSON snapshot so state survives restarts."""

    def __init__(self, fs_root: str = "/tmp/authflow", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.identifier_index: Dict[str, str] = {}
        self.challenges: Dict[str, Challenge] = {}
        self.confirmations: Dict[str, DeviceConfirmation] = {}
        self.lock_records: Dict[str, LockRecord] = {}
        self.families: Dict[str, TokenFamily] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.reset_tickets: Dict[str, ResetTicket] = {}
        # RLock so compound operations can call helpers that also lock
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "authflow_state.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize(self, obj: Any) -> dict:
        data = dataclasses.asdict(obj)
        for name in _DATETIME_FIELDS[type(obj)]:
            data[name] = self._serialize_datetime(data.get(name))
        return data

    def _deserialize(self, cls: Type, raw: dict) -> Any:
        data = dict(raw)
        for name in _DATETIME_FIELDS[cls]:
            data[name] = self._deserialize_datetime(data.get(name))
        return cls(**data)

    def verify_connection(self) -> None:
        if self.persist:
            self._state_path()

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

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
        meta: Optional[Dict] = None,
    ) -> Principal:
        identifiers = [
            value
            for value in (phone, email.lower() if email else None, national_id)
            if value
        ]
        if not identifiers:
            raise ConstraintViolation("principal needs at least one identifier")
        with self._data_lock:
            for identifier in identifiers:
                if identifier in self.identifier_index:
                    raise ConstraintViolation(
                        "identifier already registered", {"field": "identifier"}
                    )
            principal = Principal(
                id=str(uuid.uuid4()),
                identifiers=identifiers,
                credential_hash=credential_hash,
                credential_algo=credential_algo,
                locale=locale,
                national_id=national_id,
                phone=phone,
                email=email.lower() if email else None,
                date_of_birth=date_of_birth,
                meta=dict(meta) if meta else {},
            )
            self.principals[principal.id] = principal
            for identifier in identifiers:
                self.identifier_index[identifier] = principal.id
            self._persist_state()
            return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def find_principal_by_identifier(self, identifier: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self.identifier_index.get(identifier)
            if principal_id is None and "@" in identifier:
                principal_id = self.identifier_index.get(identifier.lower())
            return self.principals.get(principal_id) if principal_id else None

    def update_credential(
        self, principal_id: str, credential_hash: str, credential_algo: str
    ) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise RecordNotFound("principal not found", {"principal_id": principal_id})
            principal.credential_hash = credential_hash
            principal.credential_algo = credential_algo
            self._persist_state()

    def add_trusted_device(self, principal_id: str, device_id: str) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise RecordNotFound("principal not found", {"principal_id": principal_id})
            if device_id not in principal.trusted_devices:
                principal.trusted_devices.append(device_id)
                self._persist_state()

    def remove_trusted_device(self, principal_id: str, device_id: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise RecordNotFound("principal not found", {"principal_id": principal_id})
            if device_id not in principal.trusted_devices:
                return False
            principal.trusted_devices = [
                d for d in principal.trusted_devices if d != device_id
            ]
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    def _active_challenge(
        self, principal_id: str, purpose: str, now: datetime
    ) -> Optional[Challenge]:
        for challenge in self.challenges.values():
            if (
                challenge.principal_id == principal_id
                and challenge.purpose == purpose
                and challenge.is_active(now)
            ):
                return challenge
        return None

    def issue_challenge(
        self, challenge: Challenge, *, now: datetime
    ) -> Tuple[bool, Challenge]:
        """Insert ``challenge`` unless the active one is still inside its cooldown.

        Returns ``(True, challenge)`` when issued, or ``(False, blocking)`` with
        the active challenge whose resend deadline has not passed yet.
        """
        with self._data_lock:
            current = self._active_challenge(challenge.principal_id, challenge.purpose, now)
            if current is not None:
                if now < current.resend_allowed_at:
                    return False, dataclasses.replace(current)
                current.superseded_at = now
            self.challenges[challenge.id] = dataclasses.replace(challenge)
            self._persist_state()
            return True, dataclasses.replace(challenge)

    def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            return dataclasses.replace(challenge) if challenge else None

    def get_latest_challenge(self, principal_id: str, purpose: str) -> Optional[Challenge]:
        with self._data_lock:
            candidates = [
                c
                for c in self.challenges.values()
                if c.principal_id == principal_id and c.purpose == purpose
            ]
            if not candidates:
                return None
            return dataclasses.replace(max(candidates, key=lambda c: c.issued_at))

    def record_challenge_attempt(self, challenge_id: str) -> Optional[Challenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge:
                return None
            challenge.attempts += 1
            self._persist_state()
            return dataclasses.replace(challenge)

    def consume_challenge(self, challenge_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or not challenge.is_active(now):
                return False
            challenge.consumed_at = now
            self._persist_state()
            return True

    def purge_expired_challenges(self, before: datetime) -> int:
        with self._data_lock:
            stale = [cid for cid, c in self.challenges.items() if c.expires_at < before]
            for cid in stale:
                self.challenges.pop(cid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------------
    # Lock records
    # ------------------------------------------------------------------

    def get_lock_record(self, subject: str) -> Optional[LockRecord]:
        with self._data_lock:
            record = self.lock_records.get(subject)
            return dataclasses.replace(record) if record else None

    def purge_idle_lock_records(self, before: datetime) -> int:
        """Drop open ``identifier:`` buckets untouched since ``before``.

        Principal records are kept since they carry the soft-lock history.
        """
        with self._data_lock:
            stale = [
                subject
                for subject, record in self.lock_records.items()
                if subject.startswith("identifier:")
                and record.state == LockStatus.OPEN
                and (record.updated_at is None or record.updated_at < before)
            ]
            for subject in stale:
                self.lock_records.pop(subject, None)
            if stale:
                self._persist_state()
            return len(stale)

    def mutate_lock_record(
        self, subject: str, mutate: Callable[[LockRecord], LockRecord]
    ) -> LockRecord:
        with self._data_lock:
            current = self.lock_records.get(subject)
            working = dataclasses.replace(current) if current else LockRecord(subject=subject)
            updated = mutate(working)
            self.lock_records[subject] = updated
            self._persist_state()
            return dataclasses.replace(updated)

    # ------------------------------------------------------------------
    # Device confirmations
    # ------------------------------------------------------------------

    def create_device_confirmation(
        self, confirmation: DeviceConfirmation
    ) -> DeviceConfirmation:
        with self._data_lock:
            for existing in self.confirmations.values():
                if (
                    existing.principal_id == confirmation.principal_id
                    and existing.device_id == confirmation.device_id
                    and existing.status == ConfirmationStatus.PENDING
                ):
                    existing.status = ConfirmationStatus.TIMED_OUT
                    existing.resolved_at = confirmation.created_at
                    existing.meta = {
                        **(existing.meta or {}),
                        "superseded_by": confirmation.callback_id,
                    }
            self.confirmations[confirmation.callback_id] = confirmation
            self._persist_state()
            return confirmation

    def get_device_confirmation(self, callback_id: str) -> Optional[DeviceConfirmation]:
        with self._data_lock:
            record = self.confirmations.get(callback_id)
            return dataclasses.replace(record) if record else None

    def transition_device_confirmation(
        self,
        callback_id: str,
        *,
        to_status: str,
        now: datetime,
        expected: str = ConfirmationStatus.PENDING,
    ) -> Tuple[bool, Optional[DeviceConfirmation]]:
        with self._data_lock:
            record = self.confirmations.get(callback_id)
            if record is None:
                return False, None
            if record.status != expected:
                return False, dataclasses.replace(record)
            record.status = to_status
            record.resolved_at = now
            self._persist_state()
            return True, dataclasses.replace(record)

    def set_confirmation_family(self, callback_id: str, family_id: str) -> None:
        with self._data_lock:
            record = self.confirmations.get(callback_id)
            if record is None:
                raise RecordNotFound("confirmation not found", {"callback_id": callback_id})
            record.family_id = family_id
            self._persist_state()

    def purge_resolved_confirmations(self, before: datetime) -> int:
        """Drop confirmations resolved before ``before`` and pending ones whose deadline passed it."""
        with self._data_lock:
            stale = [
                callback_id
                for callback_id, record in self.confirmations.items()
                if (record.is_terminal and record.resolved_at is not None and record.resolved_at < before)
                or (record.status == ConfirmationStatus.PENDING and record.deadline_at < before)
            ]
            for callback_id in stale:
                self.confirmations.pop(callback_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------------
    # Token families and refresh tokens
    # ------------------------------------------------------------------

    def create_token_family(
        self, family: TokenFamily, first_token: RefreshTokenRecord
    ) -> None:
        with self._data_lock:
            if family.principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal does not exist", {"principal_id": family.principal_id}
                )
            self.families[family.id] = family
            self.refresh_tokens[first_token.jti] = first_token
            self._persist_state()

    def get_token_family(self, family_id: str) -> Optional[TokenFamily]:
        with self._data_lock:
            family = self.families.get(family_id)
            return dataclasses.replace(family) if family else None

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            return dataclasses.replace(record) if record else None

    def rotate_refresh_token(
        self, jti: str, successor: RefreshTokenRecord, *, now: datetime
    ) -> RotationOutcome:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            if record is None:
                return RotationOutcome(status="missing")
            family = self.families.get(record.family_id)
            if family is None or family.revoked or record.status == RefreshStatus.REVOKED:
                return RotationOutcome(status="revoked", record=record, family=family)
            if record.status == RefreshStatus.ROTATED:
                return RotationOutcome(status="reused", record=record, family=family)
            record.status = RefreshStatus.ROTATED
            record.rotated_at = now
            record.replaced_by = successor.jti
            self.refresh_tokens[successor.jti] = successor
            self._persist_state()
            return RotationOutcome(
                status="rotated",
                record=dataclasses.replace(successor),
                family=dataclasses.replace(family),
            )

    def _revoke_family_locked(self, family: TokenFamily, reason: str, now: datetime) -> bool:
        if family.revoked:
            return False
        family.revoked_at = now
        family.revoke_reason = reason
        for record in self.refresh_tokens.values():
            if record.family_id == family.id and record.status == RefreshStatus.ACTIVE:
                record.status = RefreshStatus.REVOKED
        return True

    def revoke_token_family(self, family_id: str, *, reason: str, now: datetime) -> bool:
        with self._data_lock:
            family = self.families.get(family_id)
            if family is None:
                return False
            changed = self._revoke_family_locked(family, reason, now)
            if changed:
                self._persist_state()
            return changed

    def revoke_principal_families(
        self,
        principal_id: str,
        *,
        reason: str,
        now: datetime,
        device_id: Optional[str] = None,
    ) -> List[str]:
        with self._data_lock:
            revoked: List[str] = []
            for family in self.families.values():
                if family.principal_id != principal_id:
                    continue
                if device_id is not None and family.device_id != device_id:
                    continue
                if self._revoke_family_locked(family, reason, now):
                    revoked.append(family.id)
            if revoked:
                self._persist_state()
            return revoked

    def update_family_trust(self, family_id: str, device_trust: str) -> Optional[TokenFamily]:
        with self._data_lock:
            family = self.families.get(family_id)
            if family is None:
                return None
            family.device_trust = device_trust
            self._persist_state()
            return dataclasses.replace(family)

    def purge_expired_sessions(self, before: datetime) -> int:
        """Drop refresh records that expired, or whose family was revoked, before ``before``.

        A family goes with its last record. Returns the number of records and
        families removed.
        """
        with self._data_lock:
            stale_tokens = [
                jti
                for jti, record in self.refresh_tokens.items()
                if record.expires_at < before
                or self._family_revoked_before(record.family_id, before)
            ]
            for jti in stale_tokens:
                self.refresh_tokens.pop(jti, None)
            live_families = {record.family_id for record in self.refresh_tokens.values()}
            stale_families = [fid for fid in self.families if fid not in live_families]
            for fid in stale_families:
                self.families.pop(fid, None)
            if stale_tokens or stale_families:
                self._persist_state()
            return len(stale_tokens) + len(stale_families)

    def _family_revoked_before(self, family_id: str, before: datetime) -> bool:
        family = self.families.get(family_id)
        return family is None or (family.revoked_at is not None and family.revoked_at < before)

    # ------------------------------------------------------------------
    # Reset tickets
    # ------------------------------------------------------------------

    def save_reset_ticket(self, ticket: ResetTicket) -> None:
        with self._data_lock:
            self.reset_tickets[ticket.ticket_hash] = ticket
            self._persist_state()

    def consume_reset_ticket(self, ticket_hash: str, *, now: datetime) -> Optional[ResetTicket]:
        with self._data_lock:
            ticket = self.reset_tickets.get(ticket_hash)
            if ticket is None or ticket.consumed_at is not None or ticket.expires_at <= now:
                return None
            ticket.consumed_at = now
            self._persist_state()
            return dataclasses.replace(ticket)

    def purge_reset_tickets(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                ticket_hash
                for ticket_hash, ticket in self.reset_tickets.items()
                if ticket.expires_at < before
                or (ticket.consumed_at is not None and ticket.consumed_at < before)
            ]
            for ticket_hash in stale:
                self.reset_tickets.pop(ticket_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "principals": [self._serialize(p) for p in self.principals.values()],
            "challenges": [self._serialize(c) for c in self.challenges.values()],
            "confirmations": [self._serialize(c) for c in self.confirmations.values()],
            "lock_records": [self._serialize(r) for r in self.lock_records.values()],
            "families": [self._serialize(f) for f in self.families.values()],
            "refresh_tokens": [self._serialize(r) for r in self.refresh_tokens.values()],
            "reset_tickets": [self._serialize(t) for t in self.reset_tickets.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            raise RuntimeError(f"corrupt state snapshot at {path}") from exc
        self.principals = {
            p["id"]: self._deserialize(Principal, p) for p in data.get("principals", [])
        }
        self.identifier_index = {
            identifier: principal.id
            for principal in self.principals.values()
            for identifier in principal.identifiers
        }
        self.challenges = {
            c["id"]: self._deserialize(Challenge, c) for c in data.get("challenges", [])
        }
        self.confirmations = {
            c["callback_id"]: self._deserialize(DeviceConfirmation, c)
            for c in data.get("confirmations", [])
        }
        self.lock_records = {
            r["subject"]: self._deserialize(LockRecord, r)
            for r in data.get("lock_records", [])
        }
        self.families = {
            f["id"]: self._deserialize(TokenFamily, f) for f in data.get("families", [])
        }
        self.refresh_tokens = {
            r["jti"]: self._deserialize(RefreshTokenRecord, r)
            for r in data.get("refresh_tokens", [])
        }
        self.reset_tickets = {
            t["ticket_hash"]: self._deserialize(ResetTicket, t)
            for t in data.get("reset_tickets", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            principals=len(self.principals),
            challenges=len(self.challenges),
            families=len(self.families),
        )
        return True


__all__ = ["MemoryStore"]
