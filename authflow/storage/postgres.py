from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS auth_principal (
        id TEXT PRIMARY KEY,
        credential_hash TEXT,
        credential_algo TEXT NOT NULL DEFAULT 'argon2id',
        locale TEXT NOT NULL DEFAULT 'ar',
        national_id TEXT,
        phone TEXT,
        email TEXT,
        date_of_birth TEXT,
        trusted_devices JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_principal_identifier (
        identifier TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES auth_principal(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_challenge (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES auth_principal(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        resend_allowed_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ,
        superseded_at TIMESTAMPTZ,
        attempts INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS auth_challenge_principal_purpose
        ON auth_challenge (principal_id, purpose, issued_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_lock_record (
        subject TEXT PRIMARY KEY,
        state TEXT NOT NULL DEFAULT 'open',
        failures INTEGER NOT NULL DEFAULT 0,
        window_started_at TIMESTAMPTZ,
        high_risk_failures INTEGER NOT NULL DEFAULT 0,
        soft_lock_count INTEGER NOT NULL DEFAULT 0,
        locked_at TIMESTAMPTZ,
        last_failure_stage TEXT,
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_device_confirmation (
        callback_id TEXT PRIMARY KEY,
        device_id TEXT NOT NULL,
        principal_id TEXT NOT NULL REFERENCES auth_principal(id) ON DELETE CASCADE,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        deadline_at TIMESTAMPTZ NOT NULL,
        resolved_at TIMESTAMPTZ,
        family_id TEXT,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token_family (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES auth_principal(id) ON DELETE CASCADE,
        device_id TEXT NOT NULL,
        device_trust TEXT NOT NULL,
        auth_path TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        revoke_reason TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_refresh_token (
        jti TEXT PRIMARY KEY,
        family_id TEXT NOT NULL REFERENCES auth_token_family(id) ON DELETE CASCADE,
        principal_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        replaced_by TEXT,
        rotated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_reset_ticket (
        ticket_hash TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES auth_principal(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ
    )
    """,
]


class PostgresStore:
    """Postgres-backed store; invariants are enforced with row locks and CAS updates."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _principal_from_row(row: Dict[str, Any], identifiers: List[str]) -> Principal:
        return Principal(
            id=row["id"],
            identifiers=identifiers,
            credential_hash=row.get("credential_hash"),
            credential_algo=row.get("credential_algo") or "argon2id",
            locale=row.get("locale") or "ar",
            national_id=row.get("national_id"),
            phone=row.get("phone"),
            email=row.get("email"),
            date_of_birth=row.get("date_of_birth"),
            trusted_devices=list(row.get("trusted_devices") or []),
            created_at=row["created_at"],
            meta=row.get("meta") or {},
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> Challenge:
        return Challenge(**row)

    @staticmethod
    def _confirmation_from_row(row: Dict[str, Any]) -> DeviceConfirmation:
        data = dict(row)
        data["meta"] = data.get("meta") or {}
        return DeviceConfirmation(**data)

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
        meta: Optional[dict] = None,
    ) -> Principal:
        email = email.lower() if email else None
        identifiers = [value for value in (phone, email, national_id) if value]
        if not identifiers:
            raise ConstraintViolation("principal needs at least one identifier")
        principal_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_principal (id, credential_hash, credential_algo, locale, national_id, phone, email, date_of_birth, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        principal_id,
                        credential_hash,
                        credential_algo,
                        locale,
                        national_id,
                        phone,
                        email,
                        date_of_birth,
                        json.dumps(meta or {}),
                    ),
                ).fetchone()
                for identifier in identifiers:
                    conn.execute(
                        "INSERT INTO auth_principal_identifier (identifier, principal_id) VALUES (%s, %s)",
                        (identifier, principal_id),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("identifier already registered", {"field": "identifier"})
        return self._principal_from_row(row, identifiers)

    def _load_principal(self, conn, principal_id: str) -> Optional[Principal]:
        row = conn.execute(
            "SELECT * FROM auth_principal WHERE id = %s", (principal_id,)
        ).fetchone()
        if not row:
            return None
        identifiers = [
            r["identifier"]
            for r in conn.execute(
                "SELECT identifier FROM auth_principal_identifier WHERE principal_id = %s",
                (principal_id,),
            ).fetchall()
        ]
        return self._principal_from_row(row, identifiers)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            return self._load_principal(conn, principal_id)

    def find_principal_by_identifier(self, identifier: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT principal_id FROM auth_principal_identifier WHERE identifier = %s",
                (identifier.lower() if "@" in identifier else identifier,),
            ).fetchone()
            if not row:
                return None
            return self._load_principal(conn, row["principal_id"])

    def update_credential(
        self, principal_id: str, credential_hash: str, credential_algo: str
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_principal SET credential_hash = %s, credential_algo = %s WHERE id = %s",
                (credential_hash, credential_algo, principal_id),
            )
            if cur.rowcount == 0:
                raise RecordNotFound("principal not found", {"principal_id": principal_id})

    def add_trusted_device(self, principal_id: str, device_id: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_principal
                SET trusted_devices = CASE
                    WHEN trusted_devices ? %s THEN trusted_devices
                    ELSE trusted_devices || to_jsonb(%s::text)
                END
                WHERE id = %s
                """,
                (device_id, device_id, principal_id),
            )
            if cur.rowcount == 0:
                raise RecordNotFound("principal not found", {"principal_id": principal_id})

    def remove_trusted_device(self, principal_id: str, device_id: str) -> bool:
        with self._connect() as conn:
            locked = conn.execute(
                "SELECT trusted_devices FROM auth_principal WHERE id = %s FOR UPDATE",
                (principal_id,),
            ).fetchone()
            if not locked:
                raise RecordNotFound("principal not found", {"principal_id": principal_id})
            if device_id not in (locked["trusted_devices"] or []):
                return False
            conn.execute(
                "UPDATE auth_principal SET trusted_devices = trusted_devices - %s::text WHERE id = %s",
                (device_id, principal_id),
            )
        return True

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    def issue_challenge(
        self, challenge: Challenge, *, now: datetime
    ) -> Tuple[bool, Challenge]:
        try:
            with self._connect() as conn:
                # Serialise issuance per principal on the principal row
                locked = conn.execute(
                    "SELECT id FROM auth_principal WHERE id = %s FOR UPDATE",
                    (challenge.principal_id,),
                ).fetchone()
                if not locked:
                    raise ConstraintViolation(
                        "principal does not exist", {"principal_id": challenge.principal_id}
                    )
                current = conn.execute(
                    """
                    SELECT * FROM auth_challenge
                    WHERE principal_id = %s AND purpose = %s
                      AND consumed_at IS NULL AND superseded_at IS NULL AND expires_at > %s
                    ORDER BY issued_at DESC LIMIT 1
                    """,
                    (challenge.principal_id, challenge.purpose, now),
                ).fetchone()
                if current and now < current["resend_allowed_at"]:
                    return False, self._challenge_from_row(current)
                if current:
                    conn.execute(
                        "UPDATE auth_challenge SET superseded_at = %s WHERE id = %s",
                        (now, current["id"]),
                    )
                conn.execute(
                    """
                    INSERT INTO auth_challenge (id, principal_id, purpose, code_hash, issued_at, expires_at, resend_allowed_at, attempts)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, 0)
                    """,
                    (
                        challenge.id,
                        challenge.principal_id,
                        challenge.purpose,
                        challenge.code_hash,
                        challenge.issued_at,
                        challenge.expires_at,
                        challenge.resend_allowed_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal does not exist", {"principal_id": challenge.principal_id}
            )
        return True, challenge

    def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def get_latest_challenge(self, principal_id: str, purpose: str) -> Optional[Challenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_challenge WHERE principal_id = %s AND purpose = %s
                ORDER BY issued_at DESC LIMIT 1
                """,
                (principal_id, purpose),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def record_challenge_attempt(self, challenge_id: str) -> Optional[Challenge]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_challenge SET attempts = attempts + 1 WHERE id = %s RETURNING *",
                (challenge_id,),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def consume_challenge(self, challenge_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_challenge SET consumed_at = %s
                WHERE id = %s AND consumed_at IS NULL AND superseded_at IS NULL AND expires_at > %s
                RETURNING id
                """,
                (now, challenge_id, now),
            ).fetchone()
        return row is not None

    def purge_expired_challenges(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_challenge WHERE expires_at < %s", (before,))
            return cur.rowcount or 0

    # ------------------------------------------------------------------
    # Lock records
    # ------------------------------------------------------------------

    def get_lock_record(self, subject: str) -> Optional[LockRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_lock_record WHERE subject = %s", (subject,)
            ).fetchone()
        return LockRecord(**row) if row else None

    def purge_idle_lock_records(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM auth_lock_record
                WHERE subject LIKE 'identifier:%%' AND state = %s
                  AND (updated_at IS NULL OR updated_at < %s)
                """,
                (LockStatus.OPEN, before),
            )
            return cur.rowcount or 0

    def mutate_lock_record(
        self, subject: str, mutate: Callable[[LockRecord], LockRecord]
    ) -> LockRecord:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO auth_lock_record (subject) VALUES (%s) ON CONFLICT (subject) DO NOTHING",
                (subject,),
            )
            row = conn.execute(
                "SELECT * FROM auth_lock_record WHERE subject = %s FOR UPDATE", (subject,)
            ).fetchone()
            updated = mutate(LockRecord(**row))
            conn.execute(
                """
                UPDATE auth_lock_record
                SET state = %s, failures = %s, window_started_at = %s, high_risk_failures = %s,
                    soft_lock_count = %s, locked_at = %s, last_failure_stage = %s, updated_at = %s
                WHERE subject = %s
                """,
                (
                    updated.state,
                    updated.failures,
                    updated.window_started_at,
                    updated.high_risk_failures,
                    updated.soft_lock_count,
                    updated.locked_at,
                    updated.last_failure_stage,
                    updated.updated_at,
                    subject,
                ),
            )
        return updated

    # ------------------------------------------------------------------
    # Device confirmations
    # ------------------------------------------------------------------

    def create_device_confirmation(
        self, confirmation: DeviceConfirmation
    ) -> DeviceConfirmation:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE auth_device_confirmation
                    SET status = %s, resolved_at = %s,
                        meta = COALESCE(meta, '{}'::jsonb) || jsonb_build_object('superseded_by', %s::text)
                    WHERE principal_id = %s AND device_id = %s AND status = %s
                    """,
                    (
                        ConfirmationStatus.TIMED_OUT,
                        confirmation.created_at,
                        confirmation.callback_id,
                        confirmation.principal_id,
                        confirmation.device_id,
                        ConfirmationStatus.PENDING,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO auth_device_confirmation (callback_id, device_id, principal_id, status, created_at, deadline_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        confirmation.callback_id,
                        confirmation.device_id,
                        confirmation.principal_id,
                        confirmation.status,
                        confirmation.created_at,
                        confirmation.deadline_at,
                        json.dumps(confirmation.meta or {}),
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal does not exist", {"principal_id": confirmation.principal_id}
            )
        return confirmation

    def get_device_confirmation(self, callback_id: str) -> Optional[DeviceConfirmation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_device_confirmation WHERE callback_id = %s",
                (callback_id,),
            ).fetchone()
        return self._confirmation_from_row(row) if row else None

    def transition_device_confirmation(
        self,
        callback_id: str,
        *,
        to_status: str,
        now: datetime,
        expected: str = ConfirmationStatus.PENDING,
    ) -> Tuple[bool, Optional[DeviceConfirmation]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_device_confirmation SET status = %s, resolved_at = %s
                WHERE callback_id = %s AND status = %s
                RETURNING *
                """,
                (to_status, now, callback_id, expected),
            ).fetchone()
            if row:
                return True, self._confirmation_from_row(row)
            current = conn.execute(
                "SELECT * FROM auth_device_confirmation WHERE callback_id = %s",
                (callback_id,),
            ).fetchone()
        return False, self._confirmation_from_row(current) if current else None

    def set_confirmation_family(self, callback_id: str, family_id: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_device_confirmation SET family_id = %s WHERE callback_id = %s",
                (family_id, callback_id),
            )
            if cur.rowcount == 0:
                raise RecordNotFound("confirmation not found", {"callback_id": callback_id})

    def purge_resolved_confirmations(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM auth_device_confirmation
                WHERE (status <> %s AND resolved_at < %s)
                   OR (status = %s AND deadline_at < %s)
                """,
                (ConfirmationStatus.PENDING, before, ConfirmationStatus.PENDING, before),
            )
            return cur.rowcount or 0

    # ------------------------------------------------------------------
    # Token families and refresh tokens
    # ------------------------------------------------------------------

    def _insert_refresh(self, conn, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO auth_refresh_token (jti, family_id, principal_id, device_id, issued_at, expires_at, status)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.jti,
                record.family_id,
                record.principal_id,
                record.device_id,
                record.issued_at,
                record.expires_at,
                record.status,
            ),
        )

    def create_token_family(
        self, family: TokenFamily, first_token: RefreshTokenRecord
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_token_family (id, principal_id, device_id, device_trust, auth_path, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        family.id,
                        family.principal_id,
                        family.device_id,
                        family.device_trust,
                        family.auth_path,
                        family.created_at,
                    ),
                )
                self._insert_refresh(conn, first_token)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal does not exist", {"principal_id": family.principal_id}
            )

    def get_token_family(self, family_id: str) -> Optional[TokenFamily]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token_family WHERE id = %s", (family_id,)
            ).fetchone()
        return TokenFamily(**row) if row else None

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_refresh_token WHERE jti = %s", (jti,)
            ).fetchone()
        return RefreshTokenRecord(**row) if row else None

    def rotate_refresh_token(
        self, jti: str, successor: RefreshTokenRecord, *, now: datetime
    ) -> RotationOutcome:
        with self._connect() as conn:
            rotated = conn.execute(
                """
                UPDATE auth_refresh_token AS t
                SET status = %s, rotated_at = %s, replaced_by = %s
                FROM auth_token_family AS f
                WHERE t.jti = %s AND t.status = %s AND f.id = t.family_id AND f.revoked_at IS NULL
                RETURNING t.family_id
                """,
                (RefreshStatus.ROTATED, now, successor.jti, jti, RefreshStatus.ACTIVE),
            ).fetchone()
            if rotated:
                self._insert_refresh(conn, successor)
                family_row = conn.execute(
                    "SELECT * FROM auth_token_family WHERE id = %s", (rotated["family_id"],)
                ).fetchone()
                return RotationOutcome(
                    status="rotated", record=successor, family=TokenFamily(**family_row)
                )
            row = conn.execute(
                "SELECT * FROM auth_refresh_token WHERE jti = %s", (jti,)
            ).fetchone()
            if not row:
                return RotationOutcome(status="missing")
            record = RefreshTokenRecord(**row)
            family_row = conn.execute(
                "SELECT * FROM auth_token_family WHERE id = %s", (record.family_id,)
            ).fetchone()
            family = TokenFamily(**family_row) if family_row else None
        if family is None or family.revoked or record.status == RefreshStatus.REVOKED:
            return RotationOutcome(status="revoked", record=record, family=family)
        return RotationOutcome(status="reused", record=record, family=family)

    def revoke_token_family(self, family_id: str, *, reason: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_token_family SET revoked_at = %s, revoke_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, reason, family_id),
            ).fetchone()
            if row:
                conn.execute(
                    "UPDATE auth_refresh_token SET status = %s WHERE family_id = %s AND status = %s",
                    (RefreshStatus.REVOKED, family_id, RefreshStatus.ACTIVE),
                )
        return row is not None

    def revoke_principal_families(
        self,
        principal_id: str,
        *,
        reason: str,
        now: datetime,
        device_id: Optional[str] = None,
    ) -> List[str]:
        query = """
            UPDATE auth_token_family SET revoked_at = %s, revoke_reason = %s
            WHERE principal_id = %s AND revoked_at IS NULL
        """
        params: list[Any] = [now, reason, principal_id]
        if device_id is not None:
            query += " AND device_id = %s"
            params.append(device_id)
        query += " RETURNING id"
        with self._connect() as conn:
            ids = [r["id"] for r in conn.execute(query, params).fetchall()]
            if ids:
                conn.execute(
                    "UPDATE auth_refresh_token SET status = %s WHERE family_id = ANY(%s) AND status = %s",
                    (RefreshStatus.REVOKED, ids, RefreshStatus.ACTIVE),
                )
        return ids

    def update_family_trust(self, family_id: str, device_trust: str) -> Optional[TokenFamily]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_token_family SET device_trust = %s WHERE id = %s RETURNING *",
                (device_trust, family_id),
            ).fetchone()
        return TokenFamily(**row) if row else None

    def purge_expired_sessions(self, before: datetime) -> int:
        with self._connect() as conn:
            tokens = conn.execute(
                """
                DELETE FROM auth_refresh_token
                WHERE expires_at < %s
                   OR family_id IN (SELECT id FROM auth_token_family WHERE revoked_at < %s)
                """,
                (before, before),
            )
            families = conn.execute(
                """
                DELETE FROM auth_token_family AS f
                WHERE NOT EXISTS (SELECT 1 FROM auth_refresh_token AS t WHERE t.family_id = f.id)
                """
            )
            return (tokens.rowcount or 0) + (families.rowcount or 0)

    # ------------------------------------------------------------------
    # Reset tickets
    # ------------------------------------------------------------------

    def save_reset_ticket(self, ticket: ResetTicket) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_reset_ticket (ticket_hash, principal_id, expires_at, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (ticket.ticket_hash, ticket.principal_id, ticket.expires_at, ticket.created_at),
            )

    def consume_reset_ticket(self, ticket_hash: str, *, now: datetime) -> Optional[ResetTicket]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_reset_ticket SET consumed_at = %s
                WHERE ticket_hash = %s AND consumed_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, ticket_hash, now),
            ).fetchone()
        return ResetTicket(**row) if row else None

    def purge_reset_tickets(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_reset_ticket WHERE expires_at < %s OR consumed_at < %s",
                (before, before),
            )
            return cur.rowcount or 0
