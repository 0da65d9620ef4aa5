from datetime import timedelta

import pytest

from authflow.storage.errors import ConstraintViolation
from authflow.storage.memory import MemoryStore
from authflow.storage.models import (
    Challenge,
    ChallengePurpose,
    ConfirmationStatus,
    DeviceConfirmation,
    LockStatus,
    RefreshStatus,
    RefreshTokenRecord,
    ResetTicket,
    TokenFamily,
    utcnow,
)


def test_memory_store_persists_principals_and_locks(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    principal = store.create_principal(
        credential_hash="hash",
        national_id="1012345678",
        phone="+966512345678",
        email="Person@Example.com",
        date_of_birth="1990-04-01",
    )
    store.add_trusted_device(principal.id, "device-a")

    def _lock(record):
        record.state = LockStatus.SOFT_LOCKED
        record.soft_lock_count = 1
        record.locked_at = utcnow()
        return record

    store.mutate_lock_record(principal.id, _lock)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    found = reloaded.find_principal_by_identifier("+966512345678")
    assert found is not None
    assert found.id == principal.id
    assert found.trusted_devices == ["device-a"]
    assert reloaded.find_principal_by_identifier("person@example.com").id == principal.id
    record = reloaded.get_lock_record(principal.id)
    assert record.state == LockStatus.SOFT_LOCKED
    assert record.locked_at is not None


def test_duplicate_identifier_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_principal(credential_hash="h", national_id="1012345678")
    with pytest.raises(ConstraintViolation):
        store.create_principal(credential_hash="h", national_id="1012345678")


def test_challenge_and_confirmation_survive_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    principal = store.create_principal(credential_hash="h", national_id="1012345678")
    now = utcnow()
    challenge = Challenge.new(
        principal.id,
        ChallengePurpose.LOGIN,
        "digest",
        issued_at=now,
        expires_at=now + timedelta(minutes=5),
        resend_allowed_at=now + timedelta(seconds=30),
    )
    assert store.issue_challenge(challenge, now=now) == (True, challenge)
    store.create_device_confirmation(
        DeviceConfirmation(
            callback_id="cb-1",
            device_id="device-a",
            principal_id=principal.id,
            status=ConfirmationStatus.PENDING,
            created_at=now,
            deadline_at=now + timedelta(seconds=7),
        )
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))
    restored = reloaded.get_challenge(challenge.id)
    assert restored.expires_at == challenge.expires_at
    assert restored.is_active(now)
    changed, record = reloaded.transition_device_confirmation(
        "cb-1", to_status=ConfirmationStatus.CONFIRMED, now=now
    )
    assert changed
    assert record.status == ConfirmationStatus.CONFIRMED
    changed, record = reloaded.transition_device_confirmation(
        "cb-1", to_status=ConfirmationStatus.TIMED_OUT, now=now
    )
    assert not changed
    assert record.status == ConfirmationStatus.CONFIRMED


def test_refresh_rotation_is_single_use(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    principal = store.create_principal(credential_hash="h", national_id="1012345678")
    now = utcnow()
    family = TokenFamily(
        id="fam-1",
        principal_id=principal.id,
        device_id="device-a",
        device_trust="not_required",
        auth_path="password_otp",
        created_at=now,
    )

    def _token(jti):
        return RefreshTokenRecord(
            jti=jti,
            family_id=family.id,
            principal_id=principal.id,
            device_id="device-a",
            issued_at=now,
            expires_at=now + timedelta(days=1),
        )

    store.create_token_family(family, _token("jti-1"))
    assert store.rotate_refresh_token("jti-1", _token("jti-2"), now=now).status == "rotated"
    assert store.rotate_refresh_token("jti-1", _token("jti-3"), now=now).status == "reused"
    assert store.get_refresh_token("jti-3") is None

    assert store.revoke_token_family(family.id, reason="reuse_detected", now=now)
    assert store.get_refresh_token("jti-2").status == RefreshStatus.REVOKED
    assert store.rotate_refresh_token("jti-2", _token("jti-4"), now=now).status == "revoked"


def test_reset_ticket_single_use(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    now = utcnow()
    store.save_reset_ticket(
        ResetTicket(
            ticket_hash="abc", principal_id="p1", expires_at=now + timedelta(minutes=10)
        )
    )
    assert store.consume_reset_ticket("abc", now=now).principal_id == "p1"
    assert store.consume_reset_ticket("abc", now=now) is None
