"""Tests for removing records that expired or resolved and can no longer be used."""

from datetime import timedelta

import pytest

from authflow.service.auth import AuthFlowService
from authflow.service.identifiers import identifier_bucket
from authflow.service.lockout import FailureStage
from authflow.storage.models import (
    AuthPath,
    ChallengePurpose,
    ConfirmationStatus,
    DeviceConfirmation,
    DeviceContext,
    DeviceTrust,
    ResetTicket,
)
from conftest import create_principal


@pytest.fixture
def service(memory_store, settings, clock):
    return AuthFlowService(memory_store, settings, clock=clock)


@pytest.fixture
def stored_principal(memory_store):
    return create_principal(memory_store)


def _confirmation(principal_id, callback_id, now, device_id="browser-1"):
    return DeviceConfirmation(
        callback_id=callback_id,
        device_id=device_id,
        principal_id=principal_id,
        status=ConfirmationStatus.PENDING,
        created_at=now,
        deadline_at=now + timedelta(seconds=7),
    )


class TestStorePurges:
    def test_resolved_and_abandoned_confirmations(self, memory_store, stored_principal, clock):
        now = clock()
        memory_store.create_device_confirmation(_confirmation(stored_principal.id, "cb-done", now))
        memory_store.transition_device_confirmation(
            "cb-done", to_status=ConfirmationStatus.CONFIRMED, now=now
        )
        memory_store.create_device_confirmation(
            _confirmation(stored_principal.id, "cb-abandoned", now, device_id="browser-2")
        )
        memory_store.create_device_confirmation(
            _confirmation(stored_principal.id, "cb-fresh", now + timedelta(minutes=5), "browser-3")
        )

        assert memory_store.purge_resolved_confirmations(now + timedelta(minutes=1)) == 2
        assert set(memory_store.confirmations) == {"cb-fresh"}

    def test_expired_and_redeemed_tickets(self, memory_store, clock):
        now = clock()
        for ticket_hash, ttl in (("redeemed", 600), ("expired", 60), ("open", 600)):
            memory_store.save_reset_ticket(
                ResetTicket(
                    ticket_hash=ticket_hash,
                    principal_id="p1",
                    expires_at=now + timedelta(seconds=ttl),
                    created_at=now,
                )
            )
        memory_store.consume_reset_ticket("redeemed", now=now)

        assert memory_store.purge_reset_tickets(now + timedelta(seconds=120)) == 2
        assert set(memory_store.reset_tickets) == {"open"}

    def test_only_idle_open_identifier_buckets(self, memory_store, stored_principal, settings, clock):
        service = AuthFlowService(memory_store, settings, clock=clock)
        idle = identifier_bucket("2999999999")
        locked = identifier_bucket("2888888888")
        service.lockout.record_failure(idle, FailureStage.CREDENTIAL)
        service.lockout.record_failure(stored_principal.id, FailureStage.CREDENTIAL)
        for _ in range(settings.lockout_threshold):
            service.lockout.record_failure(locked, FailureStage.CREDENTIAL)

        assert memory_store.purge_idle_lock_records(clock() + timedelta(seconds=1)) == 1
        assert memory_store.get_lock_record(idle) is None
        assert memory_store.get_lock_record(locked) is not None
        assert memory_store.get_lock_record(stored_principal.id) is not None

    def test_remove_trusted_device(self, memory_store):
        principal = create_principal(memory_store, trusted_devices=("device-a", "device-b"))
        assert memory_store.remove_trusted_device(principal.id, "device-a") is True
        assert memory_store.remove_trusted_device(principal.id, "device-a") is False
        assert memory_store.get_principal(principal.id).trusted_devices == ["device-b"]

    def test_get_challenge_returns_a_copy(self, memory_store, stored_principal, service):
        issued = service.otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
        copy = memory_store.get_challenge(issued.id)
        copy.attempts = 99
        copy.consumed_at = copy.issued_at
        stored = memory_store.get_challenge(issued.id)
        assert stored.attempts == 0
        assert stored.consumed_at is None


class TestServicePurge:
    def _populate(self, service, memory_store, principal_id, clock):
        now = clock()
        service.otp.issue(principal_id, ChallengePurpose.LOGIN)
        service.tokens.issue(
            principal_id,
            DeviceContext("device-a"),
            device_trust=DeviceTrust.NOT_REQUIRED,
            auth_path=AuthPath.PASSWORD_OTP,
        )
        memory_store.create_device_confirmation(_confirmation(principal_id, "cb-1", now))
        memory_store.save_reset_ticket(
            ResetTicket(
                ticket_hash="ticket",
                principal_id=principal_id,
                expires_at=now + timedelta(minutes=10),
                created_at=now,
            )
        )
        service.lockout.record_failure(identifier_bucket("2999999999"), FailureStage.CREDENTIAL)

    def test_nothing_live_is_removed(self, service, memory_store, stored_principal, clock):
        self._populate(service, memory_store, stored_principal.id, clock)
        assert not any(service.purge_expired_records().values())

    def test_everything_past_retention_is_removed(
        self, service, memory_store, stored_principal, settings, clock
    ):
        self._populate(service, memory_store, stored_principal.id, clock)
        clock.advance(settings.refresh_token_ttl_minutes * 60 + settings.record_retention_seconds + 1)

        assert service.purge_expired_records() == {
            "challenges": 1,
            "sessions": 2,
            "confirmations": 1,
            "reset_tickets": 1,
            "lock_buckets": 1,
        }
        for table in (
            memory_store.challenges,
            memory_store.refresh_tokens,
            memory_store.families,
            memory_store.confirmations,
            memory_store.reset_tickets,
            memory_store.lock_records,
        ):
            assert table == {}
        assert memory_store.get_principal(stored_principal.id) is not None

    def test_retention_keeps_recently_expired_records(
        self, service, memory_store, stored_principal, settings, clock
    ):
        self._populate(service, memory_store, stored_principal.id, clock)
        clock.advance(settings.refresh_token_ttl_minutes * 60 + 1)
        removed = service.purge_expired_records()
        assert removed["challenges"] == 1
        assert removed["sessions"] == 0
        assert len(memory_store.refresh_tokens) == 1

    def test_buckets_kept_without_a_failure_window(
        self, service, memory_store, stored_principal, settings, clock, monkeypatch
    ):
        monkeypatch.setattr(settings, "lockout_window_seconds", 0)
        self._populate(service, memory_store, stored_principal.id, clock)
        clock.advance(settings.refresh_token_ttl_minutes * 60 + settings.record_retention_seconds + 1)
        assert service.purge_expired_records()["lock_buckets"] == 0
        assert memory_store.get_lock_record(identifier_bucket("2999999999")) is not None
