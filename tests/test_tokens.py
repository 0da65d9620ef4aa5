"""Unit tests for session token issuance, rotation and revocation."""

import base64
import json
from datetime import timedelta

import pytest

from authflow.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenReusedError,
    ValidationError,
)
from authflow.service.tokens import SessionTokenAuthority
from authflow.storage.models import AuthPath, DeviceContext, DeviceTrust
from conftest import create_principal


@pytest.fixture
def authority(memory_store, settings, clock):
    return SessionTokenAuthority(memory_store, settings, clock=clock)


@pytest.fixture
def stored_principal(memory_store):
    return create_principal(memory_store)


def _issue(authority, principal_id, device_id="device-a", trust=DeviceTrust.NOT_REQUIRED):
    return authority.issue(
        principal_id,
        DeviceContext(device_id),
        device_trust=trust,
        auth_path=AuthPath.PASSWORD_OTP,
    )


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    async def test_pair_is_bound_to_principal_and_device(self, authority, stored_principal):
        pair = _issue(authority, stored_principal.id)
        claims = await authority.verify_access(pair.access_token)
        assert claims.principal_id == stored_principal.id
        assert claims.device_id == "device-a"
        assert claims.family_id == pair.family_id
        assert claims.device_trust == DeviceTrust.NOT_REQUIRED
        assert claims.auth_path == AuthPath.PASSWORD_OTP

    def test_access_expires_before_refresh(self, authority, stored_principal):
        pair = _issue(authority, stored_principal.id)
        assert pair.access_expires_at < pair.refresh_expires_at

    def test_to_dict_carries_trust_and_path(self, authority, stored_principal):
        data = _issue(authority, stored_principal.id, trust=DeviceTrust.UNCONFIRMED).to_dict()
        assert data["device_trust"] == DeviceTrust.UNCONFIRMED
        assert data["auth_path"] == AuthPath.PASSWORD_OTP
        assert data["token_type"] == "bearer"


class TestVerifyAccess:
    async def test_expiry_honours_leeway(self, authority, stored_principal, clock, settings):
        pair = _issue(authority, stored_principal.id)
        clock.advance(settings.access_token_ttl_minutes * 60 + 10)
        await authority.verify_access(pair.access_token)
        clock.advance(settings.token_leeway_seconds)
        with pytest.raises(TokenExpiredError):
            await authority.verify_access(pair.access_token)

    async def test_tampered_signature(self, authority, stored_principal):
        pair = _issue(authority, stored_principal.id)
        head, body, sig = pair.access_token.split(".")
        forged = f"{head}.{body}.{sig[:-2]}xx"
        with pytest.raises(TokenInvalidError):
            await authority.verify_access(forged)

    async def test_alg_none_rejected(self, authority, stored_principal):
        pair = _issue(authority, stored_principal.id)
        _, body, _ = pair.access_token.split(".")
        forged = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{body}."
        with pytest.raises(TokenInvalidError):
            await authority.verify_access(forged)

    async def test_refresh_token_is_not_an_access_token(self, authority, stored_principal):
        pair = _issue(authority, stored_principal.id)
        with pytest.raises(TokenInvalidError):
            await authority.verify_access(pair.refresh_token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c"])
    async def test_malformed(self, authority, token):
        with pytest.raises(TokenInvalidError):
            await authority.verify_access(token)


class TestRefresh:
    async def test_rotation_issues_new_pair_in_same_family(self, authority, stored_principal):
        pair = _issue(authority, stored_principal.id)
        rotated = await authority.refresh(pair.refresh_token)
        assert rotated.family_id == pair.family_id
        assert rotated.refresh_token != pair.refresh_token
        assert rotated.device_id == pair.device_id
        await authority.verify_access(rotated.access_token)

    async def test_reuse_revokes_family(self, authority, stored_principal, memory_store):
        pair = _issue(authority, stored_principal.id)
        rotated = await authority.refresh(pair.refresh_token)

        with pytest.raises(TokenReusedError):
            await authority.refresh(pair.refresh_token)

        family = memory_store.get_token_family(pair.family_id)
        assert family.revoked
        assert family.revoke_reason == "reuse_detected"
        with pytest.raises(TokenInvalidError):
            await authority.refresh(rotated.refresh_token)
        with pytest.raises(TokenInvalidError):
            await authority.verify_access(rotated.access_token)

    async def test_reuse_leaves_other_families_alone(self, authority, stored_principal):
        pair = _issue(authority, stored_principal.id, device_id="device-a")
        other = _issue(authority, stored_principal.id, device_id="device-b")
        await authority.refresh(pair.refresh_token)
        with pytest.raises(TokenReusedError):
            await authority.refresh(pair.refresh_token)
        assert (await authority.refresh(other.refresh_token)).family_id == other.family_id

    async def test_expired_refresh(self, authority, stored_principal, clock, settings):
        pair = _issue(authority, stored_principal.id)
        clock.advance(settings.refresh_token_ttl_minutes * 60 + settings.token_leeway_seconds + 1)
        with pytest.raises(TokenExpiredError):
            await authority.refresh(pair.refresh_token)

    async def test_refresh_carries_upgraded_trust(self, authority, stored_principal, memory_store):
        pair = _issue(authority, stored_principal.id, trust=DeviceTrust.UNCONFIRMED)
        memory_store.update_family_trust(pair.family_id, DeviceTrust.CONFIRMED_LATE)
        rotated = await authority.refresh(pair.refresh_token)
        assert rotated.device_trust == DeviceTrust.CONFIRMED_LATE


class TestRevoke:
    async def test_revoke_one_device(self, authority, stored_principal):
        a = _issue(authority, stored_principal.id, device_id="device-a")
        b = _issue(authority, stored_principal.id, device_id="device-b")
        revoked = await authority.revoke(stored_principal.id, device_id="device-a")
        assert revoked == [a.family_id]
        with pytest.raises(TokenInvalidError):
            await authority.refresh(a.refresh_token)
        await authority.verify_access(b.access_token)

    async def test_revoke_all_devices(self, authority, stored_principal):
        a = _issue(authority, stored_principal.id, device_id="device-a")
        b = _issue(authority, stored_principal.id, device_id="device-b")
        revoked = await authority.revoke(stored_principal.id, all_devices=True)
        assert set(revoked) == {a.family_id, b.family_id}
        for pair in (a, b):
            with pytest.raises(TokenInvalidError):
                await authority.verify_access(pair.access_token)

    async def test_revoke_needs_a_target(self, authority, stored_principal):
        with pytest.raises(ValidationError):
            await authority.revoke(stored_principal.id)

    async def test_logout_denylists_presented_access_token(self, authority, stored_principal):
        pair = _issue(authority, stored_principal.id)
        family_id = await authority.revoke_token(pair.refresh_token, access_token=pair.access_token)
        assert family_id == pair.family_id
        with pytest.raises(TokenInvalidError):
            await authority.verify_access(pair.access_token)

    async def test_logout_with_expired_refresh_is_quiet(
        self, authority, stored_principal, clock, settings
    ):
        pair = _issue(authority, stored_principal.id)
        clock.advance(settings.refresh_token_ttl_minutes * 60 + settings.token_leeway_seconds + 1)
        assert await authority.revoke_token(pair.refresh_token) is None

    async def test_denylist_forgets_expired_access_tokens(
        self, authority, stored_principal, clock, settings
    ):
        first = _issue(authority, stored_principal.id, device_id="device-a")
        await authority.revoke_token(first.refresh_token, access_token=first.access_token)
        assert len(authority._denylist) == 1

        clock.advance(settings.access_token_ttl_minutes * 60 + 1)
        second = _issue(authority, stored_principal.id, device_id="device-b")
        await authority.revoke_token(second.refresh_token, access_token=second.access_token)
        assert len(authority._denylist) == 1
        assert all(expiry > clock().timestamp() for expiry in authority._denylist.values())
        with pytest.raises(TokenInvalidError):
            await authority.verify_access(second.access_token)


class TestPurge:
    async def test_rotated_chain_is_purged_after_expiry(
        self, authority, stored_principal, memory_store, clock, settings
    ):
        pair = _issue(authority, stored_principal.id)
        for _ in range(5):
            pair = await authority.refresh(pair.refresh_token)
        assert len(memory_store.refresh_tokens) == 6

        clock.advance(settings.refresh_token_ttl_minutes * 60 + 3600 + 1)
        removed = memory_store.purge_expired_sessions(clock() - timedelta(seconds=3600))
        assert removed == 7
        assert len(memory_store.refresh_tokens) == 0
        assert memory_store.get_token_family(pair.family_id) is None

    async def test_live_sessions_survive_the_purge(
        self, authority, stored_principal, memory_store, clock
    ):
        pair = _issue(authority, stored_principal.id)
        rotated = await authority.refresh(pair.refresh_token)
        assert memory_store.purge_expired_sessions(clock()) == 0
        await authority.verify_access(rotated.access_token)

    async def test_revoked_family_is_purged_and_stays_rejected(
        self, authority, stored_principal, memory_store, clock
    ):
        pair = _issue(authority, stored_principal.id)
        await authority.revoke(stored_principal.id, device_id="device-a")
        clock.advance(60)
        assert memory_store.purge_expired_sessions(clock()) == 2
        with pytest.raises(TokenInvalidError):
            await authority.verify_access(pair.access_token)
        with pytest.raises(TokenInvalidError):
            await authority.refresh(pair.refresh_token)
