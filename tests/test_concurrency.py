"""Races between concurrent callers on the same principal.

Every worker waits on a barrier so the calls overlap; the store must still
let exactly one of them win.
"""

import asyncio
import threading
from typing import List

import pytest

from authflow.service.errors import (
    AlreadyConsumedError,
    RateLimitedError,
    TokenInvalidError,
    TokenReusedError,
)
from authflow.service.lockout import LockoutTracker
from authflow.service.otp import OTPChallengeManager
from authflow.service.tokens import SessionTokenAuthority
from authflow.storage.models import AuthPath, ChallengePurpose, DeviceContext, DeviceTrust
from conftest import create_principal

WORKERS = 8


@pytest.fixture
def stored_principal(memory_store):
    return create_principal(memory_store)


@pytest.fixture
def otp(memory_store, settings, clock):
    lockout = LockoutTracker(memory_store, settings, clock=clock)
    return OTPChallengeManager(memory_store, lockout, settings, clock=clock)


def _race(target, workers: int = WORKERS) -> List[Exception]:
    """Run ``target`` on ``workers`` threads released together; returns unexpected errors."""
    barrier = threading.Barrier(workers)
    errors: List[Exception] = []

    def run():
        barrier.wait()
        try:
            target()
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


def test_concurrent_issue_has_one_winner(otp, stored_principal, memory_store):
    issued = []
    limited = []

    def issue():
        try:
            issued.append(otp.issue(stored_principal.id, ChallengePurpose.LOGIN))
        except RateLimitedError as exc:
            limited.append(exc)

    errors = _race(issue)

    assert errors == []
    assert len(issued) == 1
    assert len(limited) == WORKERS - 1
    assert len(memory_store.challenges) == 1
    assert issued[0].id in memory_store.challenges


def test_concurrent_verify_consumes_once(otp, stored_principal):
    challenge = otp.issue(stored_principal.id, ChallengePurpose.LOGIN)
    verified = []
    consumed = []

    def verify():
        try:
            verified.append(otp.verify(challenge.code, challenge_id=challenge.id))
        except AlreadyConsumedError as exc:
            consumed.append(exc)

    errors = _race(verify)

    assert errors == []
    assert len(verified) == 1
    assert len(consumed) == WORKERS - 1


def test_concurrent_refresh_rotates_once(memory_store, settings, clock, stored_principal):
    authority = SessionTokenAuthority(memory_store, settings, clock=clock)
    pair = authority.issue(
        stored_principal.id,
        DeviceContext("device-a"),
        device_trust=DeviceTrust.NOT_REQUIRED,
        auth_path=AuthPath.PASSWORD_OTP,
    )
    rotated = []
    rejected = []

    def refresh():
        try:
            rotated.append(asyncio.run(authority.refresh(pair.refresh_token)))
        except (TokenReusedError, TokenInvalidError) as exc:
            rejected.append(exc)

    errors = _race(refresh)

    assert errors == []
    assert len(rotated) == 1
    assert len(rejected) == WORKERS - 1
    # One successor only; the losers count as reuse and end the family
    assert len(memory_store.refresh_tokens) == 2
    assert memory_store.get_token_family(pair.family_id).revoked
