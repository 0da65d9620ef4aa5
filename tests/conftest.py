import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authflow_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests; rate limits and the denylist fall back to per-process state
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("EXPOSE_OTP_CODES", "true")
os.environ.setdefault("CONFIRMATION_CHANNEL_TOKEN", "test-channel-token")
os.environ.setdefault("DEVICE_CONFIRMATION_TIMEOUT_SECONDS", "1.0")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authflow.config import Settings  # noqa: E402
from authflow.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from authflow.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Correct-Horse-9-Battery"
TEST_NATIONAL_ID = "1012345678"
TEST_PHONE = "+966512345678"
TEST_DOB = "1990-04-01"

_hasher = PasswordHasher(type=Type.ID)


class FakeClock:
    """Injectable clock; tests move time forward explicitly."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def create_principal(
    store,
    *,
    secret: str = TEST_SECRET,
    national_id: str | None = TEST_NATIONAL_ID,
    phone: str | None = TEST_PHONE,
    email: str | None = None,
    date_of_birth: str | None = TEST_DOB,
    trusted_devices=(),
):
    principal = store.create_principal(
        credential_hash=_hasher.hash(secret),
        credential_algo="argon2id",
        phone=phone,
        email=email,
        national_id=national_id,
        date_of_birth=date_of_birth,
    )
    for device_id in trusted_devices:
        store.add_trusted_device(principal.id, device_id)
    return store.get_principal(principal.id)


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        test_mode=True,
        redis_url=None,
        device_confirmation_timeout_seconds=0.5,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def principal(runtime):
    """A principal in the runtime store, reachable by national id or phone."""
    return create_principal(runtime.store)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
