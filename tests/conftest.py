import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="storefront_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from storefront_auth.config import Settings  # noqa: E402
from storefront_auth.service.auth import AuthOrchestrator  # noqa: E402
from storefront_auth.service.passwords import PasswordService  # noqa: E402
from storefront_auth.service.rate_limit import InMemoryCounterStore, RateLimiter  # noqa: E402
from storefront_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from storefront_auth.storage.memory import MemoryStore  # noqa: E402


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, kind, recipient, context):
        self.sent.append((kind, recipient, dict(context)))
        return True

    def of_kind(self, kind):
        return [entry for entry in self.sent if entry[0] == kind]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Access-Secret_for-Automation-Only-987654321!",
        refresh_secret="Test-Refresh-Secret_for-Automation-Only-123456789!",
    )


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="test-mfa-key")


@pytest.fixture
def passwords():
    # Cheap argon2id parameters keep the suite fast
    return PasswordService(PasswordHasher(type=Type.ID, time_cost=1, memory_cost=1024, parallelism=1))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def limiter(clock):
    return RateLimiter(InMemoryCounterStore(), clock=clock)


@pytest.fixture
def orchestrator(store, settings, limiter, notifier, passwords, clock):
    return AuthOrchestrator(
        store,
        settings,
        limiter=limiter,
        notifier=notifier,
        passwords=passwords,
        clock=clock,
    )


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
