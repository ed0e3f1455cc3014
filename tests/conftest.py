import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might build settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("USE_MEMORY_QUEUE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tokenkeep.config import Settings  # noqa: E402
from tokenkeep.service.auth import AuthService  # noqa: E402
from tokenkeep.service.notifications import NotificationError  # noqa: E402
from tokenkeep.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock shared by the store and the claim signer."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class SpyDispatcher:
    """Records scheduled notifications instead of queueing them."""

    def __init__(self) -> None:
        self.sent = []
        self.fail = False

    async def enqueue(self, kind, email, secret) -> None:
        if self.fail:
            raise NotificationError("queue unavailable")
        self.sent.append((kind, email, secret))

    def last_secret(self, kind=None) -> str:
        matching = [s for s in self.sent if kind is None or s[0] == kind]
        assert matching, f"no notification of kind {kind} was scheduled"
        return matching[-1][2]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        use_memory_queue=True,
    )


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def dispatcher():
    return SpyDispatcher()


@pytest.fixture
def auth_service(memory_store, dispatcher, settings, clock):
    return AuthService(memory_store, dispatcher, settings, clock=clock)


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
