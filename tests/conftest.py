import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_ISSUER", "tracker-api-tests")
os.environ.setdefault("JWT_AUDIENCE", "tracker-clients-tests")
os.environ.setdefault("DEBUG_RESET_TOKENS", "true")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from trackerauth.config import Settings  # noqa: E402
from trackerauth.service.auth import AuthService  # noqa: E402
from trackerauth.service.lockout import InMemoryAttemptTracker  # noqa: E402
from trackerauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from trackerauth.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock shared by the service and token issuer."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class MonotonicStub:
    """Float clock for the in-memory attempt tracker."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        jwt_issuer="tracker-api",
        jwt_audience="tracker-clients",
        access_token_ttl_minutes=60,
        refresh_token_ttl_days=7,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker_clock():
    return MonotonicStub()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def attempt_tracker(tracker_clock):
    return InMemoryAttemptTracker(timedelta(minutes=15), clock=tracker_clock)


@pytest.fixture
def fast_hasher():
    # Minimal argon2id cost keeps the suite fast; production uses library defaults
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def auth_service(memory_store, settings, clock, attempt_tracker, fast_hasher):
    return AuthService(
        memory_store,
        settings,
        attempt_tracker=attempt_tracker,
        password_hasher=fast_hasher,
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
