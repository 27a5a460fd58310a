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
os.environ.setdefault("APP_URL", "http://testserver")
# Empty REDIS_URL keeps the runtime on the in-process revocation cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from teamgate.service.invitations import InvitationService  # noqa: E402
from teamgate.service.membership import MembershipRegistry  # noqa: E402
from teamgate.service.revocation import RevocationStore  # noqa: E402
from teamgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from teamgate.service.tokens import TokenManager  # noqa: E402
from teamgate.storage.memory import MemoryCache, MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-secret-with-enough-length-0123456789"
TEST_ISSUER = "http://testserver"


class MutableClock:
    """Callable clock whose time only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)

    def epoch(self) -> float:
        return self.now.timestamp()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return MutableClock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock.epoch)


@pytest.fixture
def revocations(cache):
    return RevocationStore(cache)


@pytest.fixture
def tokens(store, revocations, clock):
    return TokenManager(
        TEST_SECRET,
        TEST_ISSUER,
        store,
        revocations,
        ttl_seconds=3600,
        refresh_window_seconds=14 * 24 * 3600,
        clock=clock,
    )


@pytest.fixture
def memberships(store, clock):
    return MembershipRegistry(store, clock=clock)


@pytest.fixture
def invitations(store, clock):
    return InvitationService(store, clock=clock)


@pytest.fixture
def alice(store):
    return store.create_user("alice@example.com", "Alice")


@pytest.fixture
def bob(store):
    return store.create_user("bob@example.com", "Bob")


@pytest.fixture
def team(store, alice):
    created, _ = store.create_team("Core", "core", alice.id)
    return created


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
