import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment defaults must be in place before sigil modules read settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "refresh-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "mfa-key-for-testing-only")
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sigil.config import Settings  # noqa: E402
from sigil.service.auth import AuthService  # noqa: E402
from sigil.service.credentials import CredentialManager, PasswordPolicy  # noqa: E402
from sigil.storage.memory import MemoryStore  # noqa: E402
from sigil.storage.memory_cache import MemoryEphemeralStore  # noqa: E402

PASSWORD = "Correct-Horse-9!"


class FakeClock:
    """Manually advanced clock injected wherever services read the time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self, delivered: bool = True) -> None:
        self.sent = []
        self.delivered = delivered

    def send_token(self, destination: str, purpose: str, token: str) -> bool:
        self.sent.append((destination, purpose, token))
        return self.delivered

    def last_token(self, purpose: str) -> str:
        return next(token for _, p, token in reversed(self.sent) if p == purpose)


class LatentEphemeralStore(MemoryEphemeralStore):
    """Memory store whose calls yield to the event loop after touching state.

    Each operation is still atomic, but its result arrives only after other
    tasks have had a turn, the way replies from a networked store do. Lets
    ``asyncio.gather`` interleave callers between a read and a later write.
    """

    async def get(self, key):
        value = await super().get(key)
        await asyncio.sleep(0)
        return value

    async def exists(self, key):
        found = await super().exists(key)
        await asyncio.sleep(0)
        return found

    async def increment(self, key):
        count = await super().increment(key)
        await asyncio.sleep(0)
        return count

    async def get_and_delete(self, key):
        value = await super().get_and_delete(key)
        await asyncio.sleep(0)
        return value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryEphemeralStore(clock=clock)


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        jwt_access_secret="A" * 40,
        jwt_refresh_secret="R" * 40,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=7 * 24 * 3600,
        session_timeout_seconds=24 * 3600,
        max_sessions_per_user=5,
        max_login_attempts=5,
        lockout_seconds=900,
    )


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="mfa-key-for-testing-only")


@pytest.fixture
def credentials():
    # Cheap Argon2id parameters keep the suite fast
    hasher = PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    return CredentialManager(PasswordPolicy(), hasher=hasher)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth(store, cache, settings, notifier, clock, credentials):
    return AuthService(
        store,
        cache,
        settings,
        notifier=notifier,
        clock=clock,
        credentials=credentials,
    )


@pytest.fixture
def latent_cache(clock):
    return LatentEphemeralStore(clock=clock)


@pytest.fixture
def latent_auth(store, latent_cache, settings, notifier, clock, credentials):
    service = AuthService(
        store,
        latent_cache,
        settings,
        notifier=notifier,
        clock=clock,
        credentials=credentials,
    )
    asyncio.run(service.register("alice@example.com", PASSWORD, handle="alice"))
    return service


@pytest.fixture
def user(auth):
    return asyncio.run(auth.register("alice@example.com", PASSWORD, handle="alice"))


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
