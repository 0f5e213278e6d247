import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before korella.config is imported anywhere
_test_tmp_dir = tempfile.mkdtemp(prefix="korella_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("BCRYPT_COST_FACTOR", "4")
os.environ.setdefault("RETENTION_PURGE_ENABLED", "false")
os.environ.pop("REDIS_URL", None)
os.environ.pop("CRON_SECRET", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from korella.config import Settings  # noqa: E402
from korella.service.hashing import CredentialHasher  # noqa: E402
from korella.service.runtime import reset_runtime_for_tests  # noqa: E402
from korella.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Korella#Secure42"
OTHER_STRONG_PASSWORD = "Another$Pass987"


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="unit-test-secret-key-0123456789",
        shared_fs_root=str(tmp_path),
        bcrypt_cost_factor=4,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher():
    return CredentialHasher(cost=4)


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
