import asyncio
import inspect
import os
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="staffledger_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# base64 of a 39-byte key -> HS256
os.environ.setdefault(
    "JWT_SIGNING_SECRET", "c3RhZmZsZWRnZXItdGVzdC1zaWduaW5nLWtleS0wMTIzNDU2Nzg5"
)
# Revocations stay in process memory so tests never share a Redis keyspace
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from staffledger.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def signing_secret():
    return os.environ["JWT_SIGNING_SECRET"]


def _wipe_memory_state() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _wipe_memory_state()
    reset_runtime_for_tests()
    yield
    _wipe_memory_state()
    reset_runtime_for_tests()


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
