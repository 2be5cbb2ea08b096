import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might load settings
_test_tmp_dir = tempfile.mkdtemp(prefix="linkguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("FINGERPRINT_SECRET", "test-fingerprint-secret-for-testing-only-0123456789")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from linkguard.config import Settings, reset_settings_cache  # noqa: E402
from linkguard.service.email import MemoryMailer  # noqa: E402
from linkguard.service.runtime import build_engine  # noqa: E402
from linkguard.storage.memory import MemoryStore  # noqa: E402

FINGERPRINT_SECRET = os.environ["FINGERPRINT_SECRET"]
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable UTC clock injected wherever components read the time."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleeper:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeCaptchaVerifier:
    """Accepts the response string "pass"."""

    def __init__(self):
        self.calls = []

    async def verify(self, response, *, remote_ip=None):
        self.calls.append((response, remote_ip))
        return response == "pass"


def make_settings(**overrides) -> Settings:
    values = {
        "use_memory_store": True,
        "fingerprint_secret": FINGERPRINT_SECRET,
        "verify_delay_min_ms": 250,
        "verify_delay_max_ms": 750,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def mailer():
    return MemoryMailer()


@pytest.fixture
def captcha_verifier():
    return FakeCaptchaVerifier()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def make_engine(store, clock, sleeper, mailer, captcha_verifier):
    """Factory building a fully wired engine over the fixture store."""

    def _make(**overrides):
        geo = overrides.pop("geo", None)
        engine_mailer = overrides.pop("mailer", mailer)
        return build_engine(
            make_settings(**overrides),
            store=store,
            mailer=engine_mailer,
            geo=geo,
            captcha_verifier=captcha_verifier,
            clock=clock,
            sleep=sleeper,
        )

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


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
