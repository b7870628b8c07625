import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment defaults before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="riskgate_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from riskgate.config import Settings  # noqa: E402
from riskgate.service.audit import MemoryAuditSink  # noqa: E402
from riskgate.service.auth import hash_password  # noqa: E402
from riskgate.service.location import StaticLocationResolver  # noqa: E402
from riskgate.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from riskgate.storage.memory import MemoryCredentialStore, MemoryStateStore  # noqa: E402

# Wednesday 2024-01-10 12:00:00 UTC: a weekday, inside business hours
WEDNESDAY_NOON = 1704888000.0
SATURDAY_NOON = WEDNESDAY_NOON + 3 * 86400

PASSWORD = "Correct-Horse-Battery-9"
PASSWORD_HASH = hash_password(PASSWORD)

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DESKTOP_SIGNALS = {
    "screen": {"width": 1920, "height": 1080, "color_depth": 24},
    "timezone": "Europe/London",
    "language": "en-GB",
    "platform": "Win32",
}

US_IP = "203.0.113.10"
BLOCKED_IP = "198.51.100.7"
VPN_IP = "192.0.2.44"

LOCATION_TABLE = {
    "203.0.113.0/24": {
        "country": "us",
        "region": "New York",
        "city": "New York",
        "timezone": "America/New_York",
    },
    "198.51.100.0/24": {"country": "KP", "region": "Pyongyang", "city": "Pyongyang"},
    "192.0.2.0/24": {"country": "NL", "region": "North Holland", "city": "Amsterdam"},
}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = WEDNESDAY_NOON) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    """Notifier that keeps every message instead of delivering it."""

    def __init__(self) -> None:
        self.sms: list[tuple[str, str]] = []
        self.emails: list[tuple[str, str, dict]] = []
        self.fail_with: Exception | None = None

    async def send_sms(self, phone: str, message: str) -> bool:
        if self.fail_with:
            raise self.fail_with
        self.sms.append((phone, message))
        return True

    async def send_email(self, address: str, template_id: str, data: dict) -> bool:
        if self.fail_with:
            raise self.fail_with
        self.emails.append((address, template_id, dict(data)))
        return True

    def templates(self) -> list[str]:
        return [template for _, template, _ in self.emails]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        blocked_countries=["KP"],
    )


@pytest.fixture
def state(clock):
    return MemoryStateStore(clock=clock)


@pytest.fixture
def credentials():
    return MemoryCredentialStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit(clock):
    return MemoryAuditSink(clock=clock)


@pytest.fixture
def locations():
    return StaticLocationResolver(LOCATION_TABLE, anonymizer_networks=["192.0.2.0/24"])


@pytest.fixture
def runtime(settings, state, credentials, audit, notifier, locations, clock):
    return Runtime(
        settings,
        state=state,
        credentials=credentials,
        audit=audit,
        notifier=notifier,
        location_resolver=locations,
        clock=clock,
    )


@pytest.fixture
def user(credentials):
    return credentials.add_user(
        "alice@example.com",
        password_hash=PASSWORD_HASH,
        display_name="Alice",
        email_verified=True,
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
