import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessiontrust_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "test-mfa-key-for-testing-only")
os.environ.setdefault("EVENT_RETRY_DELAY_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessiontrust.config import Settings  # noqa: E402
from sessiontrust.service.anomaly import AnomalyDetector  # noqa: E402
from sessiontrust.service.auth import AuthService  # noqa: E402
from sessiontrust.service.credentials import CredentialService  # noqa: E402
from sessiontrust.service.devices import DeviceRegistry  # noqa: E402
from sessiontrust.service.events import SecurityEventEmitter  # noqa: E402
from sessiontrust.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessiontrust.service.sessions import SessionLifecycleManager  # noqa: E402
from sessiontrust.service.tokens import TokenService  # noqa: E402
from sessiontrust.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_MFA_KEY = "test-mfa-encryption-key"


class FakeClock:
    """Settable UTC clock shared by every component under test."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def timestamp(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
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
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24 * 7,
        mfa_encryption_key=TEST_MFA_KEY,
        event_retry_delay_seconds=0,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=TEST_MFA_KEY)


@pytest.fixture
def credentials(clock):
    return CredentialService(clock=clock.timestamp)


@pytest.fixture
def token_service(settings, clock):
    return TokenService.from_settings(settings, clock=clock)


@pytest.fixture
def device_registry(memory_store, clock):
    return DeviceRegistry(memory_store, clock=clock)


@pytest.fixture
def session_manager(memory_store, device_registry, clock):
    return SessionLifecycleManager(memory_store, device_registry, clock=clock)


@pytest.fixture
def emitter(memory_store, clock):
    return SecurityEventEmitter(memory_store, max_attempts=3, retry_delay=0, clock=clock)


@pytest.fixture
def auth_service(
    memory_store, credentials, token_service, device_registry, session_manager, emitter, clock
):
    """Fully wired auth service over the memory store and fake clock."""
    return AuthService(
        memory_store,
        credentials,
        token_service,
        device_registry,
        session_manager,
        AnomalyDetector(),
        emitter,
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
