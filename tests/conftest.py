import asyncio
import inspect
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

# Configure the environment before anything imports authengine settings
_test_tmp_dir = tempfile.mkdtemp(prefix="authengine_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authengine.config import Settings  # noqa: E402
from authengine.service.auth import AuthService  # noqa: E402
from authengine.service.runtime import reset_runtime_for_tests  # noqa: E402
from authengine.storage.memory import MemoryStore  # noqa: E402
from authengine.storage.models import AccountStatus, utcnow  # noqa: E402

TEST_PASSWORD = "CorrectHorse42"


class FakeClock:
    """Settable stand-in for ``utcnow`` shared by every component under test."""

    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEmail:
    """Records every notification instead of sending it."""

    is_configured = False

    def __init__(self):
        self.sent = []

    def _record(self, kind, to, *args):
        self.sent.append((kind, to, args))
        return True

    def send_email_verification(self, to, token):
        return self._record("verification", to, token)

    def send_two_factor_code(self, to, code, context=None):
        return self._record("two_factor", to, code, context)

    def send_password_reset(self, to, code):
        return self._record("password_reset", to, code)

    def send_reactivation_code(self, to, code):
        return self._record("reactivation", to, code)

    def send_security_alert(self, to, alert_type, details=None):
        return self._record("alert", to, alert_type, details)

    def last(self, kind):
        for sent_kind, to, args in reversed(self.sent):
            if sent_kind == kind:
                return args
        return None

    def alerts(self):
        return [args[0] for kind, _, args in self.sent if kind == "alert"]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so the file-backed memory store starts empty
    runtime_root = tmp_path / "runtime"
    runtime_root.mkdir()
    monkeypatch.setenv("SHARED_FS_ROOT", str(runtime_root))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), mfa_encryption_key="test-mfa-key")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_email():
    return FakeEmail()


@pytest.fixture
def auth_service(memory_store, settings, fake_email, clock):
    return AuthService(memory_store, settings, email=fake_email, clock=clock)


@pytest.fixture
def active_account(memory_store, auth_service):
    """A verified, ACTIVE account with TEST_PASSWORD set."""
    account = memory_store.create_account(
        "active@example.com", status=AccountStatus.ACTIVE, is_verified=True
    )
    memory_store.save_password(account.id, *auth_service.credentials.hash_password(TEST_PASSWORD))
    return memory_store.get_account(account.id)


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
