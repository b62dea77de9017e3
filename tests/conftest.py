import asyncio
import inspect
import os
import sys
import tempfile
import threading
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="linesauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use"
)
# quiet structlog output during test runs
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from linesauth.config import Settings  # noqa: E402
from linesauth.service.auth import AuthService  # noqa: E402
from linesauth.service.passwords import Argon2PasswordHasher  # noqa: E402
from linesauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from linesauth.storage.memory import MemoryStore  # noqa: E402


class RecordingEmailService:
    """Captures outgoing mail so tests can read passcodes back."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    @property
    def is_configured(self) -> bool:
        return True

    def send(self, to_email, subject, html_body):
        if self.fail:
            raise OSError("smtp unavailable")
        self.sent.append({"to": to_email, "subject": subject, "html": html_body})
        return True

    def send_otp_code(self, to_email, code, full_name, *, purpose="registration"):
        if self.fail:
            raise OSError("smtp unavailable")
        self.sent.append(
            {"to": to_email, "code": code, "name": full_name, "purpose": purpose}
        )
        return True

    def send_welcome(self, to_email, full_name):
        if self.fail:
            raise OSError("smtp unavailable")
        self.sent.append({"to": to_email, "name": full_name, "purpose": "welcome"})
        return True

    def last_code(self, to_email, purpose="registration"):
        for message in reversed(self.sent):
            if message["to"] == to_email and message.get("purpose") == purpose:
                return message["code"]
        raise AssertionError(f"no {purpose} code sent to {to_email}")


class GatedEmailService(RecordingEmailService):
    """Holds passcode sends until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.gate = threading.Event()

    def send_otp_code(self, *args, **kwargs):
        self.gate.wait(timeout=5)
        return super().send_otp_code(*args, **kwargs)


async def mailed_code(mailer, to_email, purpose="registration"):
    """Let queued mail tasks finish, then read back the last code sent."""
    current = asyncio.current_task()
    pending = [task for task in asyncio.all_tasks() if task is not current]
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    return mailer.last_code(to_email, purpose)


def fast_hasher() -> Argon2PasswordHasher:
    return Argon2PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path_factory):
    # fresh snapshot directory per test so runtime state does not leak between tests
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv("SHARED_FS_ROOT", str(tmp_path_factory.mktemp("runtime_fs")))
        reset_runtime_for_tests()
        yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-access-secret-0123456789-abcdefghijklmnop",
        jwt_refresh_secret="unit-refresh-secret-0123456789-abcdefghijklmnop",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def mailer():
    return RecordingEmailService()


@pytest.fixture
def hasher():
    return fast_hasher()


@pytest.fixture
def auth_service(memory_store, settings, mailer, hasher):
    return AuthService(
        memory_store, settings, email_service=mailer, hasher=hasher
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
