import asyncio
import inspect
import os
import sys
from pathlib import Path

from argon2 import PasswordHasher, Type

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "Corr3ct!Horse-Battery"

# Environment must be in place before any import that reads settings
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret-for-automation-only-abcdefghij")
os.environ.setdefault("ADMIN_USERNAME", ADMIN_USERNAME)
os.environ.setdefault("ADMIN_PASSWORD_HASH", PasswordHasher(type=Type.ID).hash(ADMIN_PASSWORD))
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_automation")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_automation")
os.environ.setdefault("USE_REDIS", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from ventaro.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Manually advanced epoch clock for expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
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
