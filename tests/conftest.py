import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Point settings at a scratch directory before anything reads the environment
_test_tmp_dir = tempfile.mkdtemp(prefix="tradedesk_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("STORAGE_BACKEND", "file")
os.environ.setdefault("TOKEN_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tradedesk.api.schemas import UserProfile  # noqa: E402
from tradedesk.app import create_app  # noqa: E402
from tradedesk.config import Settings  # noqa: E402
from tradedesk.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402

SEED_EMAIL = "admin@example.com"
SEED_PASSWORD = "Admin123"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    """Isolated settings with a cheap argon2 work factor."""
    return Settings(
        data_root=str(tmp_path),
        token_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        password_time_cost=1,
        password_memory_cost=8,
        password_parallelism=1,
    )


@pytest.fixture
def runtime(settings):
    return Runtime(settings)


@pytest.fixture
def app(runtime):
    return create_app(runtime)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def register_payload():
    return {
        "firstName": "Jane",
        "lastName": "Doe",
        "email": "jane@example.com",
        "password": "Passw0rd!",
        "confirmPassword": "Passw0rd!",
    }


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def make_profile(**overrides):
    """A client-side user snapshot with sensible defaults."""
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    data = dict(
        id="u1",
        first_name="Jane",
        last_name="Doe",
        email="jane@example.com",
        role="user",
        is_active=True,
        email_verified=False,
        created_at=now,
        updated_at=now,
    )
    data.update(overrides)
    return UserProfile(**data)


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
