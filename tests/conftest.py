import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any import that might build settings
_test_tmp_dir = tempfile.mkdtemp(prefix="coopadmin_test_")
os.environ.setdefault("SECRETS_DIR", _test_tmp_dir)
os.environ.setdefault("NODE_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("INVITE_TOKEN_SECRET", "test-invite-secret-for-automation-only-9876543210")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coopadmin.app import create_app  # noqa: E402
from coopadmin.config import Environment, Settings, reset_settings_cache  # noqa: E402
from coopadmin.service.passwords import PasswordHasher  # noqa: E402

ADMIN_EMAIL = "admin@coop.example"
ADMIN_PASSWORD = "Adm1n#Pass"


def make_settings(**overrides) -> Settings:
    values = dict(
        environment=Environment.TEST,
        use_memory_store=True,
        redis_url="",
        allow_redis_fallback_dev=True,
        access_token_secret="test-access-secret-for-automation-only-0123456789",
        invite_token_secret="test-invite-secret-for-automation-only-9876543210",
        login_throttle_seconds=0,
        email_backoff_seconds=0.0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def admin_credentials():
    return ADMIN_EMAIL, ADMIN_PASSWORD


@pytest.fixture
def hasher():
    return PasswordHasher()


@pytest.fixture
def client(settings):
    """Test client with lifespan so the runtime is connected."""
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def runtime(client):
    return client.app.state.runtime


@pytest.fixture
def admin_account(runtime, hasher):
    """An active admin with a known password."""
    admin = runtime.store.create_admin(ADMIN_EMAIL)
    runtime.store.set_password(admin.id, hasher.hash(ADMIN_PASSWORD))
    return runtime.store.get_admin(admin.id)


@pytest.fixture
def auth_header(client, admin_account):
    response = client.post(
        "/api/v1/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}
    )
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['data']['token']}"}


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
