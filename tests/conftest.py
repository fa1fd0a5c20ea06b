import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("OAUTH_CLIENT_ID", "skill-client")
os.environ.setdefault("OAUTH_CLIENT_SECRET", "skill-secret")
os.environ.setdefault(
    "OAUTH_REDIRECT_URI_PREFIXES",
    "https://layla.amazon.com/api/skill/link/,https://pitangui.amazon.com/api/skill/link/",
)
os.environ.setdefault("ADMIN_API_KEY", "admin-test-key")
os.environ.setdefault("BILLING_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("APP_BASE_URL", "https://app.example.com")
# Webhook de-duplication is exercised with a fake cache; keep tests off a real Redis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from voicelink.config import Settings  # noqa: E402
from voicelink.service.codec import TokenCodec  # noqa: E402
from voicelink.service.runtime import reset_runtime_for_tests  # noqa: E402
from voicelink.storage.memory import MemoryStore  # noqa: E402
from voicelink.storage.models import ENTITLEMENT_ACTIVE  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def make_settings():
    """Build Settings from the test environment with per-test overrides."""

    def _make(**overrides) -> Settings:
        return Settings.from_env().model_copy(update=overrides)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def codec(settings):
    return TokenCodec(settings.jwt_secret, settings.jwt_issuer)


@pytest.fixture
def linked_identity(store):
    """Identity with an active licence and a connected workspace, but no device token yet."""
    store.set_entitlement_status("LIC-1", ENTITLEMENT_ACTIVE)
    return store.create_identity(
        "owner@example.com",
        auth_subject="idp-user-1",
        entitlement_key="LIC-1",
        workspace_ref="T0WORKSPACE",
        workspace_connected=True,
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
