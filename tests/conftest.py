import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Set up the environment before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="portalauth_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Counters and login challenges stay in process memory under tests
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
# Cheap hashing keeps the suite fast; hashes stay argon2id
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("LOGIN_RATE_LIMIT_REQUESTS", "20")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from portalauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from portalauth.service.tenant_context import TenantContext  # noqa: E402

OWNER_PASSWORD = "OwnerPassword123"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    from portalauth.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def tenant_owner(runtime):
    """A registered tenant with its owner, returned as ``(tenant, owner)``."""
    return runtime.credentials.register_tenant(
        tenant_name="Acme GmbH",
        tenant_slug="acme",
        email="owner@acme.example",
        password=OWNER_PASSWORD,
    )


@pytest.fixture
def owner_ctx(tenant_owner):
    tenant, owner = tenant_owner
    return TenantContext(tenant_id=tenant.id, user_id=owner.id, role="owner")


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
