import asyncio
import inspect
import os
import sys
from pathlib import Path

# Must be set before anything builds settings or the runtime
os.environ["ENVIRONMENT"] = "test"
os.environ["USE_MEMORY_STORE"] = "true"
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-0123456789abcdef0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-0123456789abcdef012345678")
os.environ.pop("MEMORY_STORE_ROOT", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenledger.config import reset_settings_cache  # noqa: E402
from tokenledger.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenledger.service.signer import SigningKeys, TokenSigner  # noqa: E402
from tokenledger.service.tokens import TokenService  # noqa: E402
from tokenledger.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = "a" * 40
REFRESH_SECRET = "r" * 40


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_settings_cache()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def signer():
    return TokenSigner(SigningKeys(access=ACCESS_SECRET, refresh=REFRESH_SECRET))


@pytest.fixture
def service(store, signer):
    return TokenService(store, signer)


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
