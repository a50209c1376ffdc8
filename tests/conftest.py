import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything imports insightdash.config
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "access-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "refresh-secret-for-tests-only-fedcba9876543210")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from insightdash.service.runtime import reset_runtime_for_tests  # noqa: E402


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
