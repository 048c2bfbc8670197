import asyncio
import inspect
import os
import sys
from pathlib import Path
from urllib.parse import unquote

# Configure the environment before any imports that might build settings
os.environ.setdefault("USE_MEMORY_BACKEND", "true")
os.environ.setdefault("SUPABASE_URL", "https://project.supabase.test")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-key-for-tests")
os.environ.setdefault("KIMI_API_KEY", "kimi-key-for-tests")
os.environ.setdefault("KIMI_API_ENDPOINT", "https://upstream.test/v1/chat/completions")
os.environ.setdefault("REVENUECAT_SECRET_KEY", "rc-secret-for-tests")
os.environ.setdefault("REVENUECAT_API_BASE", "https://ledger.test")
os.environ.setdefault("LOG_JSON", "true")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from quoteai.service.completions import CompletionClient  # noqa: E402
from quoteai.service.entitlements import EntitlementChecker, RevenueCatClient  # noqa: E402
from quoteai.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


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


class FakeLedger:
    """Serves subscriber lookups; ids without a configured answer are 404."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.requested = []
        self.authorization = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        app_user_id = unquote(request.url.path.rsplit("/", 1)[-1])
        self.requested.append(app_user_id)
        self.authorization.append(request.headers.get("Authorization"))
        status, payload = self.responses.get(app_user_id, (404, {"code": 7259}))
        return httpx.Response(status, json=payload)

    def client(self, entitlement_id: str = "pro") -> RevenueCatClient:
        return RevenueCatClient(
            "rc-secret-for-tests",
            api_base="https://ledger.test",
            entitlement_id=entitlement_id,
            transport=httpx.MockTransport(self.handler),
        )


def subscriber(entitlement=None, *, name="pro"):
    entitlements = {} if entitlement is None else {name: entitlement}
    return 200, {"subscriber": {"original_app_user_id": "x", "entitlements": entitlements}}


class FakeUpstream:
    def __init__(self, status_code=200, body=b'{"choices": []}'):
        self.status_code = status_code
        self.body = body
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, content=self.body)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def backend(runtime):
    return runtime.backend


@pytest.fixture
def ledger(runtime):
    fake = FakeLedger()
    client = fake.client(runtime.settings.pro_entitlement_id)
    runtime.ledger = client
    runtime.entitlements = EntitlementChecker(client)
    return fake


@pytest.fixture
def upstream(runtime):
    fake = FakeUpstream()
    runtime.completions = CompletionClient(
        runtime.settings.kimi_api_key,
        runtime.settings.kimi_api_endpoint,
        transport=httpx.MockTransport(fake.handler),
    )
    return fake
