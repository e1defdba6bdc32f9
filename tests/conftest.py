"""Shared fixtures for the HookedLee gateway test suite."""

import json

import httpx
import pytest

from hookedlee.config.settings import Settings, get_settings
from hookedlee.main import create_app

TEST_SECRET = "test-secret-that-is-long-enough-for-hs256"
BIGMODEL_KEY = "0123456789abcdef0123456789abcdef.bigmodelsecret"
DEEPSEEK_KEY = "sk-deepseek-test-key-000000000000"


def make_settings(**overrides) -> Settings:
    values = {
        "jwt_secret": TEST_SECRET,
        "bigmodel_api_key": BIGMODEL_KEY,
        "deepseek_api_key": DEEPSEEK_KEY,
        "wechat_app_id": "wx-test-app",
        "wechat_app_secret": "wx-test-secret",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def chat_completion(content: str = "Hello!") -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
    }


def sse_body(*deltas: str) -> bytes:
    lines = []
    for delta in deltas:
        chunk = {"choices": [{"index": 0, "delta": {"content": delta}}]}
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records backoff delays instead of waiting; optionally moves a clock."""

    def __init__(self, clock: ManualClock | None = None):
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


class UpstreamStub:
    """Scripted stand-in for provider (or backend) HTTP endpoints.

    Queued items are returned in order; an exception instance is raised
    instead. Once the queue is empty every call gets ``default``.
    """

    def __init__(self, default: httpx.Response | None = None):
        self.requests: list[httpx.Request] = []
        self.queue: list = []
        self.default = default or httpx.Response(200, json=chat_completion())

    def push(self, *items) -> None:
        self.queue.extend(items)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.queue.pop(0) if self.queue else self.default
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def json_bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


class FakeIdentity:
    """WeChat exchange double: ``codes`` maps login code -> openid."""

    def __init__(self, codes: dict[str, str] | None = None):
        self.codes = codes or {"good-code": "openid-alice-0001"}
        self.closed = False

    async def exchange(self, code: str) -> str | None:
        return self.codes.get(code)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings cache.

    Usage:
        override_settings(JWT_SECRET="s3cret", DEEPSEEK_API_KEY="")
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_cache so Settings re-reads env
        get_settings.cache_clear()

    yield _override

    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def app(settings, identity, upstream, fake_sleep):
    return create_app(settings, identity=identity, transport=upstream.transport, sleep=fake_sleep)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def auth_headers(app) -> dict:
    token = app.state.token_service.issue("openid-alice-0001")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def chat_request_body() -> dict:
    return {
        "model": "glm-4.7-flash",
        "messages": [
            {"role": "system", "content": "You are a fly fishing guide."},
            {"role": "user", "content": "How do I tie a clinch knot?"},
        ],
    }
