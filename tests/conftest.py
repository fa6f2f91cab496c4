import asyncio
import dataclasses
from typing import Callable, List, Optional

import httpx
import pytest

from cortex_chat.core.settings import Settings, load_settings

_ENV_KEYS = (
    "CORTEX_API_BASE_URL",
    "CORTEX_API_KEY",
    "CORTEX_MEMORY_BACKEND",
    "CORTEX_TIMEOUT_MS",
    "CORTEX_AGENT_ENABLED",
    "CORTEX_AGENT_BASE_URL",
    "CORTEX_AGENT_TIMEOUT_MS",
    "CHAT_DEMO_MODE",
    "CHAT_DEMO_CHUNK_CHARS",
    "CHAT_DEMO_DELAY_MS",
    "CHAT_MAX_MESSAGE_CHARS",
    "CHAT_MAX_TITLE_CHARS",
    "CHAT_RATE_LIMIT_RPM",
    "AUTH_MODE",
    "GROQ_API_KEY",
    "OPENAI_API_KEY",
    "CORS_ALLOW_ORIGINS",
)

MEMORY_URL = "http://memory.test"
AGENT_URL = "http://agent.test"


@pytest.fixture
def settings(monkeypatch) -> Settings:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CORTEX_API_BASE_URL", MEMORY_URL)
    monkeypatch.setenv("CORTEX_AGENT_BASE_URL", AGENT_URL)
    monkeypatch.setenv("CHAT_DEMO_MODE", "false")
    monkeypatch.setenv("CHAT_DEMO_DELAY_MS", "0")
    return load_settings()


def with_overrides(settings: Settings, **overrides) -> Settings:
    return dataclasses.replace(settings, **overrides)


class Recorder:
    """Routes requests to per-path handlers and remembers every call."""

    def __init__(self) -> None:
        self.calls: List[httpx.Request] = []
        self._routes: List[tuple] = []

    def on(self, method: str, url_prefix: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self._routes.append((method, url_prefix, handler))

    def hits(self, url_prefix: str, method: Optional[str] = None) -> int:
        return sum(
            1
            for request in self.calls
            if str(request.url).startswith(url_prefix) and (method is None or request.method == method)
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        for method, prefix, handler in self._routes:
            if request.method == method and str(request.url).startswith(prefix):
                result = handler(request)
                if asyncio.iscoroutine(result):
                    result = await result
                return result
        return httpx.Response(404, json={"detail": "no route"})


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def mock_client(recorder) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder))


class ScriptedStream(httpx.AsyncByteStream):
    """Yields the given chunks, then raises ``error`` or blocks on ``hold`` if set."""

    def __init__(self, chunks, error: Optional[Exception] = None, hold: bool = False) -> None:
        self._chunks = list(chunks)
        self._error = error
        self._hold = hold
        self.closed = False

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error
        if self._hold:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True
