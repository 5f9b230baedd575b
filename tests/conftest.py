import asyncio

import httpx
import pytest

from claude_balancer.config import EndpointConfig
from claude_balancer.endpoints import init_endpoints


class RecordingStream(httpx.AsyncByteStream):
    """Upstream body that records how far it was read and whether it was closed.

    ``delay`` seconds pass before each chunk, to imitate a slow upstream.
    """

    def __init__(self, chunks, error=None, delay=0.0):
        self.chunks = list(chunks)
        self.error = error
        self.delay = delay
        self.pulled = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.pulled += 1
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self):
        self.closed = True


class MockUpstream:
    """Fake upstream behind httpx.MockTransport; records every request it sees."""

    def __init__(self, handler):
        self.requests: list[httpx.Request] = []
        self._handler = handler

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        return self._handler(request)

    def create_http_client(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), timeout=timeout)


@pytest.fixture
def endpoint_configs():
    return [
        EndpointConfig("https://one.example.com/api/", "token-1"),
        EndpointConfig("https://two.example.com/api/", "token-2"),
    ]


@pytest.fixture
def registry(endpoint_configs):
    return init_endpoints(endpoint_configs)


@pytest.fixture
def mock_upstream(monkeypatch):
    """Install a fake upstream; call with a handler taking an httpx.Request."""

    def install(handler) -> MockUpstream:
        upstream = MockUpstream(handler)
        monkeypatch.setattr("claude_balancer.proxy.create_http_client", upstream.create_http_client)
        return upstream

    return install


@pytest.fixture
def sse_chunks():
    return [b"data: a\n\n", b"data: b\n\n"]
