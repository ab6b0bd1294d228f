"""Pytest fixtures for Haystack client tests"""

import json
from collections.abc import Callable
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from haystack_client.auth import TokenManager
from haystack_client.client import HaystackClient
from haystack_client.transport import HttpxTransport

BASE_URI = "https://haystack.example.com"

# =============================================================================
# Token fixtures
# =============================================================================


def make_token(access: str = "access-1", refresh: str = "refresh-1") -> dict:
    """Token endpoint response valid for one hour"""
    return {
        "access_token": access,
        "refresh_token": refresh,
        "expires_in": 3600,
        "token_type": "Bearer",
    }


class FakeClock:
    """Settable clock returning epoch milliseconds"""

    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


@pytest.fixture
def token_factory() -> Callable[..., dict]:
    return make_token


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_transport() -> AsyncMock:
    """Transport double whose submit is an AsyncMock"""
    transport = AsyncMock()
    transport.submit = AsyncMock()
    transport.aclose = AsyncMock()
    return transport


@pytest.fixture
def token_manager(mock_transport, clock) -> TokenManager:
    return TokenManager(
        mock_transport,
        "user@example.com",
        "secret",
        "client-id",
        "client-secret",
        clock=clock,
    )


# =============================================================================
# HTTP fixtures
# =============================================================================


class RecordingServer:
    """httpx.MockTransport handler routing on request path

    Routes map a path to a callable taking the request and returning an
    httpx.Response. The token endpoint is served by default.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.tokens_issued = 0
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {
            "/oauth2/token": self._token
        }

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.tokens_issued += 1
        return httpx.Response(
            200, json=make_token(access=f"access-{self.tokens_issued}")
        )

    def route(
        self, path: str, handler: Callable[[httpx.Request], httpx.Response]
    ) -> None:
        self.routes[path] = handler

    def json_route(self, path: str, body: object, status: int = 200) -> None:
        self.routes[path] = lambda request: httpx.Response(status, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"message": "not found"})
        return route(request)

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def body(request: httpx.Request) -> object:
        return json.loads(request.content)


@pytest.fixture
def server() -> RecordingServer:
    return RecordingServer()


@pytest.fixture
def http_transport(server) -> HttpxTransport:
    return HttpxTransport(BASE_URI, transport=httpx.MockTransport(server.handler))


@pytest_asyncio.fixture
async def client(http_transport):
    """HaystackClient talking to the recording server"""
    client = HaystackClient(
        BASE_URI,
        "user@example.com",
        "secret",
        "client-id",
        "client-secret",
        transport=http_transport,
    )
    yield client
    await client.aclose()
