import json
from collections.abc import Callable
from typing import Any

import anyio
import pytest
from anyio.abc import TaskGroup
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Receive, Scope, Send

from mcpgate.server.auth.store import InMemoryCredentialStore
from mcpgate.server.context import AuthContext, AuthContextRegistry
from mcpgate.server.sessions import SessionInitializedCallback, Transport
from mcpgate.settings import Settings


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Build Settings without reading the environment or a .env file."""

    def factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "oauth_authorization_url": "https://provider.example.com/authorize",
            "oauth_token_url": "https://provider.example.com/token",
            "provider_client_id": "provider-client",
            "provider_client_secret": "provider-secret",
            "oauth_scopes": "read write",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)  # type: ignore[call-arg]

    return factory


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


def _make_request(
    method: str = "POST",
    path: str = "/mcp",
    headers: dict[str, str] | None = None,
    host: str = "localhost:3000",
    query_string: bytes = b"",
) -> Request:
    raw_headers = [(b"host", host.encode())]
    raw_headers += [
        (key.lower().encode(), value.encode()) for key, value in (headers or {}).items()
    ]
    server_host, _, server_port = host.partition(":")
    return Request(
        {
            "type": "http",
            "method": method,
            "scheme": "http",
            "path": path,
            "root_path": "",
            "query_string": query_string,
            "headers": raw_headers,
            "server": (server_host, int(server_port or 80)),
        }
    )


@pytest.fixture
def make_request() -> Callable[..., Request]:
    return _make_request



class FakeTransport(Transport):
    """Records what the registry and endpoint do with it."""

    def __init__(
        self,
        factory: "FakeTransportFactory",
        session_id: str,
        on_initialized: SessionInitializedCallback,
    ):
        self.factory = factory
        self.session_id = session_id
        self.on_initialized = on_initialized
        self.connect_calls = 0
        self.requests: list[tuple[str, bytes]] = []
        self.observed_contexts: list[AuthContext | None] = []
        self.closed = False

    async def connect(self, task_group: TaskGroup) -> None:
        self.connect_calls += 1
        if self.factory.connect_error is not None:
            raise self.factory.connect_error
        await anyio.sleep(self.factory.connect_delay)

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        body = await request.body()
        self.requests.append((request.method, body))

        if self.factory.contexts is not None and body:
            session_id = request.headers.get("mcp-session-id")
            message = json.loads(body)
            for item in message if isinstance(message, list) else [message]:
                if "id" in item:
                    self.observed_contexts.append(
                        self.factory.contexts.get(item["id"], session_id)
                    )

        status = self.factory.status
        if status == 200 and request.method == "POST":
            self.on_initialized(self)
        response = JSONResponse(
            {"method": request.method},
            status_code=status,
            headers={"mcp-session-id": self.session_id},
        )
        await response(scope, receive, send)

    async def close(self) -> None:
        self.closed = True


class FakeTransportFactory:
    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.status = 200
        self.connect_delay = 0.0
        self.connect_error: Exception | None = None
        self.contexts: AuthContextRegistry | None = None

    def __call__(
        self, session_id: str, on_initialized: SessionInitializedCallback
    ) -> FakeTransport:
        transport = FakeTransport(self, session_id, on_initialized)
        self.transports.append(transport)
        return transport


@pytest.fixture
def fake_transports() -> FakeTransportFactory:
    return FakeTransportFactory()
