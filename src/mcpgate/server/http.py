"""HTTP surface: the MCP endpoint and the Starlette applications around it."""

from __future__ import annotations

import contextlib
import json
from collections.abc import AsyncIterator
from typing import Any

from mcp.server.lowlevel.server import Server as MCPServer
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import BaseRoute, Route
from starlette.types import Message, Receive, Scope, Send

from mcpgate.server.auth.discovery import (
    AUTHORIZATION_SERVER_METADATA_PATH,
    PROTECTED_RESOURCE_METADATA_PATH,
    DiscoveryHandlers,
    DiscoveryStrategy,
    get_discovery_strategy,
)
from mcpgate.server.auth.oauth_proxy import OAuthProxy
from mcpgate.server.auth.store import CredentialStore, InMemoryCredentialStore
from mcpgate.server.context import AuthContextRegistry, RequestId
from mcpgate.server.responses import internal_error, no_session
from mcpgate.server.security import Pass, SecurityGate
from mcpgate.server.server import create_server
from mcpgate.server.sessions import (
    SessionInitializedCallback,
    SessionTransportRegistry,
    Transport,
)
from mcpgate.server.transport import StreamableHTTPTransport
from mcpgate.settings import Settings
from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)


def _parse_messages(body: bytes) -> list[dict[str, Any]]:
    try:
        data = json.loads(body) if body else None
    except ValueError:
        return []
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    return []


def _request_ids(messages: list[dict[str, Any]]) -> list[RequestId]:
    """JSON-RPC ids of the requests (not notifications or responses) in a body."""
    return [
        message["id"]
        for message in messages
        if "method" in message
        and isinstance(message.get("id"), (str, int))
        and not isinstance(message.get("id"), bool)
    ]


def _replay_receive(body: bytes, receive: Receive) -> Receive:
    body_sent = False

    async def replay() -> Message:
        nonlocal body_sent
        if not body_sent:
            body_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


def _with_session_header(scope: Scope, session_id: str) -> Scope:
    """Copy of `scope` whose `Mcp-Session-Id` header names `session_id`.

    An initialize request usually arrives without the header, but handlers look
    up their auth context by the session id the request was served under.
    """
    name = MCP_SESSION_ID_HEADER.encode("latin-1")
    headers = [(key, value) for key, value in scope["headers"] if key.lower() != name]
    headers.append((name, session_id.encode("latin-1")))
    return {**scope, "headers": headers}


def _invalid_session() -> Response:
    return PlainTextResponse("Invalid session", status_code=404)


class McpEndpoint:
    """ASGI endpoint for POST, GET and DELETE on the MCP path.

    Every request first goes through the security gate. POST requests carrying an
    `initialize` message create (or reuse) the session's transport; all other
    requests must name an existing session in the `Mcp-Session-Id` header.
    """

    def __init__(
        self,
        gate: SecurityGate,
        registry: SessionTransportRegistry,
        contexts: AuthContextRegistry,
    ):
        self.gate = gate
        self.registry = registry
        self.contexts = contexts

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        request = Request(scope, receive)
        try:
            result = await self.gate.authenticate(request)
            if isinstance(result, Response):
                await result(scope, receive, send_wrapper)
                return
            if not isinstance(result, Pass):
                await result.to_response()(scope, receive, send_wrapper)
                return

            if request.method == "POST":
                await self._handle_post(request, result, send_wrapper)
            elif request.method == "GET":
                await self._handle_get(request, send_wrapper)
            elif request.method == "DELETE":
                await self._handle_delete(request, send_wrapper)
            else:
                response = PlainTextResponse(
                    "Method Not Allowed",
                    status_code=405,
                    headers={"Allow": "GET, POST, DELETE"},
                )
                await response(scope, receive, send_wrapper)
        except Exception as e:
            logger.error(
                "Error handling MCP %s request: %s", request.method, e, exc_info=True
            )
            if not response_started:
                await internal_error()(scope, receive, send_wrapper)

    async def _handle_post(self, request: Request, result: Pass, send: Send) -> None:
        scope, receive = request.scope, request.receive
        body = await request.body()
        messages = _parse_messages(body)
        is_initialize = any(m.get("method") == "initialize" for m in messages)
        session_header = request.headers.get(MCP_SESSION_ID_HEADER)

        logger.debug(
            "Processing MCP request (session=%s, initialize=%s, authorization=%s)",
            session_header,
            is_initialize,
            "authorization" in request.headers,
        )

        if is_initialize:
            session_id, transport = self.registry.create_for_initialize(session_header)
        elif not session_header:
            await no_session()(scope, receive, send)
            return
        else:
            existing = self.registry.get(session_header)
            if existing is None:
                await _invalid_session()(scope, receive, send)
                return
            session_id, transport = session_header, existing

        request_ids = _request_ids(messages)
        if result.auth_context is not None:
            for request_id in request_ids:
                self.contexts.create(request_id, session_id, result.auth_context)

        try:
            await self.registry.ensure_connected(transport)
            await transport.handle_request(
                _with_session_header(scope, session_id),
                _replay_receive(body, receive),
                send,
            )
        finally:
            for request_id in request_ids:
                self.contexts.discard(request_id, session_id)
            if is_initialize:
                await self.registry.discard(transport)

    async def _resolve_session(
        self, request: Request, send: Send
    ) -> tuple[str, Transport] | None:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if not session_id:
            await no_session()(request.scope, request.receive, send)
            return None
        transport = self.registry.get(session_id)
        if transport is None:
            await _invalid_session()(request.scope, request.receive, send)
            return None
        return session_id, transport

    async def _handle_get(self, request: Request, send: Send) -> None:
        resolved = await self._resolve_session(request, send)
        if resolved is None:
            return
        _, transport = resolved
        await self.registry.ensure_connected(transport)
        await transport.handle_request(request.scope, request.receive, send)

    async def _handle_delete(self, request: Request, send: Send) -> None:
        resolved = await self._resolve_session(request, send)
        if resolved is None:
            return
        session_id, transport = resolved
        await self.registry.ensure_connected(transport)
        try:
            await transport.handle_request(request.scope, request.receive, send)
        finally:
            await self.registry.delete(session_id)


# -----------------------------------------------------------------------------
# Applications
# -----------------------------------------------------------------------------


def create_session_registry(
    settings: Settings, server: MCPServer[Any, Any]
) -> SessionTransportRegistry:
    def transport_factory(
        session_id: str, on_initialized: SessionInitializedCallback
    ) -> Transport:
        return StreamableHTTPTransport(
            session_id,
            server,
            on_initialized,
            json_response=settings.json_response,
        )

    return SessionTransportRegistry(transport_factory)


def create_discovery_routes(
    settings: Settings,
    strategy: DiscoveryStrategy,
    *,
    protected_resource: bool = True,
) -> list[BaseRoute]:
    handlers = DiscoveryHandlers(settings, strategy)

    async def authorization_server_metadata(request: Request) -> Response:
        return JSONResponse(handlers.authorization_metadata(str(request.url)))

    async def protected_resource_metadata(request: Request) -> Response:
        return JSONResponse(
            handlers.protected_resource_metadata(
                str(request.url), request.query_params.get("sid")
            )
        )

    routes: list[BaseRoute] = [
        Route(
            AUTHORIZATION_SERVER_METADATA_PATH,
            endpoint=authorization_server_metadata,
            methods=["GET"],
        )
    ]
    if protected_resource:
        routes.append(
            Route(
                PROTECTED_RESOURCE_METADATA_PATH,
                endpoint=protected_resource_metadata,
                methods=["GET"],
            )
        )
        # RFC 9728 path-suffixed location for the resource at mcp_path
        routes.append(
            Route(
                f"{PROTECTED_RESOURCE_METADATA_PATH}{settings.mcp_path}",
                endpoint=protected_resource_metadata,
                methods=["GET"],
            )
        )
    return routes


def create_resource_app(
    settings: Settings,
    *,
    store: CredentialStore | None = None,
    contexts: AuthContextRegistry | None = None,
    registry: SessionTransportRegistry | None = None,
    server: MCPServer[Any, Any] | None = None,
    strategy: DiscoveryStrategy | None = None,
    extra_routes: list[BaseRoute] | None = None,
    debug: bool = False,
) -> Starlette:
    """Build the resource server app: the gated MCP endpoint plus discovery."""
    if store is None:
        store = InMemoryCredentialStore()
    if contexts is None:
        contexts = AuthContextRegistry(
            ttl_seconds=settings.context_ttl_seconds,
            max_entries=settings.context_max_entries,
        )
    if registry is None:
        registry = create_session_registry(
            settings, server or create_server(contexts)
        )
    strategy = strategy or get_discovery_strategy(settings.discovery_topology)

    endpoint = McpEndpoint(SecurityGate(settings, store), registry, contexts)
    routes: list[BaseRoute] = [
        Route(settings.mcp_path, endpoint=endpoint, methods=["GET", "POST", "DELETE"]),
        *create_discovery_routes(settings, strategy),
        *(extra_routes or []),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with registry.run():
            yield

    app = Starlette(routes=routes, lifespan=lifespan, debug=debug)
    app.state.settings = settings
    app.state.store = store
    app.state.contexts = contexts
    app.state.registry = registry
    return app


def create_auth_app(
    settings: Settings,
    *,
    store: CredentialStore | None = None,
    strategy: DiscoveryStrategy | None = None,
    debug: bool = False,
) -> Starlette:
    """Build the authorization server app: the OAuth proxy plus its metadata."""
    if store is None:
        store = InMemoryCredentialStore()
    strategy = strategy or get_discovery_strategy(settings.discovery_topology)
    proxy = OAuthProxy(settings, store, strategy)

    routes: list[BaseRoute] = [
        *create_discovery_routes(settings, strategy, protected_resource=False),
        *proxy.get_routes(),
    ]
    app = Starlette(routes=routes, debug=debug)
    app.state.settings = settings
    app.state.store = store
    app.state.proxy = proxy
    return app


def create_app(
    settings: Settings,
    *,
    store: CredentialStore | None = None,
    contexts: AuthContextRegistry | None = None,
    registry: SessionTransportRegistry | None = None,
    server: MCPServer[Any, Any] | None = None,
    debug: bool = False,
) -> Starlette:
    """Build one app serving both the resource and the OAuth proxy.

    For the `same_origin` topology, where both share an origin.
    """
    if store is None:
        store = InMemoryCredentialStore()
    strategy = get_discovery_strategy("same_origin")
    proxy = OAuthProxy(settings, store, strategy)
    app = create_resource_app(
        settings,
        store=store,
        contexts=contexts,
        registry=registry,
        server=server,
        strategy=strategy,
        extra_routes=proxy.get_routes(),
        debug=debug,
    )
    app.state.proxy = proxy
    return app
