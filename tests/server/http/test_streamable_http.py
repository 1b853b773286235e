"""Full stack: gate, registry and the MCP SDK transport serving the default server."""

import contextlib
import json
import time
from typing import Any

import httpx
import mcp.types as types
import pytest
from mcp.server.lowlevel.server import Server as MCPServer

from mcpgate.server.auth.store import IssuedTokens, ProviderCredential
from mcpgate.server.context import AuthContextRegistry
from mcpgate.server.dependencies import get_provider_headers
from mcpgate.server.http import create_resource_app
from mcpgate.server.server import create_server

HEADERS = {
    "accept": "application/json, text/event-stream",
    "content-type": "application/json",
}


def rpc(method: str, id: int | None = None, **params: Any) -> str:
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if id is not None:
        message["id"] = id
    if params:
        message["params"] = params
    return json.dumps(message)


INITIALIZE = rpc(
    "initialize",
    id=1,
    protocolVersion="2025-06-18",
    capabilities={},
    clientInfo={"name": "test", "version": "1.0"},
)


@pytest.fixture
async def rs_token(store) -> str:
    await store.save_tokens(
        IssuedTokens(
            access_token="rs-token",
            refresh_token="rs-refresh",
            expires_at=int(time.time()) + 3600,
            scopes=("read",),
        ),
        ProviderCredential(access_token="provider-access", scopes=("read",)),
    )
    return "rs-token"


@pytest.fixture
def serve(make_settings, store):
    @contextlib.asynccontextmanager
    async def serve(
        server: MCPServer[Any, Any] | None = None,
        contexts: AuthContextRegistry | None = None,
        **overrides: Any,
    ):
        settings = make_settings(json_response=True, **overrides)
        if contexts is None:
            contexts = AuthContextRegistry()
        app = create_resource_app(
            settings,
            store=store,
            contexts=contexts,
            server=server if server is not None else create_server(contexts),
        )
        async with app.state.registry.run():
            async with httpx.AsyncClient(
                transport=httpx.ASGITransport(app=app),
                base_url="http://localhost:3000",
            ) as client:
                yield client

    return serve


async def open_session(client: httpx.AsyncClient, headers: dict[str, str]) -> str:
    response = await client.post("/mcp", content=INITIALIZE, headers=headers)
    assert response.status_code == 200
    session_id = response.headers["mcp-session-id"]

    headers = {
        **headers,
        "mcp-session-id": session_id,
        "mcp-protocol-version": "2025-06-18",
    }
    initialized = await client.post(
        "/mcp", content=rpc("notifications/initialized"), headers=headers
    )
    assert initialized.status_code == 202
    return session_id


async def test_whoami_sees_resolved_credential(serve, rs_token):
    headers = {**HEADERS, "authorization": f"Bearer {rs_token}"}
    async with serve() as client:
        session_id = await open_session(client, headers)
        response = await client.post(
            "/mcp",
            content=rpc("tools/call", id=2, name="whoami", arguments={}),
            headers={
                **headers,
                "mcp-session-id": session_id,
                "mcp-protocol-version": "2025-06-18",
            },
        )

    assert response.status_code == 200
    result = response.json()["result"]
    assert json.loads(result["content"][0]["text"]) == {
        "strategy": "oauth",
        "provider_credential": True,
        "scopes": ["read"],
    }
    assert "provider-access" not in response.text


async def test_whoami_without_auth(serve):
    async with serve(auth_enabled=False) as client:
        session_id = await open_session(client, HEADERS)
        response = await client.post(
            "/mcp",
            content=rpc("tools/call", id=2, name="whoami", arguments={}),
            headers={
                **HEADERS,
                "mcp-session-id": session_id,
                "mcp-protocol-version": "2025-06-18",
            },
        )

    result = response.json()["result"]
    assert json.loads(result["content"][0]["text"])["strategy"] == "none"


async def test_handler_gets_provider_headers(serve, rs_token):
    contexts = AuthContextRegistry()
    server: MCPServer[Any, Any] = MCPServer("headers")

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name="upstream_headers",
                inputSchema={"type": "object", "properties": {}},
            )
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]):
        headers = get_provider_headers(contexts, server)
        return [types.TextContent(type="text", text=json.dumps(headers))]

    headers = {**HEADERS, "authorization": f"Bearer {rs_token}"}
    async with serve(server=server, contexts=contexts) as client:
        session_id = await open_session(client, headers)
        response = await client.post(
            "/mcp",
            content=rpc("tools/call", id=3, name="upstream_headers", arguments={}),
            headers={
                **headers,
                "mcp-session-id": session_id,
                "mcp-protocol-version": "2025-06-18",
            },
        )

    result = response.json()["result"]
    assert json.loads(result["content"][0]["text"]) == {
        "authorization": "Bearer provider-access"
    }


async def test_session_lifecycle(serve):
    async with serve(auth_enabled=False) as client:
        session_id = await open_session(client, HEADERS)
        headers = {
            **HEADERS,
            "mcp-session-id": session_id,
            "mcp-protocol-version": "2025-06-18",
        }

        listed = await client.post(
            "/mcp", content=rpc("tools/list", id=2), headers=headers
        )
        assert [tool["name"] for tool in listed.json()["result"]["tools"]] == [
            "whoami"
        ]

        deleted = await client.delete("/mcp", headers=headers)
        assert deleted.status_code == 200

        after = await client.post(
            "/mcp", content=rpc("tools/list", id=3), headers=headers
        )
        assert after.status_code == 404
