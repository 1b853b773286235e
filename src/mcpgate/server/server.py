"""The default MCP server served behind the gate."""

from __future__ import annotations

import json
from typing import Any

import mcp.types as types
from mcp.server.lowlevel.server import Server as MCPServer

import mcpgate
from mcpgate.server.context import AuthContextRegistry
from mcpgate.server.dependencies import get_auth_context
from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)

WHOAMI_TOOL = types.Tool(
    name="whoami",
    description=(
        "Report how the current request was authenticated. Never returns tokens."
    ),
    inputSchema={"type": "object", "properties": {}},
)


def create_server(
    contexts: AuthContextRegistry, name: str = "mcpgate"
) -> MCPServer[Any, Any]:
    """Build a low-level MCP server whose tools read the per-request auth context."""
    server: MCPServer[Any, Any] = MCPServer(name, version=mcpgate.__version__)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [WHOAMI_TOOL]

    @server.call_tool()
    async def call_tool(
        name: str, arguments: dict[str, Any]
    ) -> list[types.TextContent]:
        if name != WHOAMI_TOOL.name:
            raise ValueError(f"Unknown tool: {name}")

        context = get_auth_context(contexts, server)
        if context is None:
            summary: dict[str, Any] = {
                "strategy": "none",
                "provider_credential": False,
                "scopes": [],
            }
        else:
            summary = context.summary()
        logger.debug("whoami: %s", summary)
        return [types.TextContent(type="text", text=json.dumps(summary))]

    return server
