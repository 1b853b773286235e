from __future__ import annotations

from typing import Any

from mcp.server.lowlevel.server import Server as MCPServer
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER

from mcpgate.server.context import AuthContext, AuthContextRegistry


def get_auth_context(
    contexts: AuthContextRegistry, server: MCPServer[Any, Any]
) -> AuthContext | None:
    """
    Look up the auth context of the MCP request currently being handled.

    Must be called from inside a request handler of `server`. Returns None for
    requests that carried no resolvable identity.

    The MCP endpoint stamps every request it forwards, initialize included, with
    the `Mcp-Session-Id` of the session serving it, so that header is the key.
    """
    request_context = server.request_context
    request = request_context.request
    session_id = None
    if request is not None and hasattr(request, "headers"):
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
    return contexts.get(request_context.request_id, session_id)


def get_provider_headers(
    contexts: AuthContextRegistry, server: MCPServer[Any, Any]
) -> dict[str, str]:
    """
    Headers to send to the upstream provider API for the current request.

    Never raises; returns an empty dict when no auth context was resolved.
    """
    try:
        context = get_auth_context(contexts, server)
    except LookupError:
        return {}
    if context is None:
        return {}
    return dict(context.resolved_headers)
