"""Transport adapter over the MCP SDK's streamable HTTP server transport."""

from __future__ import annotations

from typing import Any

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.lowlevel.server import Server as MCPServer
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.types import Message, Receive, Scope, Send

from mcpgate.server.sessions import SessionInitializedCallback, Transport
from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)


class StreamableHTTPTransport(Transport):
    """Runs `server` for one session over a `StreamableHTTPServerTransport`.

    The session counts as established the first time a POST for it is answered
    with a 200, which is when `on_initialized` fires.
    """

    def __init__(
        self,
        session_id: str,
        server: MCPServer[Any, Any],
        on_initialized: SessionInitializedCallback,
        json_response: bool = False,
    ):
        self.session_id = session_id
        self.server = server
        self._on_initialized = on_initialized
        self._initialized = False
        self._http_transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
            event_store=None,
            security_settings=None,
        )

    async def connect(self, task_group: TaskGroup) -> None:
        await task_group.start(self._run_server)

    async def _run_server(
        self, *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED
    ) -> None:
        async with self._http_transport.connect() as streams:
            read_stream, write_stream = streams
            task_status.started()
            try:
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options(),
                    stateless=False,
                )
            except Exception:
                logger.exception("Session %s crashed", self.session_id)

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._initialized or scope.get("method") != "POST":
            await self._http_transport.handle_request(scope, receive, send)
            return

        async def send_wrapper(message: Message) -> None:
            if (
                message["type"] == "http.response.start"
                and message["status"] == 200
                and not self._initialized
            ):
                self._initialized = True
                self._on_initialized(self)
            await send(message)

        await self._http_transport.handle_request(scope, receive, send_wrapper)

    async def close(self) -> None:
        if not self._http_transport.is_terminated:
            await self._http_transport.terminate()
