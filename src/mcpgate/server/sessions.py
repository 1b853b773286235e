"""Session id to transport bookkeeping for the MCP endpoint."""

from __future__ import annotations

import contextlib
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from uuid import uuid4
from weakref import WeakKeyDictionary

import anyio
from anyio.abc import TaskGroup
from starlette.types import Receive, Scope, Send

from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)


class Transport(ABC):
    """A duplex channel bound to exactly one MCP session."""

    session_id: str

    @abstractmethod
    async def connect(self, task_group: TaskGroup) -> None:
        """Start serving the session. Called at most once per instance."""

    @abstractmethod
    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Handle one HTTP request for this session."""

    @abstractmethod
    async def close(self) -> None: ...


SessionInitializedCallback = Callable[[Transport], None]
TransportFactory = Callable[[str, SessionInitializedCallback], Transport]


class SessionTransportRegistry:
    """Owns the live transports, keyed by session id.

    A transport is created for an initialize request but only bound to its session
    id once the transport reports that the session was established, so requests
    that fail during initialization never leave a session behind.

    Args:
        transport_factory: Builds a transport for a session id. The transport must
            call the given callback, with itself, once the session is established.
    """

    def __init__(self, transport_factory: TransportFactory):
        self.transport_factory = transport_factory
        self._transports: dict[str, Transport] = {}
        self._connected: WeakKeyDictionary[Transport, anyio.Event] = (
            WeakKeyDictionary()
        )
        self._task_group: TaskGroup | None = None

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Own the task group the transports run in.

        Use this as (or inside) the Starlette lifespan.
        """
        if self._task_group is not None:
            raise RuntimeError("SessionTransportRegistry is already running")

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("Session transport registry started")
            try:
                yield
            finally:
                logger.info("Session transport registry shutting down")
                transports = list(self._transports.values())
                self._transports.clear()
                with anyio.CancelScope(shield=True):
                    for transport in transports:
                        await self._close(transport)
                tg.cancel_scope.cancel()
                self._task_group = None

    def get(self, session_id: str) -> Transport | None:
        return self._transports.get(session_id)

    def create_for_initialize(
        self, client_session_id: str | None = None
    ) -> tuple[str, Transport]:
        """Find or build the transport for an initialize request.

        The client's session id is reused when it supplied one; otherwise a fresh
        id is generated.
        """
        session_id = client_session_id or str(uuid4())
        existing = self._transports.get(session_id)
        if existing is not None:
            return session_id, existing

        transport = self.transport_factory(session_id, self._bind)
        logger.debug("Created transport for session %s", session_id)
        return session_id, transport

    def is_bound(self, transport: Transport) -> bool:
        return self._transports.get(transport.session_id) is transport

    def _bind(self, transport: Transport) -> None:
        current = self._transports.setdefault(transport.session_id, transport)
        if current is transport:
            logger.info("Session initialized: %s", transport.session_id)
        else:
            logger.warning(
                "Session %s was initialized concurrently, keeping the first transport",
                transport.session_id,
            )

    async def ensure_connected(self, transport: Transport) -> None:
        """Connect `transport` unless it is connected or connecting already.

        Concurrent callers for the same transport wait for the first connect to
        finish. If it fails, the next caller tries again.
        """
        while (event := self._connected.get(transport)) is not None:
            if event.is_set():
                return
            await event.wait()

        # no await between the check above and claiming the slot
        event = anyio.Event()
        self._connected[transport] = event
        try:
            await transport.connect(self._require_task_group())
        except BaseException:
            del self._connected[transport]
            event.set()
            raise
        event.set()

    async def delete(self, session_id: str) -> bool:
        """Unbind the session and close its transport."""
        transport = self._transports.pop(session_id, None)
        if transport is None:
            return False
        await self._close(transport)
        logger.info("Session terminated: %s", session_id)
        return True

    async def discard(self, transport: Transport) -> None:
        """Close a transport that never won a registry slot."""
        if self.is_bound(transport):
            return
        await self._close(transport)

    async def _close(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.error(
                "Error closing transport for session %s: %s", transport.session_id, e
            )

    def _require_task_group(self) -> TaskGroup:
        if self._task_group is None:
            raise RuntimeError("Task group is not initialized. Make sure to use run().")
        return self._task_group

    def __len__(self) -> int:
        return len(self._transports)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._transports
