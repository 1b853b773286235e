"""Request-scoped auth context shared between the HTTP layer and MCP handlers.

The MCP low-level server dispatches each JSON-RPC request on its own task and only
hands the handler the request's JSON-RPC id. The HTTP endpoint therefore records the
auth result under that id before handing the request to the transport, and the
handler looks it up again with the same id.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from mcpgate.server.auth.store import ProviderCredential
from mcpgate.settings import AuthStrategy
from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)

RequestId = str | int


@dataclass(frozen=True, kw_only=True)
class AuthContext:
    """Auth result for a single MCP request.

    Attributes:
        strategy: The configured auth strategy.
        inbound_headers: Auth headers exactly as the client sent them.
        resolved_headers: Headers to use upstream, carrying the provider token when
            one was resolved.
        provider_token: The provider access token, if resolved.
        provider_credential: The full provider credential, if resolved.
        resource_token: The resource-server token the client presented.
    """

    strategy: AuthStrategy = "none"
    inbound_headers: dict[str, str] = field(default_factory=dict)
    resolved_headers: dict[str, str] = field(default_factory=dict)
    provider_token: str | None = None
    provider_credential: ProviderCredential | None = None
    resource_token: str | None = None

    @property
    def has_provider_credential(self) -> bool:
        return self.provider_credential is not None

    def summary(self) -> dict[str, Any]:
        """A token-free description safe to log or return to clients."""
        return {
            "strategy": self.strategy,
            "provider_credential": self.has_provider_credential,
            "scopes": list(self.provider_credential.scopes)
            if self.provider_credential and self.provider_credential.scopes
            else [],
        }


@dataclass
class _Entry:
    context: AuthContext
    created_at: float


class AuthContextRegistry:
    """Maps (session id, JSON-RPC request id) to the request's AuthContext.

    JSON-RPC ids are only unique within a session, so the session id is part of the
    key. Entries should be discarded once the response has been produced; the TTL
    and size cap bound memory for requests whose discard never runs.
    """

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 10_000):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[str | None, RequestId], _Entry] = (
            OrderedDict()
        )
        self._lock = threading.Lock()

    def create(
        self,
        request_id: RequestId,
        session_id: str | None,
        context: AuthContext,
    ) -> None:
        key = (session_id, request_id)
        now = time.monotonic()
        with self._lock:
            self._purge_expired(now)
            self._entries.pop(key, None)
            self._entries[key] = _Entry(context=context, created_at=now)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.warning("Auth context registry full, evicted %s", evicted)

    def get(
        self, request_id: RequestId, session_id: str | None = None
    ) -> AuthContext | None:
        key = (session_id, request_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if time.monotonic() - entry.created_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return entry.context

    def discard(self, request_id: RequestId, session_id: str | None = None) -> None:
        with self._lock:
            self._entries.pop((session_id, request_id), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge_expired(self, now: float) -> None:
        # entries are kept in insertion order, so the oldest are at the front
        while self._entries:
            key, entry = next(iter(self._entries.items()))
            if now - entry.created_at <= self.ttl_seconds:
                break
            del self._entries[key]
