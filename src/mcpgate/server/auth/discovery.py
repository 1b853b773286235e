"""OAuth discovery metadata and the strategies that decide which URLs to advertise.

Two deployment topologies are supported:

- ``same_origin``: the authorization server shares the resource's origin and the
  MCP endpoint lives under a fixed subpath.
- ``adjacent_port``: the authorization server runs on the resource's port + 1, so
  the two can be separate processes while remaining discoverable.

Whatever the topology, the authorization server metadata always advertises the
proxy's own ``/authorize``, ``/token`` and ``/revoke`` endpoints. Advertising the
upstream provider's endpoints would let clients obtain provider tokens directly and
bypass the resource-token indirection the security gate relies on.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import urlsplit

from mcp.shared.auth import OAuthMetadata, ProtectedResourceMetadata
from pydantic import AnyHttpUrl

from mcpgate.settings import DiscoveryTopology, Settings

AUTHORIZATION_SERVER_METADATA_PATH = "/.well-known/oauth-authorization-server"
PROTECTED_RESOURCE_METADATA_PATH = "/.well-known/oauth-protected-resource"

DEFAULT_PORTS = {"http": 80, "https": 443}


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def adjacent_port_base(url: str, port: int | None = None) -> str:
    """The scheme and host of `url` on the port after `port`.

    `port` defaults to the URL's own port, or the scheme's default port.
    """
    parts = urlsplit(url)
    if port is None:
        port = parts.port or DEFAULT_PORTS.get(parts.scheme, 80)
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    return f"{parts.scheme}://{host}:{port + 1}"


class DiscoveryStrategy(ABC):
    """Resolves the URLs advertised in discovery documents."""

    @abstractmethod
    def resolve_auth_base_url(self, request_url: str, settings: Settings) -> str:
        """Base URL of the authorization server."""

    def resolve_authorization_server_url(
        self, request_url: str, settings: Settings
    ) -> str:
        """URL of the authorization server metadata document."""
        base = self.resolve_auth_base_url(request_url, settings)
        return f"{base}{AUTHORIZATION_SERVER_METADATA_PATH}"

    @abstractmethod
    def resolve_resource_base_url(self, request_url: str, settings: Settings) -> str:
        """URL of the protected MCP resource."""


class SameOriginStrategy(DiscoveryStrategy):
    def resolve_auth_base_url(self, request_url: str, settings: Settings) -> str:
        return settings.resource_origin or origin_of(request_url)

    def resolve_resource_base_url(self, request_url: str, settings: Settings) -> str:
        if settings.auth_resource_uri:
            return settings.auth_resource_uri
        return f"{origin_of(request_url)}{settings.mcp_path}"


class AdjacentPortStrategy(DiscoveryStrategy):
    def resolve_auth_base_url(self, request_url: str, settings: Settings) -> str:
        if settings.auth_resource_uri:
            return adjacent_port_base(settings.auth_resource_uri)
        # the request may have arrived on either server, so use the configured port
        return adjacent_port_base(request_url, port=settings.port)

    def resolve_resource_base_url(self, request_url: str, settings: Settings) -> str:
        if settings.auth_resource_uri:
            return settings.auth_resource_uri
        return f"{origin_of(request_url)}{settings.mcp_path}"


_STRATEGIES: dict[str, type[DiscoveryStrategy]] = {
    "same_origin": SameOriginStrategy,
    "adjacent_port": AdjacentPortStrategy,
}


def get_discovery_strategy(topology: DiscoveryTopology) -> DiscoveryStrategy:
    try:
        return _STRATEGIES[topology]()
    except KeyError:
        raise ValueError(f"Unknown discovery topology: {topology!r}") from None


class DiscoveryHandlers:
    """Builds the two discovery documents for a given request URL."""

    def __init__(self, settings: Settings, strategy: DiscoveryStrategy):
        self.settings = settings
        self.strategy = strategy

    def authorization_metadata(self, request_url: str) -> dict[str, Any]:
        base = self.strategy.resolve_auth_base_url(request_url, self.settings)
        metadata = OAuthMetadata(
            issuer=AnyHttpUrl(base),
            authorization_endpoint=AnyHttpUrl(f"{base}/authorize"),
            token_endpoint=AnyHttpUrl(f"{base}/token"),
            revocation_endpoint=AnyHttpUrl(f"{base}/revoke"),
            scopes_supported=self.settings.scopes or None,
            response_types_supported=["code"],
            grant_types_supported=["authorization_code", "refresh_token"],
            token_endpoint_auth_methods_supported=["none"],
            code_challenge_methods_supported=["S256"],
        )
        return metadata.model_dump(mode="json", exclude_none=True)

    def protected_resource_metadata(
        self, request_url: str, session_id: str | None = None
    ) -> dict[str, Any]:
        resource = self.strategy.resolve_resource_base_url(request_url, self.settings)
        authorization_server = (
            self.settings.auth_discovery_url
            or self.strategy.resolve_authorization_server_url(
                request_url, self.settings
            )
        )
        metadata = ProtectedResourceMetadata(
            resource=AnyHttpUrl(resource),
            authorization_servers=[AnyHttpUrl(authorization_server)],
            scopes_supported=self.settings.scopes or None,
            bearer_methods_supported=["header"],
        )
        document = metadata.model_dump(mode="json", exclude_none=True)
        if session_id:
            document["sid"] = session_id
        return document
