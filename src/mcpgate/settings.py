from __future__ import annotations as _annotations

import inspect
from typing import Annotated, Any, Literal
from urllib.parse import urlsplit

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from typing_extensions import Self

LOG_LEVEL = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

AuthStrategy = Literal["oauth", "bearer", "api_key", "custom", "none"]

DiscoveryTopology = Literal["same_origin", "adjacent_port"]


def _split_list(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseSettings):
    """mcpgate settings."""

    model_config = SettingsConfigDict(
        env_prefix="MCPGATE_",
        env_file=".env",
        extra="ignore",
    )

    environment: Literal["development", "production"] = "production"
    log_level: LOG_LEVEL = "INFO"
    enable_rich_tracebacks: Annotated[
        bool,
        Field(
            description=inspect.cleandoc(
                """
                If True, will use rich tracebacks for logging.
                """
            )
        ),
    ] = True

    @model_validator(mode="after")
    def setup_logging(self) -> Self:
        """Finalize the settings."""
        from mcpgate.utilities.logging import configure_logging

        configure_logging(
            self.log_level, enable_rich_tracebacks=self.enable_rich_tracebacks
        )

        return self

    # HTTP settings
    host: str = "127.0.0.1"
    port: int = 3000
    mcp_path: str = "/mcp"
    json_response: bool = False

    protocol_version: Annotated[
        str,
        Field(
            description=inspect.cleandoc(
                """
                The MCP protocol version this proxy accepts in the
                `MCP-Protocol-Version` header. Requests without the header are
                accepted; requests carrying any other value are rejected.
                """
            )
        ),
    ] = "2025-06-18"

    allowed_origins: Annotated[
        list[str],
        NoDecode,
        Field(
            description=inspect.cleandoc(
                """
                Browser origins allowed to reach the MCP endpoint outside of
                development mode. The origin of `auth_resource_uri` is always
                allowed. Accepts a comma-separated list.
                """
            )
        ),
    ] = []

    # Auth settings
    auth_enabled: bool = True
    auth_strategy: AuthStrategy = "oauth"
    auth_require_rs: Annotated[
        bool,
        Field(
            description=inspect.cleandoc(
                """
                If True, bearer tokens must be resource-server tokens issued by this
                proxy. Unknown tokens are challenged unless
                `auth_allow_direct_bearer` is also set.
                """
            )
        ),
    ] = True
    auth_allow_direct_bearer: Annotated[
        bool,
        Field(
            description=inspect.cleandoc(
                """
                If True, bearer tokens that do not resolve to a stored provider
                credential are passed through to the MCP server unchanged.
                """
            )
        ),
    ] = False
    auth_resource_uri: Annotated[
        str | None,
        Field(
            description=inspect.cleandoc(
                """
                The canonical public URI of the MCP resource, e.g.
                `https://mcp.example.com/mcp`. When set it is advertised instead of
                the origin the request arrived on.
                """
            )
        ),
    ] = None
    auth_discovery_url: Annotated[
        str | None,
        Field(
            description="Overrides the authorization server metadata URL advertised in protected resource metadata.",
        ),
    ] = None
    discovery_topology: Annotated[
        DiscoveryTopology,
        Field(
            description=inspect.cleandoc(
                """
                Where the authorization server lives relative to the resource.
                `same_origin` serves both from one origin; `adjacent_port` serves
                the authorization server on the resource port + 1.
                """
            )
        ),
    ] = "adjacent_port"

    # Upstream provider settings
    oauth_scopes: str = ""
    oauth_authorization_url: str | None = None
    oauth_token_url: str | None = None
    oauth_revocation_url: str | None = None
    provider_client_id: str = ""
    provider_client_secret: SecretStr = SecretStr("")
    oauth_redirect_uri: Annotated[
        str | None,
        Field(
            description=inspect.cleandoc(
                """
                The proxy callback URL registered with the upstream provider.
                Defaults to `<authorization server base>/oauth/callback`.
                """
            )
        ),
    ] = None
    oauth_redirect_allowlist: Annotated[
        list[str] | None,
        NoDecode,
        Field(
            description=inspect.cleandoc(
                """
                Redirect URI patterns MCP clients may use, with `*` wildcards
                (e.g. `http://localhost:*`). If None, only loopback redirect URIs
                are allowed. Accepts a comma-separated list.
                """
            )
        ),
    ] = None
    oauth_redirect_allow_all: bool = False
    oauth_extra_auth_params: dict[str, str] = {}
    upstream_pkce: bool = True
    upstream_timeout_seconds: float = 30.0

    # Lifetimes
    access_token_ttl_seconds: int = 60 * 60
    auth_code_ttl_seconds: int = 5 * 60
    transaction_ttl_seconds: int = 10 * 60

    # Auth context registry bounds
    context_ttl_seconds: float = 5 * 60
    context_max_entries: int = 10_000

    @field_validator("allowed_origins", "oauth_redirect_allowlist", mode="before")
    @classmethod
    def _split_comma_separated(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("mcp_path")
    @classmethod
    def _normalize_mcp_path(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def scopes(self) -> list[str]:
        return [scope for scope in self.oauth_scopes.split() if scope]

    @property
    def resource_origin(self) -> str | None:
        """The origin of `auth_resource_uri`, if configured."""
        if not self.auth_resource_uri:
            return None
        parts = urlsplit(self.auth_resource_uri)
        return f"{parts.scheme}://{parts.netloc}"


settings = Settings()
