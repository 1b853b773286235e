"""Per-request security gate for the MCP endpoint.

Every request to the MCP endpoint passes through `SecurityGate.authenticate` before
any session lookup. The gate returns one of three results instead of mutating the
request:

- `Pass`: continue, optionally with an `AuthContext` for downstream handlers.
- `Challenge`: answer 401 with a `WWW-Authenticate` header pointing at the protected
  resource metadata and a session id the client can retry with.
- `Reject`: the request failed transport validation (origin or protocol version).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from urllib.parse import quote
from uuid import uuid4

from mcp.server.streamable_http import (
    MCP_PROTOCOL_VERSION_HEADER,
    MCP_SESSION_ID_HEADER,
)
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from mcpgate.exceptions import (
    CredentialStoreError,
    OriginNotAllowedError,
    RequestValidationError,
    UnsupportedProtocolVersionError,
)
from mcpgate.server.auth.discovery import PROTECTED_RESOURCE_METADATA_PATH, origin_of
from mcpgate.server.auth.store import CredentialStore, ProviderCredential
from mcpgate.server.context import AuthContext
from mcpgate.server.responses import (
    FORBIDDEN,
    UNAUTHORIZED,
    internal_error,
    jsonrpc_error,
    jsonrpc_error_body,
)
from mcpgate.settings import Settings
from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)


def validate_origin(
    headers: Mapping[str, str],
    allowed_origins: list[str],
    development: bool = False,
) -> None:
    """Check the Origin header against the allow-list.

    Requests without an Origin header come from non-browser clients and pass.

    Raises:
        OriginNotAllowedError: if the origin is not allowed.
    """
    origin = headers.get("origin")
    if not origin or development:
        return
    if origin.rstrip("/") in {o.rstrip("/") for o in allowed_origins}:
        return
    raise OriginNotAllowedError(f"Origin not allowed: {origin}")


def validate_protocol_version(headers: Mapping[str, str], supported: str) -> None:
    """Check the MCP-Protocol-Version header, if present.

    Raises:
        UnsupportedProtocolVersionError: if the version differs from `supported`.
    """
    version = headers.get(MCP_PROTOCOL_VERSION_HEADER)
    if version and version != supported:
        raise UnsupportedProtocolVersionError(
            f"Unsupported protocol version: {version} (supported: {supported})"
        )


@dataclass(frozen=True)
class Challenge:
    session_id: str
    www_authenticate: str
    message: str = "Unauthorized"
    status_code: int = 401

    def to_response(self) -> Response:
        return JSONResponse(
            content=jsonrpc_error_body(UNAUTHORIZED, self.message),
            status_code=self.status_code,
            headers={
                "WWW-Authenticate": self.www_authenticate,
                MCP_SESSION_ID_HEADER: self.session_id,
            },
        )


def build_unauthorized_challenge(origin: str, session_id: str) -> Challenge:
    """Build a 401 challenge bound to `session_id`."""
    sid = quote(session_id, safe="")
    resource_metadata = (
        f"{origin.rstrip('/')}{PROTECTED_RESOURCE_METADATA_PATH}?sid={sid}"
    )
    return Challenge(
        session_id=session_id,
        www_authenticate=(
            f'Bearer realm="MCP", resource_metadata="{resource_metadata}"'
        ),
    )


@dataclass(frozen=True)
class Pass:
    auth_context: AuthContext | None = None

    def to_response(self) -> Response | None:
        return None


@dataclass(frozen=True)
class Reject:
    error: RequestValidationError
    headers: dict[str, str] = field(default_factory=dict)

    def to_response(self) -> Response:
        return jsonrpc_error(
            FORBIDDEN, str(self.error), self.error.status_code, headers=self.headers
        )


GateResult = Pass | Challenge | Reject


def _bearer_token(authorization: str) -> str | None:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class SecurityGate:
    """Validates, challenges and resolves credentials for MCP requests."""

    def __init__(self, settings: Settings, store: CredentialStore):
        self.settings = settings
        self.store = store

    async def authenticate(self, request: Request) -> GateResult | Response:
        """Run the gate for `request`.

        Returns a `GateResult`, or a generic internal-error response if anything
        unexpected goes wrong.
        """
        try:
            return await self._authenticate(request)
        except Exception as e:
            logger.error("Security check failed: %s", e, exc_info=True)
            return internal_error()

    async def _authenticate(self, request: Request) -> GateResult:
        settings = self.settings
        headers = request.headers

        try:
            allowed = list(settings.allowed_origins)
            if settings.resource_origin:
                allowed.append(settings.resource_origin)
            validate_origin(headers, allowed, development=settings.is_development)
            validate_protocol_version(headers, settings.protocol_version)
        except RequestValidationError as e:
            logger.warning("Rejected MCP request: %s", e)
            return Reject(error=e)

        if not settings.auth_enabled:
            return Pass()

        authorization = headers.get("authorization")
        token = _bearer_token(authorization) if authorization else None
        if token is None:
            return self._challenge(request)

        credential = await self._lookup(token)
        if credential is not None:
            return Pass(
                auth_context=AuthContext(
                    strategy=settings.auth_strategy,
                    inbound_headers={"authorization": authorization or ""},
                    resolved_headers={
                        "authorization": f"Bearer {credential.access_token}"
                    },
                    provider_token=credential.access_token,
                    provider_credential=credential,
                    resource_token=token,
                )
            )

        if settings.auth_require_rs and not settings.auth_allow_direct_bearer:
            logger.debug("Resource token not found, challenging")
            return self._challenge(request)

        # direct provider bearer: forwarded as-is
        return Pass(
            auth_context=AuthContext(
                strategy=settings.auth_strategy,
                inbound_headers={"authorization": authorization or ""},
                resolved_headers={"authorization": authorization or ""},
            )
        )

    async def _lookup(self, token: str) -> ProviderCredential | None:
        try:
            return await self.store.get_by_resource_token(token)
        except CredentialStoreError as e:
            logger.warning(
                "Credential store unavailable, treating token as unknown: %s", e
            )
            return None
        except Exception:
            logger.exception("Token lookup failed, treating token as unknown")
            return None

    def _challenge(self, request: Request) -> Challenge:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if not session_id:
            session_id = str(uuid4())
            logger.debug("Generated session ID %s for challenge", session_id)
        origin = self.settings.resource_origin or origin_of(str(request.url))
        return build_unauthorized_challenge(origin, session_id)
