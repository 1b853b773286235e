"""OAuth proxy in front of an upstream OAuth provider.

MCP clients run a standard authorization-code + PKCE flow against this proxy. The
proxy runs its own flow against the upstream provider, keeps the provider's tokens,
and hands the client opaque resource-server tokens instead. The security gate later
resolves those resource tokens back to the provider credential.

Flow
----
1. ``GET /authorize``: validate the client's PKCE challenge and redirect URI, store a
   transaction, redirect to the provider with the proxy's fixed callback URL and the
   transaction id as ``state``.
2. ``GET /oauth/callback``: exchange the provider's code server-side, store the
   provider credential under a new one-time client code bound to the client's PKCE
   challenge, redirect to the client's redirect URI with that code and the client's
   original ``state``.
3. ``POST /token``: ``authorization_code`` verifies the client's PKCE verifier and
   issues resource tokens; ``refresh_token`` rotates the resource tokens, refreshing
   upstream when a provider refresh token exists.
4. ``POST /revoke``: drop the resource token pair, and revoke upstream if configured.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Awaitable, Callable
from typing import Any, Final
from urllib.parse import urlencode

import httpx
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from mcpgate.exceptions import OAuthError
from mcpgate.server.auth.discovery import DiscoveryStrategy, get_discovery_strategy
from mcpgate.server.auth.parsers import (
    AuthorizationCodeGrant,
    RefreshTokenGrant,
    build_grant_request,
    parse_authorize_input,
    parse_callback_input,
    parse_token_input,
)
from mcpgate.server.auth.store import (
    AuthorizationCodeRecord,
    CredentialStore,
    IssuedTokens,
    OAuthTransaction,
    ProviderCredential,
)
from mcpgate.settings import Settings
from mcpgate.utilities.logging import get_logger, redact

logger = get_logger(__name__)

DEFAULT_CALLBACK_PATH: Final[str] = "/oauth/callback"

Endpoint = Callable[[Request], Awaitable[Response]]


def _credential_from_token_response(
    token: dict[str, Any],
    *,
    fallback_scopes: tuple[str, ...] | None = None,
    fallback_refresh_token: str | None = None,
) -> ProviderCredential:
    expires_at = token.get("expires_at")
    if expires_at is None and token.get("expires_in") is not None:
        expires_at = int(time.time() + int(token["expires_in"]))
    scope = token.get("scope")
    if isinstance(scope, str):
        scopes: tuple[str, ...] | None = tuple(scope.split())
    elif isinstance(scope, list):
        scopes = tuple(scope)
    else:
        scopes = fallback_scopes
    return ProviderCredential(
        access_token=token["access_token"],
        refresh_token=token.get("refresh_token") or fallback_refresh_token,
        expires_at=int(expires_at) if expires_at is not None else None,
        scopes=scopes,
    )


class OAuthProxy:
    """Authorization server that proxies the OAuth flow to an upstream provider.

    Args:
        settings: Proxy configuration, including the upstream endpoints and client
            credentials.
        store: Where transactions, client codes and issued tokens are kept.
        strategy: Resolves the proxy's own public base URL. Defaults to the
            strategy for `settings.discovery_topology`.
        callback_path: Path of the upstream callback route.
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        strategy: DiscoveryStrategy | None = None,
        callback_path: str = DEFAULT_CALLBACK_PATH,
    ):
        self.settings = settings
        self.store = store
        self.strategy = strategy or get_discovery_strategy(
            settings.discovery_topology
        )
        self.callback_path = (
            callback_path if callback_path.startswith("/") else f"/{callback_path}"
        )

        logger.debug(
            "Initialized OAuth proxy for upstream %s",
            settings.oauth_authorization_url,
        )

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------

    def get_routes(self) -> list[Route]:
        return [
            Route("/authorize", endpoint=self._wrap(self.authorize), methods=["GET"]),
            Route(
                self.callback_path,
                endpoint=self._wrap(self.callback),
                methods=["GET"],
            ),
            Route("/token", endpoint=self._wrap(self.token), methods=["POST"]),
            Route("/revoke", endpoint=self._wrap(self.revoke), methods=["POST"]),
        ]

    def _wrap(self, handler: Endpoint) -> Endpoint:
        async def endpoint(request: Request) -> Response:
            try:
                return await handler(request)
            except OAuthError as e:
                logger.info(
                    "OAuth request to %s failed: %s", request.url.path, e.error
                )
                return e.to_response()
            except Exception as e:
                logger.error(
                    "Error in OAuth handler %s: %s", request.url.path, e, exc_info=True
                )
                return OAuthError(
                    "server_error", "Internal server error", status_code=500
                ).to_response()

        return endpoint

    def callback_url(self, request: Request) -> str:
        """The callback URL registered with the upstream provider."""
        if self.settings.oauth_redirect_uri:
            return self.settings.oauth_redirect_uri
        base = self.strategy.resolve_auth_base_url(str(request.url), self.settings)
        return f"{base}{self.callback_path}"

    def _require_upstream(self) -> tuple[str, str]:
        authorization_url = self.settings.oauth_authorization_url
        token_url = self.settings.oauth_token_url
        if not authorization_url or not token_url:
            raise OAuthError(
                "server_error",
                "Upstream OAuth provider is not configured",
                status_code=500,
            )
        return authorization_url, token_url

    # -------------------------------------------------------------------------
    # Authorization (redirect to upstream)
    # -------------------------------------------------------------------------

    async def authorize(self, request: Request) -> Response:
        params = parse_authorize_input(
            request.query_params,
            request.headers.get(MCP_SESSION_ID_HEADER),
            allowed_redirect_uris=self.settings.oauth_redirect_allowlist,
            allow_any_redirect=self.settings.oauth_redirect_allow_all,
        )
        authorization_url, _ = self._require_upstream()

        txn_id = secrets.token_urlsafe(32)
        scopes = params.scopes or self.settings.scopes
        upstream_redirect_uri = self.callback_url(request)

        query_params: dict[str, Any] = {
            "response_type": "code",
            "client_id": self.settings.provider_client_id,
            "redirect_uri": upstream_redirect_uri,
            "state": txn_id,
        }
        if scopes:
            query_params["scope"] = " ".join(scopes)

        upstream_code_verifier = None
        if self.settings.upstream_pkce:
            upstream_code_verifier = secrets.token_urlsafe(48)
            query_params["code_challenge"] = create_s256_code_challenge(
                upstream_code_verifier
            )
            query_params["code_challenge_method"] = "S256"

        for key, value in self.settings.oauth_extra_auth_params.items():
            query_params.setdefault(key, value)

        await self.store.save_transaction(
            txn_id,
            OAuthTransaction(
                client_redirect_uri=params.redirect_uri,
                client_state=params.state,
                code_challenge=params.code_challenge,
                code_challenge_method=params.code_challenge_method,
                scopes=tuple(scopes),
                session_id=params.session_id,
                upstream_redirect_uri=upstream_redirect_uri,
                upstream_code_verifier=upstream_code_verifier,
                expires_at=time.time() + self.settings.transaction_ttl_seconds,
            ),
        )

        separator = "&" if "?" in authorization_url else "?"
        upstream_url = f"{authorization_url}{separator}{urlencode(query_params)}"

        logger.debug(
            "Starting OAuth transaction %s (session %s), redirecting to provider",
            redact(txn_id),
            params.session_id,
        )
        return RedirectResponse(url=upstream_url, status_code=302)

    # -------------------------------------------------------------------------
    # Upstream callback
    # -------------------------------------------------------------------------

    async def callback(self, request: Request) -> Response:
        params = parse_callback_input(request.query_params)
        if not params.state:
            raise OAuthError("invalid_request", "state is required")

        txn = await self.store.pop_transaction(params.state)
        if txn is None:
            raise OAuthError("invalid_request", "Unknown or expired state")

        if params.denied:
            logger.warning(
                "Provider returned no authorization code: %s - %s",
                params.error,
                params.error_description,
            )
            return self._redirect_to_client(
                txn,
                error=params.error or "access_denied",
                error_description=params.error_description,
            )

        try:
            token = await self._exchange_upstream_code(
                params.code or "", txn.upstream_redirect_uri, txn.upstream_code_verifier
            )
        except Exception as e:
            logger.error("Provider token exchange failed: %s", e)
            return self._redirect_to_client(
                txn,
                error="server_error",
                error_description="Token exchange with provider failed",
            )

        credential = _credential_from_token_response(
            token, fallback_scopes=txn.scopes or None
        )

        client_code = secrets.token_urlsafe(32)
        await self.store.save_code(
            client_code,
            AuthorizationCodeRecord(
                redirect_uri=txn.client_redirect_uri,
                code_challenge=txn.code_challenge,
                code_challenge_method=txn.code_challenge_method,
                scopes=txn.scopes,
                session_id=txn.session_id,
                credential=credential,
                expires_at=time.time() + self.settings.auth_code_ttl_seconds,
            ),
        )

        logger.debug("Forwarding provider callback to client redirect URI")
        return self._redirect_to_client(txn, code=client_code)

    def _redirect_to_client(
        self, txn: OAuthTransaction, **params: str | None
    ) -> RedirectResponse:
        query = {key: value for key, value in params.items() if value}
        if txn.client_state:
            query["state"] = txn.client_state
        separator = "&" if "?" in txn.client_redirect_uri else "?"
        return RedirectResponse(
            url=f"{txn.client_redirect_uri}{separator}{urlencode(query)}",
            status_code=302,
        )

    async def _exchange_upstream_code(
        self, code: str, redirect_uri: str, code_verifier: str | None
    ) -> dict[str, Any]:
        _, token_url = self._require_upstream()
        async with self._oauth_client() as client:
            token: dict[str, Any] = await client.fetch_token(  # type: ignore[misc]
                url=token_url,
                grant_type="authorization_code",
                code=code,
                redirect_uri=redirect_uri,
                code_verifier=code_verifier,
            )
        return dict(token)

    # -------------------------------------------------------------------------
    # Token endpoint
    # -------------------------------------------------------------------------

    async def token(self, request: Request) -> Response:
        form = await parse_token_input(request)
        grant = build_grant_request(form)

        if isinstance(grant, AuthorizationCodeGrant):
            tokens, credential = await self._exchange_authorization_code(grant)
        else:
            tokens, credential = await self._exchange_refresh_token(grant)

        await self.store.save_tokens(tokens, credential)

        content: dict[str, Any] = {
            "access_token": tokens.access_token,
            "token_type": "Bearer",
            "expires_in": max(0, tokens.expires_at - int(time.time())),
            "refresh_token": tokens.refresh_token,
        }
        if tokens.scopes:
            content["scope"] = " ".join(tokens.scopes)
        return JSONResponse(
            content=content,
            headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
        )

    async def _exchange_authorization_code(
        self, grant: AuthorizationCodeGrant
    ) -> tuple[IssuedTokens, ProviderCredential]:
        record = await self.store.pop_code(grant.code)
        if record is None:
            raise OAuthError("invalid_grant", "Authorization code not found")

        expected = record.code_challenge
        actual = create_s256_code_challenge(grant.code_verifier)
        if not secrets.compare_digest(expected, actual):
            raise OAuthError("invalid_grant", "PKCE verification failed")

        if grant.redirect_uri and grant.redirect_uri != record.redirect_uri:
            raise OAuthError("invalid_grant", "redirect_uri does not match")

        tokens = self._issue_tokens(record.scopes)
        logger.debug(
            "Issued resource token %s for session %s",
            redact(tokens.access_token),
            record.session_id,
        )
        return tokens, record.credential

    async def _exchange_refresh_token(
        self, grant: RefreshTokenGrant
    ) -> tuple[IssuedTokens, ProviderCredential]:
        credential = await self.store.get_by_refresh_token(grant.refresh_token)
        if credential is None:
            raise OAuthError("invalid_grant", "Refresh token not found")

        if credential.refresh_token:
            try:
                token = await self._refresh_upstream(
                    credential.refresh_token, grant.scope
                )
            except OAuthError:
                raise
            except Exception as e:
                logger.error("Provider refresh token exchange failed: %s", e)
                raise OAuthError(
                    "invalid_grant", "Upstream refresh token exchange failed"
                ) from e
            credential = _credential_from_token_response(
                token,
                fallback_scopes=credential.scopes,
                fallback_refresh_token=credential.refresh_token,
            )

        # rotate: the presented refresh token is single use
        await self.store.revoke(grant.refresh_token)
        tokens = self._issue_tokens(credential.scopes or ())
        logger.debug("Rotated resource tokens, new token %s", redact(tokens.access_token))
        return tokens, credential

    async def _refresh_upstream(
        self, refresh_token: str, scope: str | None
    ) -> dict[str, Any]:
        _, token_url = self._require_upstream()
        async with self._oauth_client() as client:
            token: dict[str, Any] = await client.refresh_token(  # type: ignore[misc]
                url=token_url,
                refresh_token=refresh_token,
                scope=scope,
            )
        return dict(token)

    def _issue_tokens(self, scopes: tuple[str, ...]) -> IssuedTokens:
        return IssuedTokens(
            access_token=secrets.token_urlsafe(32),
            refresh_token=secrets.token_urlsafe(32),
            expires_at=int(time.time() + self.settings.access_token_ttl_seconds),
            scopes=scopes,
        )

    def _oauth_client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.settings.provider_client_id,
            client_secret=self.settings.provider_client_secret.get_secret_value(),
            timeout=self.settings.upstream_timeout_seconds,
        )

    # -------------------------------------------------------------------------
    # Revocation
    # -------------------------------------------------------------------------

    async def revoke(self, request: Request) -> Response:
        form = await parse_token_input(request)
        token = form.get("token")
        if not token:
            raise OAuthError("invalid_request", "token is required")

        credential = await self.store.get_by_resource_token(
            token
        ) or await self.store.get_by_refresh_token(token)
        revoked = await self.store.revoke(token)
        logger.debug("Revoked resource token %s: %s", redact(token), revoked)

        revocation_url = self.settings.oauth_revocation_url
        if credential is not None and revocation_url:
            await self._revoke_upstream(revocation_url, credential)

        # RFC 7009: unknown tokens are not an error
        return Response(status_code=200)

    async def _revoke_upstream(
        self, revocation_url: str, credential: ProviderCredential
    ) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.upstream_timeout_seconds
            ) as http_client:
                await http_client.post(
                    revocation_url,
                    data={"token": credential.refresh_token or credential.access_token},
                    auth=(
                        self.settings.provider_client_id,
                        self.settings.provider_client_secret.get_secret_value(),
                    ),
                )
            logger.debug("Revoked provider token with upstream server")
        except Exception as e:
            logger.warning("Failed to revoke token with upstream server: %s", e)
