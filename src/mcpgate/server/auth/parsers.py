"""Parsing and validation of OAuth proxy requests.

Everything here runs before the upstream provider is contacted: a request that
fails to parse is answered with a structured OAuth error and goes no further.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, ConfigDict
from starlette.requests import Request

from mcpgate.exceptions import OAuthError
from mcpgate.server.auth.redirect_validation import validate_redirect_uri

SUPPORTED_CODE_CHALLENGE_METHODS = ("S256",)


class AuthorizeRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    code_challenge: str
    code_challenge_method: str
    redirect_uri: str
    requested_scope: str | None = None
    state: str | None = None
    session_id: str | None = None

    @property
    def scopes(self) -> list[str]:
        return self.requested_scope.split() if self.requested_scope else []


class CallbackParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    @property
    def denied(self) -> bool:
        """The provider redirected back without a code."""
        return not self.code


class AuthorizationCodeGrant(BaseModel):
    model_config = ConfigDict(frozen=True)

    grant: Literal["authorization_code"] = "authorization_code"
    code: str
    code_verifier: str
    redirect_uri: str | None = None


class RefreshTokenGrant(BaseModel):
    model_config = ConfigDict(frozen=True)

    grant: Literal["refresh_token"] = "refresh_token"
    refresh_token: str
    scope: str | None = None


GrantRequest = AuthorizationCodeGrant | RefreshTokenGrant


def parse_authorize_input(
    query: Mapping[str, str],
    session_id: str | None = None,
    *,
    allowed_redirect_uris: list[str] | None = None,
    allow_any_redirect: bool = False,
) -> AuthorizeRequest:
    """Parse and validate an authorization request.

    PKCE is mandatory. The redirect URI must match the allow-list unless
    `allow_any_redirect` is set. `state` and `scope` are passed through untouched.

    Raises:
        OAuthError: `invalid_request` for any missing or disallowed field.
    """
    code_challenge = query.get("code_challenge") or ""
    code_challenge_method = query.get("code_challenge_method") or ""
    redirect_uri = query.get("redirect_uri") or ""

    if not code_challenge:
        raise OAuthError("invalid_request", "code_challenge is required")
    if not code_challenge_method:
        raise OAuthError("invalid_request", "code_challenge_method is required")
    if code_challenge_method not in SUPPORTED_CODE_CHALLENGE_METHODS:
        raise OAuthError(
            "invalid_request",
            f"Unsupported code_challenge_method '{code_challenge_method}'",
        )
    if not redirect_uri:
        raise OAuthError("invalid_request", "redirect_uri is required")
    if not validate_redirect_uri(
        redirect_uri, allowed_redirect_uris, allow_all=allow_any_redirect
    ):
        raise OAuthError("invalid_request", "redirect_uri is not allowed")

    return AuthorizeRequest(
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        redirect_uri=redirect_uri,
        requested_scope=query.get("scope") or None,
        state=query.get("state"),
        session_id=query.get("sid") or session_id or None,
    )


def parse_callback_input(query: Mapping[str, str]) -> CallbackParams:
    return CallbackParams(
        code=query.get("code") or None,
        state=query.get("state") or None,
        error=query.get("error") or None,
        error_description=query.get("error_description") or None,
    )


async def parse_token_input(request: Request) -> dict[str, str]:
    """Read a token request body, form-encoded or JSON."""
    content_type = request.headers.get("content-type", "")

    if "application/x-www-form-urlencoded" in content_type:
        form = await request.form()
        return {key: str(value) for key, value in form.items()}

    try:
        data = json.loads(await request.body() or b"{}")
    except ValueError:
        return {}
    if not isinstance(data, dict):
        return {}
    return {
        str(key): str(value)
        for key, value in data.items()
        if value is not None and not isinstance(value, (dict, list))
    }


def build_grant_request(form: Mapping[str, str]) -> GrantRequest:
    """Dispatch on grant_type and check the grant's required fields.

    Raises:
        OAuthError: `missing_refresh_token`, `missing_code_or_verifier` or
            `unsupported_grant_type`.
    """
    grant = form.get("grant_type")

    if grant == "refresh_token":
        refresh_token = form.get("refresh_token")
        if not refresh_token:
            raise OAuthError("missing_refresh_token", "refresh_token is required")
        return RefreshTokenGrant(
            refresh_token=refresh_token, scope=form.get("scope") or None
        )

    if grant == "authorization_code":
        code = form.get("code")
        code_verifier = form.get("code_verifier")
        if not code or not code_verifier:
            raise OAuthError(
                "missing_code_or_verifier", "code and code_verifier are required"
            )
        return AuthorizationCodeGrant(
            code=code,
            code_verifier=code_verifier,
            redirect_uri=form.get("redirect_uri") or None,
        )

    raise OAuthError(
        "unsupported_grant_type", f"Grant type '{grant}' not supported by proxy"
    )
