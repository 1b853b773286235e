import json

import pytest
from starlette.requests import Request

from mcpgate.exceptions import OAuthError
from mcpgate.server.auth.parsers import (
    AuthorizationCodeGrant,
    RefreshTokenGrant,
    build_grant_request,
    parse_authorize_input,
    parse_callback_input,
    parse_token_input,
)


def token_request(body: bytes, content_type: str) -> Request:
    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": "/token",
            "query_string": b"",
            "headers": [(b"content-type", content_type.encode())],
        },
        receive,
    )


VALID_AUTHORIZE = {
    "code_challenge": "challenge",
    "code_challenge_method": "S256",
    "redirect_uri": "http://localhost:5173/callback",
    "state": "client-state",
    "scope": "read write",
}


class TestParseAuthorizeInput:
    def test_valid_request(self):
        params = parse_authorize_input(VALID_AUTHORIZE, "session-1")
        assert params.code_challenge == "challenge"
        assert params.code_challenge_method == "S256"
        assert params.redirect_uri == "http://localhost:5173/callback"
        assert params.state == "client-state"
        assert params.scopes == ["read", "write"]
        assert params.session_id == "session-1"

    @pytest.mark.parametrize(
        "missing", ["code_challenge", "code_challenge_method", "redirect_uri"]
    )
    def test_missing_required_field(self, missing):
        query = {k: v for k, v in VALID_AUTHORIZE.items() if k != missing}
        with pytest.raises(OAuthError) as exc_info:
            parse_authorize_input(query)
        assert exc_info.value.error == "invalid_request"
        assert missing in (exc_info.value.error_description or "")

    def test_plain_pkce_is_rejected(self):
        with pytest.raises(OAuthError, match="Unsupported code_challenge_method"):
            parse_authorize_input({**VALID_AUTHORIZE, "code_challenge_method": "plain"})

    def test_disallowed_redirect(self):
        query = {**VALID_AUTHORIZE, "redirect_uri": "https://evil.example.com/cb"}
        with pytest.raises(OAuthError, match="redirect_uri is not allowed"):
            parse_authorize_input(query)

    def test_allow_any_redirect(self):
        query = {**VALID_AUTHORIZE, "redirect_uri": "https://app.example.com/cb"}
        params = parse_authorize_input(query, allow_any_redirect=True)
        assert params.redirect_uri == "https://app.example.com/cb"

    def test_custom_allowlist(self):
        query = {**VALID_AUTHORIZE, "redirect_uri": "https://app.example.com/cb"}
        params = parse_authorize_input(
            query, allowed_redirect_uris=["https://app.example.com/*"]
        )
        assert params.redirect_uri == "https://app.example.com/cb"

    def test_sid_query_param_wins(self):
        params = parse_authorize_input({**VALID_AUTHORIZE, "sid": "from-query"}, "hdr")
        assert params.session_id == "from-query"

    def test_optional_fields_absent(self):
        query = {
            k: v for k, v in VALID_AUTHORIZE.items() if k not in ("state", "scope")
        }
        params = parse_authorize_input(query)
        assert params.state is None
        assert params.requested_scope is None
        assert params.scopes == []
        assert params.session_id is None


class TestParseCallbackInput:
    def test_code_and_state(self):
        params = parse_callback_input({"code": "abc", "state": "txn"})
        assert params.code == "abc"
        assert params.state == "txn"
        assert not params.denied

    def test_provider_denial(self):
        params = parse_callback_input(
            {"state": "txn", "error": "access_denied", "error_description": "no"}
        )
        assert params.denied
        assert params.error == "access_denied"
        assert params.error_description == "no"


class TestParseTokenInput:
    async def test_form_body(self):
        request = token_request(
            b"grant_type=authorization_code&code=abc&code_verifier=xyz",
            "application/x-www-form-urlencoded",
        )
        assert await parse_token_input(request) == {
            "grant_type": "authorization_code",
            "code": "abc",
            "code_verifier": "xyz",
        }

    async def test_json_body(self):
        body = json.dumps(
            {"grant_type": "refresh_token", "refresh_token": "rt", "nested": {"a": 1}}
        ).encode()
        request = token_request(body, "application/json")
        assert await parse_token_input(request) == {
            "grant_type": "refresh_token",
            "refresh_token": "rt",
        }

    async def test_invalid_json_is_empty(self):
        request = token_request(b"{not json", "application/json")
        assert await parse_token_input(request) == {}


class TestBuildGrantRequest:
    def test_authorization_code(self):
        grant = build_grant_request(
            {"grant_type": "authorization_code", "code": "c", "code_verifier": "v"}
        )
        assert isinstance(grant, AuthorizationCodeGrant)
        assert grant.code == "c"
        assert grant.code_verifier == "v"

    @pytest.mark.parametrize(
        "form",
        [
            {"grant_type": "authorization_code", "code": "c"},
            {"grant_type": "authorization_code", "code_verifier": "v"},
            {"grant_type": "authorization_code", "code": "", "code_verifier": "v"},
        ],
    )
    def test_missing_code_or_verifier(self, form):
        with pytest.raises(OAuthError) as exc_info:
            build_grant_request(form)
        assert exc_info.value.error == "missing_code_or_verifier"

    def test_refresh_token(self):
        grant = build_grant_request({"grant_type": "refresh_token", "refresh_token": "r"})
        assert isinstance(grant, RefreshTokenGrant)
        assert grant.refresh_token == "r"

    @pytest.mark.parametrize("refresh_token", [None, ""])
    def test_missing_refresh_token(self, refresh_token):
        form = {"grant_type": "refresh_token"}
        if refresh_token is not None:
            form["refresh_token"] = refresh_token
        with pytest.raises(OAuthError) as exc_info:
            build_grant_request(form)
        assert exc_info.value.error == "missing_refresh_token"

    @pytest.mark.parametrize("grant_type", [None, "password", "client_credentials"])
    def test_unsupported_grant_type(self, grant_type):
        form = {} if grant_type is None else {"grant_type": grant_type}
        with pytest.raises(OAuthError) as exc_info:
            build_grant_request(form)
        assert exc_info.value.error == "unsupported_grant_type"
