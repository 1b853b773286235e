"""Redirect URI validation for the OAuth proxy."""

from fnmatch import fnmatchcase
from urllib.parse import urlsplit

from pydantic import AnyUrl

_STAR = "x--star--x"

DEFAULT_LOCALHOST_PATTERNS = [
    "http://localhost:*",
    "http://127.0.0.1:*",
    "http://[::1]:*",
]


def _split(uri: str) -> tuple[str, str, str, str] | None:
    try:
        parts = urlsplit(uri)
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    if parts.username or parts.password:
        # userinfo can be used to smuggle a different host past a pattern
        return None
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    return parts.scheme, host, "" if port is None else str(port), parts.path


def matches_allowed_pattern(uri: str, pattern: str) -> bool:
    """Check if a URI matches a pattern with `*` wildcards.

    Scheme, host, port and path are compared separately, so a wildcard can never
    match across component boundaries.
    """
    if "*" not in pattern:
        return uri == pattern

    # urlsplit rejects a non-numeric port, so swap the port wildcard out first
    port_wildcard = False
    head, sep, tail = pattern.partition("://")
    authority, slash, path = tail.partition("/")
    if authority.endswith(":*"):
        authority = authority[:-2]
        port_wildcard = True
    normalized = f"{head}{sep}{authority.replace('*', _STAR)}{slash}{path}"

    pattern_parts = _split(normalized)
    uri_parts = _split(uri)
    if pattern_parts is None or uri_parts is None:
        return False

    p_scheme, p_host, p_port, p_path = pattern_parts
    u_scheme, u_host, u_port, u_path = uri_parts
    p_host = p_host.replace(_STAR, "*")

    if p_scheme != u_scheme:
        return False
    if "*" in p_host:
        if not fnmatchcase(u_host, p_host):
            return False
    elif u_host != p_host:
        return False
    if not port_wildcard and p_port != u_port:
        return False
    if p_path in ("", "/") and not path:
        # a pattern without a path accepts any path
        return True
    return fnmatchcase(u_path, p_path)


def validate_redirect_uri(
    redirect_uri: str | AnyUrl | None,
    allowed_patterns: list[str] | None,
    allow_all: bool = False,
) -> bool:
    """Validate a client redirect URI.

    Args:
        redirect_uri: The URI to validate. None is accepted.
        allowed_patterns: Patterns with `*` wildcards. If None, only loopback
            redirect URIs are accepted.
        allow_all: Accept any redirect URI.
    """
    if redirect_uri is None:
        return True
    if allow_all:
        return True

    uri = str(redirect_uri)
    patterns = DEFAULT_LOCALHOST_PATTERNS if allowed_patterns is None else allowed_patterns
    return any(matches_allowed_pattern(uri, pattern) for pattern in patterns)
