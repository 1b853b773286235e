"""Credential storage for the OAuth proxy.

The proxy issues its own opaque resource-server tokens and keeps the upstream
provider's credentials behind them. The store maps one to the other, and also holds
the short-lived state of in-flight authorization flows.
"""

from __future__ import annotations

import hashlib
import time
from abc import ABC, abstractmethod

import anyio
from pydantic import BaseModel, ConfigDict

from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)


class ProviderCredential(BaseModel):
    """Upstream provider tokens."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None
    scopes: tuple[str, ...] | None = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and time.time() >= self.expires_at


class IssuedTokens(BaseModel):
    """Resource-server tokens handed to an MCP client."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    expires_at: int
    scopes: tuple[str, ...] = ()


class OAuthTransaction(BaseModel):
    """An authorization request waiting for the upstream callback."""

    model_config = ConfigDict(frozen=True)

    client_redirect_uri: str
    client_state: str | None = None
    code_challenge: str
    code_challenge_method: str = "S256"
    scopes: tuple[str, ...] = ()
    session_id: str | None = None
    upstream_redirect_uri: str
    upstream_code_verifier: str | None = None
    expires_at: float


class AuthorizationCodeRecord(BaseModel):
    """A one-time code issued to the client after the upstream exchange."""

    model_config = ConfigDict(frozen=True)

    redirect_uri: str
    code_challenge: str
    code_challenge_method: str = "S256"
    scopes: tuple[str, ...] = ()
    session_id: str | None = None
    credential: ProviderCredential
    expires_at: float


class CredentialStore(ABC):
    """Read/write contract used by the security gate and the OAuth proxy.

    Implementations backed by external storage raise `CredentialStoreError` when
    the backend is unavailable.
    """

    @abstractmethod
    async def get_by_resource_token(self, token: str) -> ProviderCredential | None:
        """Resolve a resource-server access token to its provider credential."""

    @abstractmethod
    async def get_by_refresh_token(self, token: str) -> ProviderCredential | None:
        """Resolve a resource-server refresh token to its provider credential."""

    @abstractmethod
    async def save_tokens(
        self, tokens: IssuedTokens, credential: ProviderCredential
    ) -> None: ...

    @abstractmethod
    async def revoke(self, token: str) -> bool:
        """Remove the token pair containing `token`. Returns True if found."""

    @abstractmethod
    async def save_transaction(self, txn_id: str, txn: OAuthTransaction) -> None: ...

    @abstractmethod
    async def pop_transaction(self, txn_id: str) -> OAuthTransaction | None: ...

    @abstractmethod
    async def save_code(self, code: str, record: AuthorizationCodeRecord) -> None: ...

    @abstractmethod
    async def pop_code(self, code: str) -> AuthorizationCodeRecord | None: ...


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _prune(
    pending: dict[str, OAuthTransaction] | dict[str, AuthorizationCodeRecord],
    max_entries: int,
    kind: str,
) -> None:
    """Drop expired entries, then the oldest ones beyond `max_entries`."""
    now = time.time()
    for key in [key for key, value in pending.items() if now > value.expires_at]:
        del pending[key]
    while len(pending) > max_entries:
        del pending[next(iter(pending))]
        logger.warning("Too many pending OAuth %ss, evicted the oldest", kind)


class _TokenEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_digest: str
    refresh_digest: str
    expires_at: int
    credential: ProviderCredential


class InMemoryCredentialStore(CredentialStore):
    """Process-local store. Resource tokens are only kept as SHA-256 digests.

    Expired transactions and codes are purged on every save, and each of the two
    maps holds at most `max_pending` entries (oldest evicted).
    Token entries outlive their access token because the refresh token stays
    usable; they are removed by rotation and revocation.
    """

    def __init__(self, max_pending: int = 10_000) -> None:
        self.max_pending = max_pending
        self._by_access: dict[str, _TokenEntry] = {}
        self._by_refresh: dict[str, _TokenEntry] = {}
        self._transactions: dict[str, OAuthTransaction] = {}
        self._codes: dict[str, AuthorizationCodeRecord] = {}
        self._lock = anyio.Lock()

    async def get_by_resource_token(self, token: str) -> ProviderCredential | None:
        entry = self._by_access.get(token_digest(token))
        if entry is None:
            return None
        if time.time() >= entry.expires_at:
            logger.debug("Resource token expired")
            return None
        return entry.credential

    async def get_by_refresh_token(self, token: str) -> ProviderCredential | None:
        entry = self._by_refresh.get(token_digest(token))
        return entry.credential if entry else None

    async def save_tokens(
        self, tokens: IssuedTokens, credential: ProviderCredential
    ) -> None:
        entry = _TokenEntry(
            access_digest=token_digest(tokens.access_token),
            refresh_digest=token_digest(tokens.refresh_token),
            expires_at=tokens.expires_at,
            credential=credential,
        )
        async with self._lock:
            self._by_access[entry.access_digest] = entry
            self._by_refresh[entry.refresh_digest] = entry

    async def revoke(self, token: str) -> bool:
        digest = token_digest(token)
        async with self._lock:
            entry = self._by_access.get(digest) or self._by_refresh.get(digest)
            if entry is None:
                return False
            self._by_access.pop(entry.access_digest, None)
            self._by_refresh.pop(entry.refresh_digest, None)
            return True

    async def save_transaction(self, txn_id: str, txn: OAuthTransaction) -> None:
        async with self._lock:
            self._transactions[txn_id] = txn
            _prune(self._transactions, self.max_pending, "transaction")

    async def pop_transaction(self, txn_id: str) -> OAuthTransaction | None:
        async with self._lock:
            txn = self._transactions.pop(txn_id, None)
        if txn is not None and time.time() > txn.expires_at:
            logger.debug("OAuth transaction expired: %s", txn_id)
            return None
        return txn

    async def save_code(self, code: str, record: AuthorizationCodeRecord) -> None:
        async with self._lock:
            self._codes[code] = record
            _prune(self._codes, self.max_pending, "authorization code")

    async def pop_code(self, code: str) -> AuthorizationCodeRecord | None:
        async with self._lock:
            record = self._codes.pop(code, None)
        if record is not None and time.time() > record.expires_at:
            logger.debug("Authorization code expired")
            return None
        return record
