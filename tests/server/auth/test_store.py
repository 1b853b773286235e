import time

import pytest

from mcpgate.server.auth.store import (
    AuthorizationCodeRecord,
    InMemoryCredentialStore,
    IssuedTokens,
    OAuthTransaction,
    ProviderCredential,
    token_digest,
)


@pytest.fixture
def credential() -> ProviderCredential:
    return ProviderCredential(
        access_token="provider-access",
        refresh_token="provider-refresh",
        expires_at=int(time.time()) + 3600,
        scopes=("read",),
    )


def issued(access: str = "rs-access", refresh: str = "rs-refresh", ttl: int = 3600):
    return IssuedTokens(
        access_token=access,
        refresh_token=refresh,
        expires_at=int(time.time()) + ttl,
        scopes=("read",),
    )


class TestTokens:
    async def test_lookup_by_resource_token(self, store, credential):
        await store.save_tokens(issued(), credential)

        assert await store.get_by_resource_token("rs-access") == credential
        assert await store.get_by_refresh_token("rs-refresh") == credential

    async def test_unknown_token(self, store):
        assert await store.get_by_resource_token("nope") is None
        assert await store.get_by_refresh_token("nope") is None

    async def test_provider_token_is_not_a_resource_token(self, store, credential):
        await store.save_tokens(issued(), credential)
        assert await store.get_by_resource_token("provider-access") is None

    async def test_resource_tokens_are_not_stored_in_plaintext(
        self, store: InMemoryCredentialStore, credential
    ):
        await store.save_tokens(issued(), credential)
        assert "rs-access" not in store._by_access
        assert token_digest("rs-access") in store._by_access

    async def test_expired_resource_token(self, store, credential):
        await store.save_tokens(issued(ttl=-1), credential)
        assert await store.get_by_resource_token("rs-access") is None

    async def test_revoke_by_either_token(self, store, credential):
        await store.save_tokens(issued(), credential)
        assert await store.revoke("rs-refresh") is True
        assert await store.get_by_resource_token("rs-access") is None
        assert await store.get_by_refresh_token("rs-refresh") is None
        assert await store.revoke("rs-access") is False


class TestTransactionsAndCodes:
    def transaction(self, expires_in: float = 600) -> OAuthTransaction:
        return OAuthTransaction(
            client_redirect_uri="http://localhost:5173/callback",
            code_challenge="challenge",
            upstream_redirect_uri="http://localhost:3001/oauth/callback",
            expires_at=time.time() + expires_in,
        )

    async def test_transaction_is_single_use(self, store):
        txn = self.transaction()
        await store.save_transaction("txn", txn)
        assert await store.pop_transaction("txn") == txn
        assert await store.pop_transaction("txn") is None

    async def test_expired_transaction(self, store):
        await store.save_transaction("txn", self.transaction(expires_in=-1))
        assert await store.pop_transaction("txn") is None

    async def test_code_is_single_use(self, store, credential):
        record = AuthorizationCodeRecord(
            redirect_uri="http://localhost:5173/callback",
            code_challenge="challenge",
            credential=credential,
            expires_at=time.time() + 60,
        )
        await store.save_code("code", record)
        assert await store.pop_code("code") == record
        assert await store.pop_code("code") is None

    async def test_expired_code(self, store, credential):
        record = AuthorizationCodeRecord(
            redirect_uri="http://localhost:5173/callback",
            code_challenge="challenge",
            credential=credential,
            expires_at=time.time() - 1,
        )
        await store.save_code("code", record)
        assert await store.pop_code("code") is None

    async def test_abandoned_transactions_are_purged_on_save(
        self, store: InMemoryCredentialStore, monkeypatch
    ):
        await store.save_transaction("abandoned", self.transaction(expires_in=60))
        now = time.time()
        monkeypatch.setattr(time, "time", lambda: now + 120)

        await store.save_transaction("fresh", self.transaction())

        assert list(store._transactions) == ["fresh"]

    async def test_abandoned_codes_are_purged_on_save(
        self, store: InMemoryCredentialStore, credential, monkeypatch
    ):
        def record() -> AuthorizationCodeRecord:
            return AuthorizationCodeRecord(
                redirect_uri="http://localhost:5173/callback",
                code_challenge="challenge",
                credential=credential,
                expires_at=time.time() + 60,
            )

        await store.save_code("abandoned", record())
        now = time.time()
        monkeypatch.setattr(time, "time", lambda: now + 120)

        await store.save_code("fresh", record())

        assert list(store._codes) == ["fresh"]

    async def test_pending_transactions_are_capped(self):
        store = InMemoryCredentialStore(max_pending=3)
        for i in range(5):
            await store.save_transaction(f"txn-{i}", self.transaction())

        assert list(store._transactions) == ["txn-2", "txn-3", "txn-4"]
        assert await store.pop_transaction("txn-0") is None


def test_credential_expiry():
    assert ProviderCredential(access_token="a", expires_at=1).is_expired
    assert not ProviderCredential(access_token="a").is_expired
