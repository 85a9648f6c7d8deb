"""Unit tests for the in-memory OAuth repositories."""

import asyncio

import pytest

from thingscloud_mcp.stores import (
    AuthorizationCode,
    CredentialEntry,
    InMemoryAuthorizationCodeStore,
    InMemoryClientStore,
    InMemoryCredentialStore,
    InMemoryRefreshTokenStore,
    OAuthClient,
    RefreshToken,
    UnknownCodeError,
)


def fixed_clock() -> float:
    return 1000.0


def make_code(code: str = "code-1", expires_at: float = 2000.0) -> AuthorizationCode:
    return AuthorizationCode(
        code=code,
        client_id="client-1",
        redirect_uri="https://app/cb",
        tenant_id="user@example.com",
        tenant_secret="ciphertext",
        code_challenge="challenge",
        expires_at=expires_at,
    )


class TestClientStore:
    """Tests for InMemoryClientStore."""

    @pytest.mark.asyncio
    async def test_save_and_get(self) -> None:
        store = InMemoryClientStore()
        client = OAuthClient(
            client_id="client-1",
            client_name="Test",
            redirect_uris=["https://app/cb"],
            grant_types=["authorization_code"],
            response_types=["code"],
        )

        await store.save(client)

        assert await store.get("client-1") == client
        assert await store.get("missing") is None


class TestAuthorizationCodeStore:
    """Tests for InMemoryAuthorizationCodeStore.consume."""

    @pytest.mark.asyncio
    async def test_consume_marks_code_used(self) -> None:
        store = InMemoryAuthorizationCodeStore(clock=fixed_clock)
        await store.save(make_code())

        record = await store.consume("code-1", lambda r: None)

        assert record.used is True
        stored = await store.get("code-1")
        assert stored is not None and stored.used is True

    @pytest.mark.asyncio
    async def test_consume_unknown_code_raises(self) -> None:
        store = InMemoryAuthorizationCodeStore(clock=fixed_clock)

        with pytest.raises(UnknownCodeError):
            await store.consume("missing", lambda r: None)

    @pytest.mark.asyncio
    async def test_rejected_code_is_left_untouched(self) -> None:
        """Test that a validator failure does not mark the code used."""
        store = InMemoryAuthorizationCodeStore(clock=fixed_clock)
        await store.save(make_code())

        def reject(record: AuthorizationCode) -> None:
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await store.consume("code-1", reject)

        stored = await store.get("code-1")
        assert stored is not None and stored.used is False

    @pytest.mark.asyncio
    async def test_concurrent_consume_succeeds_once(self) -> None:
        """Test that only one of many concurrent redemptions wins."""
        store = InMemoryAuthorizationCodeStore(clock=fixed_clock)
        await store.save(make_code())

        def validate(record: AuthorizationCode) -> None:
            if record.used:
                raise RuntimeError("already used")

        results = await asyncio.gather(
            *(store.consume("code-1", validate) for _ in range(20)), return_exceptions=True
        )

        successes = [r for r in results if isinstance(r, AuthorizationCode)]
        failures = [r for r in results if isinstance(r, RuntimeError)]
        assert len(successes) == 1
        assert len(failures) == 19

    @pytest.mark.asyncio
    async def test_save_drops_expired_codes(self) -> None:
        now = [1000.0]
        store = InMemoryAuthorizationCodeStore(clock=lambda: now[0])
        await store.save(make_code("expired", expires_at=1500.0))
        await store.save(make_code("redeemed", expires_at=5000.0))
        await store.consume("redeemed", lambda r: None)

        now[0] = 2000.0
        await store.save(make_code("new", expires_at=5000.0))

        assert await store.get("expired") is None
        assert await store.get("new") is not None
        # Used codes are kept until they expire
        redeemed = await store.get("redeemed")
        assert redeemed is not None and redeemed.used is True

        now[0] = 6000.0
        await store.save(make_code("newer", expires_at=9000.0))

        assert await store.get("redeemed") is None
        assert await store.get("new") is None

    @pytest.mark.asyncio
    async def test_live_codes_survive_later_saves(self) -> None:
        store = InMemoryAuthorizationCodeStore(clock=fixed_clock)
        await store.save(make_code("first"))
        await store.save(make_code("second"))

        first = await store.get("first")
        assert first is not None and first.used is False


class TestRefreshTokenStore:
    """Tests for InMemoryRefreshTokenStore."""

    @pytest.mark.asyncio
    async def test_pop_removes_token(self) -> None:
        store = InMemoryRefreshTokenStore(clock=fixed_clock)
        token = RefreshToken("rt-1", "user@example.com", "ciphertext", "client-1", 2000.0)
        await store.save(token)

        assert await store.pop("rt-1") == token
        assert await store.pop("rt-1") is None

    @pytest.mark.asyncio
    async def test_save_drops_expired_tokens(self) -> None:
        now = [1000.0]
        store = InMemoryRefreshTokenStore(clock=lambda: now[0])
        await store.save(RefreshToken("stale", "user@example.com", "c", "client-1", 1500.0))
        await store.save(RefreshToken("live", "user@example.com", "c", "client-1", 9000.0))

        now[0] = 2000.0
        await store.save(RefreshToken("fresh", "user@example.com", "c", "client-1", 9000.0))

        assert await store.pop("stale") is None
        assert await store.pop("live") is not None
        assert await store.pop("fresh") is not None

    @pytest.mark.asyncio
    async def test_concurrent_pop_has_one_winner(self) -> None:
        store = InMemoryRefreshTokenStore(clock=fixed_clock)
        await store.save(RefreshToken("rt-1", "user@example.com", "c", "client-1", 2000.0))

        results = await asyncio.gather(*(store.pop("rt-1") for _ in range(10)))

        assert sum(1 for r in results if r is not None) == 1


class TestCredentialStore:
    """Tests for InMemoryCredentialStore."""

    @pytest.mark.asyncio
    async def test_put_replaces_existing_entry(self) -> None:
        store = InMemoryCredentialStore()
        await store.put(CredentialEntry("user@example.com", "old"))
        await store.put(CredentialEntry("user@example.com", "new"))

        entry = await store.get("user@example.com")

        assert entry is not None
        assert entry.tenant_secret == "new"

    @pytest.mark.asyncio
    async def test_expired_entry_is_not_returned(self) -> None:
        now = [1000.0]
        store = InMemoryCredentialStore(clock=lambda: now[0])
        await store.put(CredentialEntry("user@example.com", "secret", expires_at=1500.0))

        assert await store.get("user@example.com") is not None
        now[0] = 2000.0
        assert await store.get("user@example.com") is None

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        store = InMemoryCredentialStore()
        await store.put(CredentialEntry("user@example.com", "secret"))

        await store.delete("user@example.com")

        assert await store.get("user@example.com") is None
