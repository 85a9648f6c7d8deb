"""Unit tests for the Things Cloud OAuth provider."""

import asyncio
import time
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest

from thingscloud_mcp.oauth_provider import (
    BearerResolutionError,
    OAuthError,
    ThingsOAuthProvider,
    ThingsOAuthSettings,
    append_query,
    normalize_redirect_uri,
    pkce_challenge,
    verify_pkce,
)
from thingscloud_mcp.stores import OAuthClient
from thingscloud_mcp.token_codec import InvalidTokenError

EMAIL = "user@example.com"
PASSWORD = "correct-horse-battery-staple"
REDIRECT_URI = "https://app/cb"
ISSUER = "https://mcp.example.com"

# RFC 7636 appendix B
VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def authorize_params(client: OAuthClient, **overrides: str) -> dict[str, str]:
    params = {
        "response_type": "code",
        "client_id": client.client_id,
        "redirect_uri": REDIRECT_URI,
        "state": "xyz",
        "code_challenge": CHALLENGE,
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return params


async def register(provider: ThingsOAuthProvider) -> OAuthClient:
    return await provider.register_client("Test Client", [REDIRECT_URI])


async def obtain_code(provider: ThingsOAuthProvider, client: OAuthClient) -> str:
    request = await provider.validate_authorization_request(authorize_params(client))
    location = await provider.authorize(request, EMAIL, PASSWORD)
    return parse_qs(urlparse(location).query)["code"][0]


class TestPkce:
    """Tests for the PKCE helpers."""

    def test_known_vector(self) -> None:
        assert pkce_challenge(VERIFIER) == CHALLENGE
        assert verify_pkce(VERIFIER, CHALLENGE)

    def test_wrong_verifier(self) -> None:
        assert not verify_pkce("wrong-verifier", CHALLENGE)


class TestAppendQuery:
    def test_plain_uri(self) -> None:
        assert append_query("https://app/cb", code="c", state="s") == "https://app/cb?code=c&state=s"

    def test_uri_with_query(self) -> None:
        assert append_query("https://app/cb?x=1", code="c") == "https://app/cb?x=1&code=c"

    def test_values_are_encoded(self) -> None:
        assert append_query("https://app/cb", state="a b&c") == "https://app/cb?state=a+b%26c"


class TestNormalizeRedirectUri:
    def test_bare_origin_gains_slash(self) -> None:
        assert normalize_redirect_uri("http://localhost:3000") == "http://localhost:3000/"
        assert normalize_redirect_uri("http://localhost:3000/") == "http://localhost:3000/"

    def test_path_is_kept(self) -> None:
        assert normalize_redirect_uri(REDIRECT_URI) == REDIRECT_URI

    def test_unparseable_uri_is_returned_as_is(self) -> None:
        assert normalize_redirect_uri("not a url") == "not a url"


class TestClientRegistration:
    """Tests for dynamic client registration."""

    @pytest.mark.asyncio
    async def test_register_defaults(self, provider: ThingsOAuthProvider) -> None:
        client = await provider.register_client(None, [REDIRECT_URI])

        assert client.client_name == "Unknown Client"
        assert client.grant_types == ["authorization_code"]
        assert client.response_types == ["code"]
        assert await provider.get_client(client.client_id) == client

    @pytest.mark.asyncio
    async def test_client_ids_are_unique(self, provider: ThingsOAuthProvider) -> None:
        ids = {(await register(provider)).client_id for _ in range(20)}
        assert len(ids) == 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize("redirect_uris", [None, [], [""]])
    async def test_register_requires_redirect_uris(
        self, provider: ThingsOAuthProvider, redirect_uris: Any
    ) -> None:
        with pytest.raises(OAuthError) as exc_info:
            await provider.register_client("Test", redirect_uris)
        assert exc_info.value.error == "invalid_request"

    @pytest.mark.asyncio
    async def test_unknown_client(self, provider: ThingsOAuthProvider) -> None:
        with pytest.raises(OAuthError) as exc_info:
            await provider.get_client("missing")
        assert exc_info.value.error == "invalid_client"


class TestAuthorizationRequest:
    """Tests for /authorize request validation."""

    @pytest.mark.asyncio
    async def test_valid_request(self, provider: ThingsOAuthProvider) -> None:
        client = await register(provider)

        request = await provider.validate_authorization_request(authorize_params(client))

        assert request.client == client
        assert request.state == "xyz"
        assert request.code_challenge == CHALLENGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("overrides", "error"),
        [
            ({"response_type": "token"}, "unsupported_response_type"),
            ({"state": ""}, "invalid_request"),
            ({"code_challenge": ""}, "invalid_request"),
            ({"code_challenge_method": "plain"}, "invalid_request"),
            ({"redirect_uri": "https://evil/cb"}, "invalid_request"),
            ({"client_id": "missing"}, "invalid_client"),
        ],
    )
    async def test_invalid_requests(
        self, provider: ThingsOAuthProvider, overrides: dict[str, str], error: str
    ) -> None:
        client = await register(provider)

        with pytest.raises(OAuthError) as exc_info:
            await provider.validate_authorization_request(authorize_params(client, **overrides))

        assert exc_info.value.error == error

    @pytest.mark.asyncio
    async def test_authorize_redirects_with_code_and_state(
        self, provider: ThingsOAuthProvider
    ) -> None:
        client = await register(provider)
        request = await provider.validate_authorization_request(authorize_params(client))

        location = await provider.authorize(request, EMAIL, PASSWORD)

        parsed = urlparse(location)
        query = parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == REDIRECT_URI
        assert query["state"] == ["xyz"]
        assert query["code"][0]

    @pytest.mark.asyncio
    async def test_bad_credentials_are_denied(self, provider: ThingsOAuthProvider) -> None:
        client = await register(provider)
        request = await provider.validate_authorization_request(authorize_params(client))

        with pytest.raises(OAuthError) as exc_info:
            await provider.authorize(request, EMAIL, "wrong")

        assert exc_info.value.error == "access_denied"

    @pytest.mark.asyncio
    async def test_unknown_account_looks_like_bad_password(
        self, provider: ThingsOAuthProvider
    ) -> None:
        client = await register(provider)
        request = await provider.validate_authorization_request(authorize_params(client))

        with pytest.raises(OAuthError) as wrong_password:
            await provider.authorize(request, EMAIL, "wrong")
        with pytest.raises(OAuthError) as unknown_account:
            await provider.authorize(request, "nobody@example.com", PASSWORD)

        assert wrong_password.value.to_dict() == unknown_account.value.to_dict()

    @pytest.mark.asyncio
    async def test_missing_credentials(self, provider: ThingsOAuthProvider, verifier: Any) -> None:
        client = await register(provider)
        request = await provider.validate_authorization_request(authorize_params(client))

        with pytest.raises(OAuthError) as exc_info:
            await provider.authorize(request, EMAIL, "")

        assert exc_info.value.error == "invalid_request"
        assert verifier.calls == []

    @pytest.mark.asyncio
    async def test_stored_password_is_encrypted(self, provider: ThingsOAuthProvider) -> None:
        client = await register(provider)
        code = await obtain_code(provider, client)

        record = await provider.codes.get(code)
        assert record is not None
        assert record.tenant_secret != PASSWORD
        assert provider.cipher.decrypt(record.tenant_secret) == PASSWORD


class TestAuthorizationCodeExchange:
    """Tests for the authorization_code grant."""

    @pytest.mark.asyncio
    async def test_exchange_issues_tokens(self, provider: ThingsOAuthProvider) -> None:
        client = await register(provider)
        code = await obtain_code(provider, client)

        grant = await provider.exchange_authorization_code(
            code, client.client_id, REDIRECT_URI, VERIFIER, ISSUER
        )

        response = grant.model_dump(exclude_none=True)
        assert response["token_type"] == "Bearer"
        assert response["expires_in"] == 3600
        assert response["scope"] == "things:manage"
        claims = provider.codec.verify(grant.access_token)
        assert claims["sub"] == EMAIL
        assert claims["iss"] == ISSUER

    @pytest.mark.asyncio
    async def test_code_cannot_be_replayed(self, provider: ThingsOAuthProvider) -> None:
        client = await register(provider)
        code = await obtain_code(provider, client)
        await provider.exchange_authorization_code(
            code, client.client_id, REDIRECT_URI, VERIFIER, ISSUER
        )

        with pytest.raises(OAuthError) as exc_info:
            await provider.exchange_authorization_code(
                code, client.client_id, REDIRECT_URI, VERIFIER, ISSUER
            )

        assert exc_info.value.error == "invalid_grant"

    @pytest.mark.asyncio
    async def test_concurrent_exchanges_succeed_once(self, provider: ThingsOAuthProvider) -> None:
        client = await register(provider)
        code = await obtain_code(provider, client)

        results = await asyncio.gather(
            *(
                provider.exchange_authorization_code(
                    code, client.client_id, REDIRECT_URI, VERIFIER, ISSUER
                )
                for _ in range(10)
            ),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, OAuthError)]
        assert len(results) - len(errors) == 1
        assert all(e.error == "invalid_grant" for e in errors)

    @pytest.mark.asyncio
    async def test_expired_code(self, provider: ThingsOAuthProvider, clock: Any) -> None:
        client = await register(provider)
        code = await obtain_code(provider, client)
        clock.advance(601)

        with pytest.raises(OAuthError) as exc_info:
            await provider.exchange_authorization_code(
                code, client.client_id, REDIRECT_URI, VERIFIER, ISSUER
            )

        assert exc_info.value.error == "invalid_grant"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("client_id", "other-client"),
            ("redirect_uri", "https://app/other"),
            ("code_verifier", "not-the-right-verifier"),
        ],
    )
    async def test_mismatches_are_invalid_grant(
        self, provider: ThingsOAuthProvider, field: str, value: str
    ) -> None:
        client = await register(provider)
        code = await obtain_code(provider, client)
        kwargs = {
            "code": code,
            "client_id": client.client_id,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": VERIFIER,
            "issuer": ISSUER,
        }
        kwargs[field] = value

        with pytest.raises(OAuthError) as exc_info:
            await provider.exchange_authorization_code(**kwargs)

        assert exc_info.value.error == "invalid_grant"

    @pytest.mark.asyncio
    async def test_rejected_exchange_leaves_code_usable(
        self, provider: ThingsOAuthProvider
    ) -> None:
        """Test that a failed PKCE check does not burn the code."""
        client = await register(provider)
        code = await obtain_code(provider, client)

        with pytest.raises(OAuthError):
            await provider.exchange_authorization_code(
                code, client.client_id, REDIRECT_URI, "wrong-verifier", ISSUER
            )
        grant = await provider.exchange_authorization_code(
            code, client.client_id, REDIRECT_URI, VERIFIER, ISSUER
        )

        assert grant.access_token

    @pytest.mark.asyncio
    async def test_unknown_code(self, provider: ThingsOAuthProvider) -> None:
        with pytest.raises(OAuthError) as exc_info:
            await provider.exchange_authorization_code(
                "missing", "client", REDIRECT_URI, VERIFIER, ISSUER
            )
        assert exc_info.value.error == "invalid_grant"

    @pytest.mark.asyncio
    async def test_missing_parameters(self, provider: ThingsOAuthProvider) -> None:
        with pytest.raises(OAuthError) as exc_info:
            await provider.exchange_authorization_code("", "client", REDIRECT_URI, VERIFIER, ISSUER)
        assert exc_info.value.error == "invalid_request"


class TestRefreshTokenExchange:
    """Tests for the refresh_token grant."""

    async def first_grant(self, provider: ThingsOAuthProvider) -> Any:
        client = await register(provider)
        code = await obtain_code(provider, client)
        return await provider.exchange_authorization_code(
            code, client.client_id, REDIRECT_URI, VERIFIER, ISSUER
        )

    @pytest.mark.asyncio
    async def test_refresh_rotates_token(self, provider: ThingsOAuthProvider) -> None:
        grant = await self.first_grant(provider)

        refreshed = await provider.exchange_refresh_token(grant.refresh_token, ISSUER)

        assert refreshed.refresh_token != grant.refresh_token
        assert provider.codec.verify(refreshed.access_token)["sub"] == EMAIL

        with pytest.raises(OAuthError) as exc_info:
            await provider.exchange_refresh_token(grant.refresh_token, ISSUER)
        assert exc_info.value.error == "invalid_grant"

        # The rotated token keeps working
        again = await provider.exchange_refresh_token(refreshed.refresh_token, ISSUER)
        assert again.access_token

        # ...exactly once
        with pytest.raises(OAuthError) as exc_info:
            await provider.exchange_refresh_token(refreshed.refresh_token, ISSUER)
        assert exc_info.value.error == "invalid_grant"
        assert again.refresh_token not in (grant.refresh_token, refreshed.refresh_token)

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, provider: ThingsOAuthProvider, clock: Any) -> None:
        grant = await self.first_grant(provider)
        clock.advance(31 * 24 * 60 * 60)

        with pytest.raises(OAuthError) as exc_info:
            await provider.exchange_refresh_token(grant.refresh_token, ISSUER)

        assert exc_info.value.error == "invalid_grant"

    @pytest.mark.asyncio
    async def test_unknown_refresh_token(self, provider: ThingsOAuthProvider) -> None:
        with pytest.raises(OAuthError) as exc_info:
            await provider.exchange_refresh_token("missing", ISSUER)
        assert exc_info.value.error == "invalid_grant"


class TestBearerResolution:
    """Tests for mapping access tokens back to Things Cloud credentials."""

    @pytest.mark.asyncio
    async def test_resolves_credentials(self, provider: ThingsOAuthProvider) -> None:
        client = await register(provider)
        code = await obtain_code(provider, client)
        grant = await provider.exchange_authorization_code(
            code, client.client_id, REDIRECT_URI, VERIFIER, ISSUER
        )

        assert await provider.resolve_bearer(grant.access_token) == (EMAIL, PASSWORD)

    @pytest.mark.asyncio
    async def test_expired_token(self, provider: ThingsOAuthProvider) -> None:
        token = provider.codec.issue_access_token(
            EMAIL, ISSUER, "things:manage", ttl=60, now=time.time() - 3600
        )

        with pytest.raises(BearerResolutionError):
            await provider.resolve_bearer(token)

    @pytest.mark.asyncio
    async def test_token_without_credentials(self, provider: ThingsOAuthProvider) -> None:
        token = provider.codec.issue_access_token(EMAIL, ISSUER, "things:manage", ttl=60)

        with pytest.raises(BearerResolutionError) as exc_info:
            await provider.resolve_bearer(token)

        assert "no credentials" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_token_without_subject(self, provider: ThingsOAuthProvider) -> None:
        token = provider.codec.sign({"exp": int(time.time()) + 60})

        with pytest.raises(BearerResolutionError):
            await provider.resolve_bearer(token)

    @pytest.mark.asyncio
    async def test_latest_password_wins(self, provider: ThingsOAuthProvider, verifier: Any) -> None:
        """Test that signing in again with a new password replaces the stored one."""
        client = await register(provider)
        await obtain_code(provider, client)
        verifier.accounts[EMAIL] = "new-password"

        request = await provider.validate_authorization_request(authorize_params(client))
        await provider.authorize(request, EMAIL, "new-password")
        token = provider.codec.issue_access_token(EMAIL, ISSUER, "things:manage", ttl=60)

        assert await provider.resolve_bearer(token) == (EMAIL, "new-password")


class TestProviderSetup:
    def test_random_secret_when_unset(self, verifier: Any) -> None:
        first = ThingsOAuthProvider(ThingsOAuthSettings(token_secret=None), verifier)
        second = ThingsOAuthProvider(ThingsOAuthSettings(token_secret=None), verifier)

        token = first.codec.issue_access_token(EMAIL, ISSUER, "s", ttl=60)

        assert first.codec.verify(token)["sub"] == EMAIL
        with pytest.raises(InvalidTokenError):
            second.codec.verify(token)

    def test_credential_ttl_defaults_to_refresh_ttl(self, settings: ThingsOAuthSettings) -> None:
        assert settings.credential_ttl is None
        provider = ThingsOAuthProvider(settings, verifier=None)  # type: ignore[arg-type]
        assert provider.credential_ttl == settings.refresh_token_ttl
