"""
Things Cloud OAuth Provider for the MCP Server

Things Cloud only understands email/password authentication, so this provider
runs its own OAuth 2.1 authorization server in front of it and bridges the
two worlds:

OAuth 2.1 Flow Overview:
1. Registration: MCP clients register themselves dynamically (RFC 7591)
2. Authorization Request: Client sends the user to /authorize with a PKCE challenge
3. User Login: User signs in with Things Cloud credentials, which are verified
   against Things Cloud before an authorization code is issued
4. Token Request: Client exchanges the code (plus PKCE verifier) at /token for a
   signed access token and a rotating refresh token
5. Resource Access: Every bearer token presented to /mcp is verified and mapped
   back to the account's Things Cloud credentials (``resolve_bearer``)
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from urllib.parse import urlencode

from mcp.shared.auth import OAuthToken
from pydantic import AnyUrl, TypeAdapter, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .backend import API_ENDPOINT, AccountVerifier, BackendError, mask_email
from .credential_cipher import CredentialCipher, CredentialDecryptError
from .stores import (
    AuthorizationCode,
    AuthorizationCodeStore,
    ClientStore,
    CredentialEntry,
    CredentialStore,
    InMemoryAuthorizationCodeStore,
    InMemoryClientStore,
    InMemoryCredentialStore,
    InMemoryRefreshTokenStore,
    OAuthClient,
    RefreshToken,
    RefreshTokenStore,
    UnknownCodeError,
)
from .token_codec import InvalidTokenError, TokenCodec, TokenSigningError

logger = logging.getLogger(__name__)

THIRTY_DAYS = 30 * 24 * 60 * 60


class ThingsOAuthSettings(BaseSettings):
    """
    Settings for the Things Cloud OAuth bridge.

    Read from ``THINGS_MCP_*`` environment variables (or a ``.env`` file
    loaded at start-up).
    """

    model_config = SettingsConfigDict(env_prefix="THINGS_MCP_")

    # Signing secret for access tokens; a random one is generated when unset
    token_secret: str | None = None
    # Fernet key for stored passwords; derived from token_secret when unset
    credential_key: str | None = None

    scope: str = "things:manage"
    access_token_ttl: int = 3600
    authorization_code_ttl: int = 600
    refresh_token_ttl: int = THIRTY_DAYS
    # Defaults to refresh_token_ttl
    credential_ttl: int | None = None
    # None keeps sessions until the password changes
    session_ttl: int | None = None

    backend_url: str = API_ENDPOINT
    backend_timeout: float = 30.0


class OAuthError(Exception):
    """An OAuth protocol error with its RFC 6749 error code."""

    def __init__(self, error: str, description: str, status_code: int = 400):
        super().__init__(description)
        self.error = error
        self.description = description
        self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.description}


class BearerResolutionError(Exception):
    """Raised when a bearer token cannot be mapped to Things Cloud credentials."""


@dataclass(frozen=True)
class AuthorizationRequest:
    """A validated /authorize request."""

    client: OAuthClient
    redirect_uri: str
    state: str
    code_challenge: str


def random_token(n: int = 32) -> str:
    """Return ``n`` random bytes, base64url-encoded without padding."""
    return secrets.token_urlsafe(n)


def pkce_challenge(code_verifier: str) -> str:
    """Compute the S256 code challenge for ``code_verifier``."""
    digest = hashlib.sha256(code_verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    return hmac.compare_digest(pkce_challenge(code_verifier), code_challenge)


_URL_ADAPTER = TypeAdapter(AnyUrl)


def normalize_redirect_uri(uri: str) -> str:
    """Canonical form of a redirect URI, so ``http://host`` matches ``http://host/``."""
    try:
        return str(_URL_ADAPTER.validate_python(uri))
    except ValidationError:
        return uri


def append_query(uri: str, **params: str) -> str:
    """Append query parameters to ``uri``, keeping any query it already has."""
    sep = "&" if "?" in uri else "?"
    return f"{uri}{sep}{urlencode(params)}"


class ThingsOAuthProvider:
    """
    OAuth 2.1 authorization server backed by Things Cloud accounts.

    Owns the client registry, authorization codes, refresh tokens and the
    credential entries that let a verified access token stand in for a
    Things Cloud email/password pair. All state lives behind the repository
    interfaces in ``stores`` so it can be kept in memory or in PostgreSQL.
    """

    def __init__(
        self,
        settings: ThingsOAuthSettings,
        verifier: AccountVerifier,
        clients: ClientStore | None = None,
        codes: AuthorizationCodeStore | None = None,
        refresh_tokens: RefreshTokenStore | None = None,
        credentials: CredentialStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.verifier = verifier
        self.clients = clients or InMemoryClientStore()
        self.codes = codes or InMemoryAuthorizationCodeStore(clock)
        self.refresh_tokens = refresh_tokens or InMemoryRefreshTokenStore(clock)
        self.credentials = credentials or InMemoryCredentialStore(clock)
        self._clock = clock

        secret = settings.token_secret
        if not secret:
            logger.warning(
                "THINGS_MCP_TOKEN_SECRET not set - using a random secret. "
                "Issued tokens will stop working on restart!"
            )
            secret = secrets.token_urlsafe(48)
        self.codec = TokenCodec(secret)
        if settings.credential_key:
            self.cipher = CredentialCipher(settings.credential_key)
        else:
            self.cipher = CredentialCipher.from_secret(secret)

        logger.info(f"Initialized Things Cloud OAuth provider (scope={settings.scope})")

    @property
    def credential_ttl(self) -> int:
        return self.settings.credential_ttl or self.settings.refresh_token_ttl

    # ------------------------------------------------------------------
    # Client registry
    # ------------------------------------------------------------------

    async def register_client(
        self,
        client_name: str | None,
        redirect_uris: list[str] | None,
        grant_types: list[str] | None = None,
        response_types: list[str] | None = None,
    ) -> OAuthClient:
        """Register a new OAuth client (RFC 7591)."""
        if not redirect_uris:
            raise OAuthError("invalid_request", "redirect_uris is required")
        if not all(isinstance(uri, str) and uri for uri in redirect_uris):
            raise OAuthError("invalid_request", "redirect_uris must be non-empty strings")

        client = OAuthClient(
            client_id=random_token(24),
            client_name=client_name or "Unknown Client",
            redirect_uris=list(redirect_uris),
            grant_types=list(grant_types or ["authorization_code"]),
            response_types=list(response_types or ["code"]),
            created_at=self._clock(),
        )
        await self.clients.save(client)
        logger.info(f"Registered OAuth client {client.client_name!r} (id={client.client_id})")
        return client

    async def get_client(self, client_id: str) -> OAuthClient:
        client = await self.clients.get(client_id)
        if client is None:
            logger.warning(f"Unknown client_id: {client_id}")
            raise OAuthError("invalid_client", "Unknown client_id.")
        return client

    # ------------------------------------------------------------------
    # Authorization endpoint
    # ------------------------------------------------------------------

    async def validate_authorization_request(
        self, params: Mapping[str, str]
    ) -> AuthorizationRequest:
        """Check an /authorize query. Errors are meant to be shown, not redirected."""
        if params.get("response_type") != "code":
            raise OAuthError(
                "unsupported_response_type", "Unsupported response_type. Must be 'code'."
            )
        client_id = params.get("client_id", "")
        redirect_uri = params.get("redirect_uri", "")
        state = params.get("state", "")
        if not client_id or not redirect_uri or not state:
            raise OAuthError(
                "invalid_request", "Missing required parameters: client_id, redirect_uri, state."
            )
        code_challenge = params.get("code_challenge", "")
        if not code_challenge or params.get("code_challenge_method") != "S256":
            raise OAuthError(
                "invalid_request", "PKCE required: code_challenge and code_challenge_method=S256."
            )

        client = await self.get_client(client_id)
        registered = {normalize_redirect_uri(uri) for uri in client.redirect_uris}
        if normalize_redirect_uri(redirect_uri) not in registered:
            logger.warning(f"Unregistered redirect_uri for client {client_id}: {redirect_uri}")
            raise OAuthError("invalid_request", "Invalid redirect_uri.")

        return AuthorizationRequest(
            client=client,
            redirect_uri=redirect_uri,
            state=state,
            code_challenge=code_challenge,
        )

    async def authorize(self, request: AuthorizationRequest, email: str, password: str) -> str:
        """
        Verify Things Cloud credentials and issue an authorization code.

        Returns:
            The client redirect URL carrying ``code`` and ``state``.

        Raises:
            OAuthError: ``access_denied`` with a generic message for any
                credential failure, so unknown accounts and wrong passwords
                look the same.
        """
        if not email or not password:
            raise OAuthError("invalid_request", "Email and password are required.")

        try:
            await self.verifier.verify(email, password)
        except BackendError as e:
            logger.warning(f"Login failed for {mask_email(email)}: {e}")
            raise OAuthError("access_denied", "Invalid Things Cloud credentials.") from None

        now = self._clock()
        encrypted = self.cipher.encrypt(password)
        code = AuthorizationCode(
            code=random_token(32),
            client_id=request.client.client_id,
            redirect_uri=request.redirect_uri,
            tenant_id=email,
            tenant_secret=encrypted,
            code_challenge=request.code_challenge,
            expires_at=now + self.settings.authorization_code_ttl,
        )
        await self.codes.save(code)
        await self._remember_credentials(email, encrypted, now)

        logger.info(
            f"Auth code issued for {mask_email(email)} (client={request.client.client_id})"
        )
        return append_query(request.redirect_uri, code=code.code, state=request.state)

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def exchange_authorization_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: str,
        issuer: str,
    ) -> OAuthToken:
        """Redeem an authorization code. Each code succeeds at most once."""
        if not code or not client_id or not redirect_uri or not code_verifier:
            raise OAuthError(
                "invalid_request",
                "missing required parameters: code, client_id, redirect_uri, code_verifier",
            )

        now = self._clock()

        def validate(record: AuthorizationCode) -> None:
            if record.used:
                raise OAuthError("invalid_grant", "authorization code already used")
            if now > record.expires_at:
                raise OAuthError("invalid_grant", "authorization code expired")
            if record.client_id != client_id:
                raise OAuthError("invalid_grant", "client_id mismatch")
            if record.redirect_uri != redirect_uri:
                raise OAuthError("invalid_grant", "redirect_uri mismatch")
            if not verify_pkce(code_verifier, record.code_challenge):
                raise OAuthError("invalid_grant", "PKCE verification failed")

        try:
            record = await self.codes.consume(code, validate)
        except UnknownCodeError:
            raise OAuthError("invalid_grant", "unknown authorization code") from None
        except OAuthError as e:
            logger.warning(f"Code exchange rejected for client {client_id}: {e.description}")
            raise

        grant = await self._issue_tokens(record.tenant_id, record.tenant_secret, client_id, issuer)
        logger.info(f"Tokens issued for {mask_email(record.tenant_id)}")
        return grant

    async def exchange_refresh_token(self, refresh_token: str, issuer: str) -> OAuthToken:
        """Redeem a refresh token, rotating it. Each refresh token works once."""
        if not refresh_token:
            raise OAuthError("invalid_request", "missing refresh_token")

        record = await self.refresh_tokens.pop(refresh_token)
        if record is None:
            raise OAuthError("invalid_grant", "unknown refresh token")
        if self._clock() > record.expires_at:
            logger.info(f"Expired refresh token presented for {mask_email(record.tenant_id)}")
            raise OAuthError("invalid_grant", "refresh token expired")

        grant = await self._issue_tokens(
            record.tenant_id, record.tenant_secret, record.client_id, issuer
        )
        logger.info(f"Tokens refreshed for {mask_email(record.tenant_id)}")
        return grant

    async def _issue_tokens(
        self, tenant_id: str, encrypted_secret: str, client_id: str, issuer: str
    ) -> OAuthToken:
        now = self._clock()
        await self._remember_credentials(tenant_id, encrypted_secret, now)

        try:
            access_token = self.codec.issue_access_token(
                subject=tenant_id,
                issuer=issuer,
                scope=self.settings.scope,
                ttl=self.settings.access_token_ttl,
                now=now,
            )
        except TokenSigningError as e:
            logger.error(f"Failed to sign access token: {e}")
            raise OAuthError("server_error", "failed to create access token", 500) from e

        refresh = RefreshToken(
            token=random_token(32),
            tenant_id=tenant_id,
            tenant_secret=encrypted_secret,
            client_id=client_id,
            expires_at=now + self.settings.refresh_token_ttl,
        )
        await self.refresh_tokens.save(refresh)

        return OAuthToken(
            access_token=access_token,
            token_type="Bearer",
            refresh_token=refresh.token,
            expires_in=self.settings.access_token_ttl,
            scope=self.settings.scope,
        )

    async def _remember_credentials(self, tenant_id: str, encrypted_secret: str, now: float) -> None:
        await self.credentials.put(
            CredentialEntry(tenant_id, encrypted_secret, now + self.credential_ttl)
        )

    # ------------------------------------------------------------------
    # Bearer resolution
    # ------------------------------------------------------------------

    async def resolve_bearer(self, token: str) -> tuple[str, str]:
        """
        Map an access token back to the account's Things Cloud credentials.

        Returns:
            ``(email, password)``

        Raises:
            BearerResolutionError: If the token is invalid or expired, has no
                subject, or no credential entry exists for the subject.
        """
        try:
            claims = self.codec.verify(token)
        except InvalidTokenError:
            raise BearerResolutionError("invalid token") from None

        email = claims.get("sub")
        if not isinstance(email, str) or not email:
            raise BearerResolutionError("invalid token: missing subject")

        entry = await self.credentials.get(email)
        if entry is None:
            raise BearerResolutionError("no credentials found for user")
        try:
            password = self.cipher.decrypt(entry.tenant_secret)
        except CredentialDecryptError:
            raise BearerResolutionError("no credentials found for user") from None
        return email, password
