"""
OAuth state repositories.

Each kind of OAuth state (registered clients, authorization codes, refresh
tokens and credential entries) lives behind a small async repository
protocol. The in-memory implementations below are used for tests and
single-process deployments; ``token_storage`` provides PostgreSQL-backed
versions with the same interface.

Passwords stored in these records are always ciphertext produced by
``CredentialCipher``.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Protocol

from .backend import mask_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OAuthClient:
    """A dynamically registered OAuth client. Immutable once created."""

    client_id: str
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    client_secret: str | None = None
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AuthorizationCode:
    """A single-use authorization code bound to a client, redirect URI and account."""

    code: str
    client_id: str
    redirect_uri: str
    tenant_id: str
    tenant_secret: str
    code_challenge: str
    expires_at: float
    used: bool = False


@dataclass(frozen=True)
class RefreshToken:
    token: str
    tenant_id: str
    tenant_secret: str
    client_id: str
    expires_at: float


@dataclass(frozen=True)
class CredentialEntry:
    tenant_id: str
    tenant_secret: str
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at < now


# Raises to reject a code; must not mutate anything.
CodeValidator = Callable[[AuthorizationCode], None]


class ClientStore(Protocol):
    async def save(self, client: OAuthClient) -> None: ...

    async def get(self, client_id: str) -> OAuthClient | None: ...


class AuthorizationCodeStore(Protocol):
    async def save(self, code: AuthorizationCode) -> None: ...

    async def get(self, code: str) -> AuthorizationCode | None: ...

    async def consume(self, code: str, validate: CodeValidator) -> AuthorizationCode:
        """Atomically validate a code and mark it used.

        ``validate`` receives the stored record and raises to reject it, in
        which case the record is left untouched. Raises ``UnknownCodeError``
        when no record exists.
        """
        ...


class RefreshTokenStore(Protocol):
    async def save(self, token: RefreshToken) -> None: ...

    async def pop(self, token: str) -> RefreshToken | None:
        """Remove and return a refresh token. Only one caller can win."""
        ...


class CredentialStore(Protocol):
    async def put(self, entry: CredentialEntry) -> None: ...

    async def get(self, tenant_id: str) -> CredentialEntry | None: ...

    async def delete(self, tenant_id: str) -> None: ...


class UnknownCodeError(LookupError):
    """Raised by ``consume`` when no record exists for the presented code."""


class InMemoryClientStore:
    def __init__(self) -> None:
        self._clients: dict[str, OAuthClient] = {}
        self._lock = asyncio.Lock()

    async def save(self, client: OAuthClient) -> None:
        async with self._lock:
            self._clients[client.client_id] = client

    async def get(self, client_id: str) -> OAuthClient | None:
        return self._clients.get(client_id)


class InMemoryAuthorizationCodeStore:
    """Codes past expiry are dropped whenever a new code is saved. Used codes stay until then."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._codes: dict[str, AuthorizationCode] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def save(self, code: AuthorizationCode) -> None:
        async with self._lock:
            self._purge(self._clock())
            self._codes[code.code] = code

    async def get(self, code: str) -> AuthorizationCode | None:
        return self._codes.get(code)

    async def consume(self, code: str, validate: CodeValidator) -> AuthorizationCode:
        async with self._lock:
            record = self._codes.get(code)
            if record is None:
                raise UnknownCodeError(code)
            validate(record)
            consumed = replace(record, used=True)
            self._codes[code] = consumed
            return consumed

    def _purge(self, now: float) -> None:
        stale = [c for c, record in self._codes.items() if record.expires_at < now]
        for c in stale:
            del self._codes[c]
        if stale:
            logger.debug(f"Dropped {len(stale)} expired authorization codes")


class InMemoryRefreshTokenStore:
    """Expired tokens are dropped whenever a new token is saved."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._tokens: dict[str, RefreshToken] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def save(self, token: RefreshToken) -> None:
        async with self._lock:
            now = self._clock()
            expired = [t for t, record in self._tokens.items() if record.expires_at < now]
            for t in expired:
                del self._tokens[t]
            self._tokens[token.token] = token

    async def pop(self, token: str) -> RefreshToken | None:
        async with self._lock:
            return self._tokens.pop(token, None)


class InMemoryCredentialStore:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._entries: dict[str, CredentialEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def put(self, entry: CredentialEntry) -> None:
        async with self._lock:
            self._entries[entry.tenant_id] = entry

    async def get(self, tenant_id: str) -> CredentialEntry | None:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            async with self._lock:
                # Only drop the entry we looked at; a fresh one may have landed.
                if self._entries.get(tenant_id) is entry:
                    del self._entries[tenant_id]
            logger.info(f"Credential entry for {mask_email(tenant_id)} expired")
            return None
        return entry

    async def delete(self, tenant_id: str) -> None:
        async with self._lock:
            self._entries.pop(tenant_id, None)
