"""
Database-backed OAuth state storage.

This module provides persistent storage for registered clients, authorization
codes, refresh tokens and credential entries using PostgreSQL, ensuring that
refresh tokens (and the credentials they bridge to) survive server restarts.
"""

import json
import logging
import os
import time
from dataclasses import replace

import asyncpg

from .backend import mask_email
from .stores import (
    AuthorizationCode,
    CodeValidator,
    CredentialEntry,
    OAuthClient,
    RefreshToken,
    UnknownCodeError,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS mcp_oauth_clients (
    client_id TEXT PRIMARY KEY,
    client_secret TEXT,
    client_name TEXT NOT NULL,
    redirect_uris TEXT NOT NULL,
    grant_types TEXT NOT NULL,
    response_types TEXT NOT NULL,
    created_at DOUBLE PRECISION NOT NULL
);
CREATE TABLE IF NOT EXISTS mcp_authorization_codes (
    code TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    redirect_uri TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    tenant_secret TEXT NOT NULL,
    code_challenge TEXT NOT NULL,
    expires_at DOUBLE PRECISION NOT NULL,
    used BOOLEAN NOT NULL DEFAULT FALSE
);
CREATE TABLE IF NOT EXISTS mcp_refresh_tokens (
    token TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    tenant_secret TEXT NOT NULL,
    client_id TEXT NOT NULL,
    expires_at DOUBLE PRECISION NOT NULL
);
CREATE TABLE IF NOT EXISTS mcp_credentials (
    tenant_id TEXT PRIMARY KEY,
    tenant_secret TEXT NOT NULL,
    expires_at DOUBLE PRECISION
);
"""


class _PoolBacked:
    def __init__(self, storage: "TokenStorage"):
        self._storage = storage

    @property
    def _pool(self) -> asyncpg.Pool:
        return self._storage.pool


class PostgresClientStore(_PoolBacked):
    async def save(self, client: OAuthClient) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO mcp_oauth_clients
                    (client_id, client_secret, client_name, redirect_uris,
                     grant_types, response_types, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (client_id) DO NOTHING
                """,
                client.client_id,
                client.client_secret,
                client.client_name,
                json.dumps(client.redirect_uris),
                json.dumps(client.grant_types),
                json.dumps(client.response_types),
                client.created_at,
            )
        logger.debug(f"Stored client {client.client_id}")

    async def get(self, client_id: str) -> OAuthClient | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM mcp_oauth_clients WHERE client_id = $1", client_id
            )
        if not row:
            return None
        return OAuthClient(
            client_id=row["client_id"],
            client_secret=row["client_secret"],
            client_name=row["client_name"],
            redirect_uris=json.loads(row["redirect_uris"]),
            grant_types=json.loads(row["grant_types"]),
            response_types=json.loads(row["response_types"]),
            created_at=row["created_at"],
        )


def _code_from_row(row: asyncpg.Record) -> AuthorizationCode:
    return AuthorizationCode(
        code=row["code"],
        client_id=row["client_id"],
        redirect_uri=row["redirect_uri"],
        tenant_id=row["tenant_id"],
        tenant_secret=row["tenant_secret"],
        code_challenge=row["code_challenge"],
        expires_at=row["expires_at"],
        used=row["used"],
    )


class PostgresAuthorizationCodeStore(_PoolBacked):
    async def save(self, code: AuthorizationCode) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO mcp_authorization_codes
                    (code, client_id, redirect_uri, tenant_id, tenant_secret,
                     code_challenge, expires_at, used)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                code.code,
                code.client_id,
                code.redirect_uri,
                code.tenant_id,
                code.tenant_secret,
                code.code_challenge,
                code.expires_at,
                code.used,
            )

    async def get(self, code: str) -> AuthorizationCode | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM mcp_authorization_codes WHERE code = $1", code
            )
        return _code_from_row(row) if row else None

    async def consume(self, code: str, validate: CodeValidator) -> AuthorizationCode:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                # Row lock serialises concurrent exchanges of the same code
                row = await conn.fetchrow(
                    "SELECT * FROM mcp_authorization_codes WHERE code = $1 FOR UPDATE",
                    code,
                )
                if not row:
                    raise UnknownCodeError(code)
                record = _code_from_row(row)
                validate(record)
                await conn.execute(
                    "UPDATE mcp_authorization_codes SET used = TRUE WHERE code = $1", code
                )
        return replace(record, used=True)


class PostgresRefreshTokenStore(_PoolBacked):
    async def save(self, token: RefreshToken) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO mcp_refresh_tokens
                    (token, tenant_id, tenant_secret, client_id, expires_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                token.token,
                token.tenant_id,
                token.tenant_secret,
                token.client_id,
                token.expires_at,
            )
        logger.debug(f"Stored refresh token {token.token[:8]}... for {mask_email(token.tenant_id)}")

    async def pop(self, token: str) -> RefreshToken | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "DELETE FROM mcp_refresh_tokens WHERE token = $1 RETURNING *", token
            )
        if not row:
            return None
        return RefreshToken(
            token=row["token"],
            tenant_id=row["tenant_id"],
            tenant_secret=row["tenant_secret"],
            client_id=row["client_id"],
            expires_at=row["expires_at"],
        )


class PostgresCredentialStore(_PoolBacked):
    async def put(self, entry: CredentialEntry) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO mcp_credentials (tenant_id, tenant_secret, expires_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    tenant_secret = EXCLUDED.tenant_secret,
                    expires_at = EXCLUDED.expires_at
                """,
                entry.tenant_id,
                entry.tenant_secret,
                entry.expires_at,
            )

    async def get(self, tenant_id: str) -> CredentialEntry | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT tenant_id, tenant_secret, expires_at FROM mcp_credentials "
                "WHERE tenant_id = $1",
                tenant_id,
            )
        if not row:
            return None
        entry = CredentialEntry(row["tenant_id"], row["tenant_secret"], row["expires_at"])
        if entry.is_expired(time.time()):
            logger.debug(f"Credential entry for {mask_email(tenant_id)} has expired")
            await self.delete(tenant_id)
            return None
        return entry

    async def delete(self, tenant_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute("DELETE FROM mcp_credentials WHERE tenant_id = $1", tenant_id)


class TokenStorage:
    """PostgreSQL connection pool plus the four OAuth repositories built on it."""

    def __init__(self, database_url: str | None = None):
        """
        Initialize token storage.

        Args:
            database_url: PostgreSQL connection URL. If not provided,
                         will be read from DATABASE_URL environment variable.
        """
        self.database_url = database_url or os.environ.get("DATABASE_URL")
        self._pool: asyncpg.Pool | None = None
        self.clients = PostgresClientStore(self)
        self.codes = PostgresAuthorizationCodeStore(self)
        self.refresh_tokens = PostgresRefreshTokenStore(self)
        self.credentials = PostgresCredentialStore(self)

    @property
    def pool(self) -> asyncpg.Pool:
        if not self._pool:
            raise RuntimeError("Token storage not initialized. Call initialize() first.")
        return self._pool

    async def initialize(self) -> None:
        """Create the connection pool and make sure the schema exists."""
        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable is required for token storage")

        logger.info("Initializing database connection pool for token storage")
        self._pool = await asyncpg.create_pool(
            self.database_url,
            min_size=2,
            max_size=10,
            command_timeout=30,
        )
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Database connection pool initialized")

    async def close(self) -> None:
        """Close the database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database connection pool closed")

    async def cleanup_expired(self) -> int:
        """
        Remove expired codes, refresh tokens and credential entries.

        Returns:
            Number of rows removed
        """
        now = time.time()
        count = 0
        async with self.pool.acquire() as conn:
            for table in ("mcp_authorization_codes", "mcp_refresh_tokens", "mcp_credentials"):
                result = await conn.execute(f"DELETE FROM {table} WHERE expires_at < $1", now)  # noqa: S608
                # Parse the DELETE count from result string like "DELETE 5"
                count += int(result.split()[-1]) if result else 0
        if count > 0:
            logger.info(f"Cleaned up {count} expired OAuth records")
        return count
