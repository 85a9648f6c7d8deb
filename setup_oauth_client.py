"""
OAuth Client Setup Script for the Things Cloud MCP server

Pre-registers an OAuth client with a running server through its dynamic
registration endpoint, or lists the clients held in the PostgreSQL store.

Usage:
    python setup_oauth_client.py --help
    python setup_oauth_client.py --server-url http://localhost:8080 --redirect-uri https://app/cb
    python setup_oauth_client.py --list-only --database-url postgresql://...
"""

import asyncio
import json
import os
import sys
from typing import Any

import aiohttp
import click
from dotenv import load_dotenv

from thingscloud_mcp.token_storage import TokenStorage

load_dotenv()


async def register_oauth_client(
    server_url: str,
    client_name: str,
    redirect_uris: list[str],
) -> dict[str, Any]:
    """
    Register an OAuth client with the MCP server (RFC 7591).

    Args:
        server_url: Base URL of the MCP server
        client_name: Name for the OAuth client
        redirect_uris: List of allowed redirect URIs

    Returns:
        Registration response including client_id
    """
    client_data = {
        "client_name": client_name,
        "redirect_uris": redirect_uris,
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
    }

    async with aiohttp.ClientSession() as session:
        url = f"{server_url.rstrip('/')}/register"
        async with session.post(url, json=client_data) as response:
            if response.status == 201:
                return await response.json()  # type: ignore[no-any-return]
            error_text = await response.text()
            raise click.ClickException(
                f"Failed to register client: {response.status} - {error_text}"
            )


async def list_oauth_clients(database_url: str) -> list[dict[str, Any]]:
    """List registered clients straight from the PostgreSQL store."""
    storage = TokenStorage(database_url)
    await storage.initialize()
    try:
        async with storage.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT client_id, client_name, redirect_uris, created_at "
                "FROM mcp_oauth_clients ORDER BY created_at"
            )
    finally:
        await storage.close()
    return [
        {
            "client_id": row["client_id"],
            "client_name": row["client_name"],
            "redirect_uris": json.loads(row["redirect_uris"]),
        }
        for row in rows
    ]


@click.command()
@click.option(
    "--server-url",
    default=lambda: os.environ.get("MCP_SERVER_URL", "http://localhost:8080"),
    help="MCP server base URL",
)
@click.option("--client-name", default="MCP Client", help="Name for the OAuth client")
@click.option("--redirect-uri", "redirect_uris", multiple=True, help="Allowed redirect URI (repeatable)")
@click.option("--list-only", is_flag=True, help="Only list existing clients, don't create new one")
@click.option("--database-url", default=lambda: os.environ.get("DATABASE_URL"), help="PostgreSQL URL")
def main(
    server_url: str,
    client_name: str,
    redirect_uris: tuple[str, ...],
    list_only: bool,
    database_url: str | None,
) -> None:
    """Register or list OAuth clients for the Things Cloud MCP server."""

    async def run() -> None:
        if list_only:
            if not database_url:
                raise click.UsageError("--database-url (or DATABASE_URL) is required to list clients")
            print("📋 Listing registered OAuth clients...")
            clients = await list_oauth_clients(database_url)
            if not clients:
                print("No OAuth clients found.")
            for i, client in enumerate(clients, 1):
                print(f"\n{i}. {client['client_name']}")
                print(f"   Client ID: {client['client_id']}")
                print(f"   Redirect URIs: {client['redirect_uris']}")
            return

        if not redirect_uris:
            raise click.UsageError("At least one --redirect-uri is required")

        print(f"🔑 Registering OAuth client '{client_name}' at {server_url}...")
        client_info = await register_oauth_client(server_url, client_name, list(redirect_uris))
        print("✅ OAuth client registered successfully!")
        print(f"Client ID: {client_info['client_id']}")
        print(f"Redirect URIs: {json.dumps(client_info['redirect_uris'], indent=2)}")

    try:
        asyncio.run(run())
    except aiohttp.ClientError as e:
        print(f"❌ Could not reach {server_url}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
