#!/usr/bin/env python3
"""
Script to inspect the OAuth state kept in the PostgreSQL store.

Prints registered clients and counts of live and expired authorization
codes, refresh tokens and credential entries. Secrets are never printed.
"""

import json
import os
import sys
import time

import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.environ.get("DATABASE_URL")

TABLES = ("mcp_authorization_codes", "mcp_refresh_tokens", "mcp_credentials")


def main() -> int:
    """Print a summary of the OAuth tables."""
    if not DATABASE_URL:
        print("Error: DATABASE_URL is not set")
        return 1

    connection = None
    try:
        connection = psycopg2.connect(DATABASE_URL)
        cursor = connection.cursor()

        cursor.execute(
            "SELECT client_id, client_name, redirect_uris, created_at "
            "FROM mcp_oauth_clients ORDER BY created_at"
        )
        clients = cursor.fetchall()

        print(f"\nRegistered clients: {len(clients)}")
        print("=" * 40)
        for client_id, client_name, redirect_uris, created_at in clients:
            created = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(created_at))
            print(f"{client_name} ({client_id}) registered {created}")
            for uri in json.loads(redirect_uris):
                print(f"    -> {uri}")

        now = time.time()
        print("\nRecords (live / expired):")
        print("-" * 20)
        for table in TABLES:
            cursor.execute(
                f"SELECT COUNT(*) FILTER (WHERE expires_at IS NULL OR expires_at >= %s), "  # noqa: S608
                f"COUNT(*) FILTER (WHERE expires_at < %s) FROM {table}",
                (now, now),
            )
            live, expired = cursor.fetchone()
            print(f"{table}: {live} / {expired}")

        return 0

    except psycopg2.Error as e:
        print(f"Database error: {e}")
        return 1
    finally:
        if connection:
            connection.close()


if __name__ == "__main__":
    sys.exit(main())
