import asyncio
import base64
import binascii
import json
import logging
import os
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

import click
from dotenv import load_dotenv
from mcp.server.fastmcp import Context, FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.requests import Request
from starlette.responses import Response
from uvicorn import Config, Server

from .auth_server import create_auth_routes, get_base_url
from .backend import (
    BackendAuthError,
    BackendError,
    ThingsCloudClient,
    ThingsSession,
    ThingsState,
)
from .oauth_provider import BearerResolutionError, ThingsOAuthProvider, ThingsOAuthSettings
from .session_cache import SessionCache
from .token_storage import TokenStorage

logger = logging.getLogger(__name__)

load_dotenv()

MCP_PATH = "/mcp"

INSTRUCTIONS = (
    "Things Cloud MCP server for reading Things 3 tasks, areas and tags. "
    "Use list_tasks with filters (status, area, project) to find tasks. "
    "Use sync to pull the latest changes from Things Cloud."
)


class AuthenticationRequired(Exception):
    """Raised when a tool call carries no usable credentials."""


def parse_basic_credentials(encoded: str) -> tuple[str, str]:
    """Decode the payload of an ``Authorization: Basic`` header."""
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise AuthenticationRequired("invalid Basic credentials") from None
    email, sep, password = decoded.partition(":")
    if not sep or not email or not password:
        raise AuthenticationRequired("invalid credentials")
    return email, password


async def extract_credentials(
    authorization: str | None, provider: ThingsOAuthProvider | None
) -> tuple[str, str]:
    """
    Turn an Authorization header into Things Cloud credentials.

    Basic headers carry the email/password directly; Bearer tokens are
    resolved through the OAuth provider's credential bridge.

    Raises:
        AuthenticationRequired: If no identity can be resolved.
    """
    if not authorization:
        raise AuthenticationRequired(
            "authentication required: provide Authorization header (Basic or Bearer)"
        )

    scheme, _, value = authorization.partition(" ")
    value = value.strip()
    if scheme.lower() == "bearer":
        if provider is None:
            raise AuthenticationRequired("Bearer token authentication not configured")
        try:
            return await provider.resolve_bearer(value)
        except BearerResolutionError as e:
            raise AuthenticationRequired(f"Bearer auth failed: {e}") from None
    if scheme.lower() == "basic":
        return parse_basic_credentials(value)
    raise AuthenticationRequired("unsupported Authorization scheme")


class NormalizePathMiddleware:
    """ASGI middleware to normalize paths so /mcp and /mcp/ work identically.

    Strips trailing slashes from all paths (except root) before routing.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> Any:
        if scope["type"] == "http":
            path = scope.get("path", "/")
            # Normalize: strip trailing slash if path is not just "/"
            if path != "/" and path.endswith("/"):
                scope = dict(scope)
                scope["path"] = path.rstrip("/")
        await self.app(scope, receive, send)


class BearerChallengeMiddleware:
    """ASGI middleware answering unauthenticated MCP requests with a 401.

    The ``WWW-Authenticate`` header points clients at the protected resource
    metadata so they can discover the authorization server. Requests that
    carry any Authorization header are passed through; their credentials are
    checked when a tool runs.
    """

    def __init__(self, app: Any, path: str = MCP_PATH, server_url: str | None = None) -> None:
        self.app = app
        self.path = path
        self.server_url = server_url

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> Any:
        if scope["type"] == "http" and scope.get("path") == self.path:
            request = Request(scope)
            if not request.headers.get("authorization"):
                base = get_base_url(request, self.server_url)
                response = Response(
                    status_code=401,
                    headers={
                        "WWW-Authenticate": (
                            f'Bearer resource_metadata="{base}/.well-known/oauth-protected-resource"'
                        )
                    },
                )
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


def create_logging_middleware(app: Any) -> Callable[[dict[str, Any], Any, Any], Any]:
    """Create ASGI middleware logging each request and its response status.

    Uses raw ASGI interface to avoid interfering with request body or streaming.
    """

    async def middleware(scope: dict[str, Any], receive: Any, send: Any) -> Any:
        if scope["type"] != "http":
            await app(scope, receive, send)
            return

        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "/")
        headers = {k.decode(): v.decode() for k, v in scope.get("headers", [])}
        auth = headers.get("authorization")
        # Mask authorization header value for security
        auth_scheme = f"{auth.partition(' ')[0]} ***" if auth else "NOT SET"
        logger.debug(
            f"=== Incoming Request: {method} {path} === "
            f"Authorization: {auth_scheme}, Mcp-Session-Id: {headers.get('mcp-session-id', 'NOT SET')}"
        )

        async def send_wrapper(message: dict[str, Any]) -> Any:
            if message["type"] == "http.response.start":
                status = message.get("status")
                if status is not None and status >= 400:
                    logger.warning(f"=== Response: {status} for {method} {path} ===")
                else:
                    logger.debug(f"=== Response: {status} for {method} {path} ===")
            await send(message)

        await app(scope, receive, send_wrapper)

    return middleware


def task_summary(uuid: str, task: dict[str, Any], state: ThingsState) -> dict[str, Any]:
    """Shape a raw task payload for tool output."""
    status = {3: "completed", 2: "canceled"}.get(task.get("ss"), "pending")
    areas = [
        {"uuid": a, "name": state.areas.get(a, {}).get("tt", "")}
        for a in task.get("ar") or []
    ]
    tags = [
        {"uuid": t, "name": state.tags.get(t, {}).get("tt", "")}
        for t in task.get("tg") or []
    ]
    summary: dict[str, Any] = {
        "uuid": uuid,
        "title": task.get("tt", ""),
        "status": status,
        "is_project": task.get("tp") == 1,
    }
    if task.get("nt"):
        note = task["nt"]
        summary["note"] = note.get("v", "") if isinstance(note, dict) else note
    if areas:
        summary["areas"] = areas
    if task.get("pr"):
        summary["project"] = task["pr"][0]
    if tags:
        summary["tags"] = tags
    return summary


def select_tasks(
    state: ThingsState,
    status: str | None = None,
    area: str | None = None,
    project: str | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Filter tasks by status, area and project. Areas and projects match by UUID or title."""
    wanted = (status or "pending").lower()
    area_ids = None
    if area:
        area_ids = {uuid for uuid, a in state.areas.items() if area in (uuid, a.get("tt"))}
    project_ids = None
    if project:
        project_ids = {
            uuid
            for uuid, t in state.tasks.items()
            if t.get("tp") == 1 and project in (uuid, t.get("tt"))
        }

    result = []
    for uuid, task in state.tasks.items():
        # Trashed
        if task.get("tr"):
            continue
        summary = task_summary(uuid, task, state)
        if wanted != "all" and summary["status"] != wanted:
            continue
        if area_ids is not None and not area_ids.intersection(task.get("ar") or []):
            continue
        if project_ids is not None and not project_ids.intersection(task.get("pr") or []):
            continue
        result.append(summary)
        if limit is not None and len(result) >= limit:
            break
    return result


def create_resource_server(
    provider: ThingsOAuthProvider,
    session_cache: SessionCache,
    port: int,
    server_url: str | None = None,
) -> FastMCP:
    """
    Create the MCP server with its OAuth endpoints and protected tools.

    Args:
        provider: OAuth provider used for the authorization endpoints and
            for resolving bearer tokens on tool calls
        session_cache: Cache of hydrated Things Cloud sessions per account
        port: Port to listen on
        server_url: Public URL of this server, if known
    """
    if server_url:
        # Configure transport_security to allow requests from the public hostname
        transport_security = TransportSecuritySettings(
            allowed_hosts=[urlparse(server_url).netloc],
        )
    else:
        transport_security = TransportSecuritySettings(enable_dns_rebinding_protection=False)

    app = FastMCP(
        name="Things Cloud MCP",
        instructions=INSTRUCTIONS,
        host="0.0.0.0",  # noqa: S104
        port=port,
        stateless_http=True,
        streamable_http_path=MCP_PATH,
        transport_security=transport_security,
    )

    for route in create_auth_routes(provider, server_url):
        app.custom_route(route.path, methods=sorted(route.methods or []))(route.endpoint)

    async def get_session(ctx: Context) -> ThingsSession:
        request = ctx.request_context.request
        authorization = request.headers.get("authorization") if request is not None else None
        email, password = await extract_credentials(authorization, provider)
        return await session_cache.get_or_create(email, password)

    def error_result(e: Exception) -> str:
        if isinstance(e, AuthenticationRequired | BackendAuthError):
            return json.dumps({"error": f"unauthenticated: {e}"})
        return json.dumps({"error": str(e)})

    @app.tool()
    async def list_tasks(
        ctx: Context,
        status: str | None = None,
        area: str | None = None,
        project: str | None = None,
        limit: int | None = None,
    ) -> str:
        """
        List tasks with optional filters.

        Args:
            status: One of "pending", "completed", "canceled" or "all" (default: pending)
            area: Area name or UUID
            project: Project name or UUID
            limit: Maximum number of tasks to return

        Returns:
            JSON object with a "tasks" array
        """
        logger.info(f"=== list_tasks called: status={status}, area={area}, project={project} ===")
        try:
            session = await get_session(ctx)
            result = select_tasks(session.state, status, area, project, limit)
            logger.info(f"Returning {len(result)} tasks")
            return json.dumps({"tasks": result})
        except (AuthenticationRequired, BackendError) as e:
            logger.warning(f"list_tasks failed: {e}")
            return error_result(e)

    @app.tool()
    async def list_areas(ctx: Context) -> str:
        """List all areas as a JSON object with an "areas" array of uuid/name pairs."""
        try:
            session = await get_session(ctx)
        except (AuthenticationRequired, BackendError) as e:
            return error_result(e)
        areas = [{"uuid": u, "name": a.get("tt", "")} for u, a in session.state.areas.items()]
        return json.dumps({"areas": areas})

    @app.tool()
    async def list_tags(ctx: Context) -> str:
        """List all tags as a JSON object with a "tags" array of uuid/name pairs."""
        try:
            session = await get_session(ctx)
        except (AuthenticationRequired, BackendError) as e:
            return error_result(e)
        tags = [{"uuid": u, "name": t.get("tt", "")} for u, t in session.state.tags.items()]
        return json.dumps({"tags": tags})

    @app.tool()
    async def sync(ctx: Context) -> str:
        """Pull changes made on other devices since the last sync."""
        try:
            session = await get_session(ctx)
            applied = await session.sync()
        except (AuthenticationRequired, BackendError) as e:
            logger.warning(f"sync failed: {e}")
            return error_result(e)
        return json.dumps({"applied": applied, "server_index": session.server_index})

    @app.tool()
    async def account_status(ctx: Context) -> str:
        """Report the selected history, its server index and item counts."""
        try:
            session = await get_session(ctx)
        except (AuthenticationRequired, BackendError) as e:
            return error_result(e)
        return json.dumps(
            {
                "history_id": session.history_id,
                "server_index": session.server_index,
                "counts": session.state.counts(),
            }
        )

    return app


def build_asgi_app(mcp_server: FastMCP, server_url: str | None = None) -> Any:
    """Wrap the MCP Starlette app with the 401 challenge, logging and path middleware."""
    starlette_app = mcp_server.streamable_http_app()
    app = create_logging_middleware(starlette_app)
    app = BearerChallengeMiddleware(app, MCP_PATH, server_url)
    # Wrap app with middleware so /mcp and /mcp/ work identically
    return NormalizePathMiddleware(app)


async def run_server(
    port: int,
    server_url: str | None,
    settings: ThingsOAuthSettings,
    database_url: str | None = None,
) -> None:
    """Run the MCP server with the OAuth bridge."""
    # Initialize persistent token storage if a database is configured
    token_storage: TokenStorage | None = None

    if database_url:
        logger.info("Initializing database token storage...")
        token_storage = TokenStorage(database_url)
        await token_storage.initialize()
        cleaned = await token_storage.cleanup_expired()
        if cleaned > 0:
            logger.info(f"Cleaned up {cleaned} expired OAuth records on startup")
    else:
        logger.warning(
            "DATABASE_URL not configured - using in-memory token storage. "
            "Tokens will be lost on server restart!"
        )

    backend = ThingsCloudClient(settings.backend_url, timeout=settings.backend_timeout)
    if token_storage:
        provider = ThingsOAuthProvider(
            settings,
            backend,
            clients=token_storage.clients,
            codes=token_storage.codes,
            refresh_tokens=token_storage.refresh_tokens,
            credentials=token_storage.credentials,
        )
    else:
        provider = ThingsOAuthProvider(settings, backend)
    session_cache = SessionCache(backend, ttl=settings.session_ttl)

    mcp_server = create_resource_server(provider, session_cache, port, server_url)
    app = build_asgi_app(mcp_server, server_url)

    config = Config(
        app,
        host="0.0.0.0",  # noqa: S104
        port=port,
        log_level="info",
        proxy_headers=False,
    )
    server = Server(config)

    storage_type = "database" if token_storage else "in-memory"
    logger.info("=" * 60)
    logger.info(f"🚀 Things Cloud MCP server listening on port {port}")
    logger.info(f"📍 Public URL: {server_url or '(derived from requests)'}")
    logger.info(f"🔌 MCP endpoint: {MCP_PATH}")
    logger.info(f"💾 Token storage: {storage_type}")
    logger.info("=" * 60)

    try:
        await server.serve()
    finally:
        await backend.close()
        if token_storage:
            await token_storage.close()


@click.command()
@click.option("--port", default=lambda: int(os.environ.get("PORT", "8080")), help="Port to listen on")
@click.option(
    "--server-url",
    help="Public server URL (for OAuth metadata). Defaults to MCP_SERVER_URL or the request host",
)
@click.option(
    "--database-url",
    default=lambda: os.environ.get("DATABASE_URL"),
    help="PostgreSQL URL for durable OAuth state. In-memory when unset",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def main(
    port: int,
    server_url: str | None = None,
    database_url: str | None = None,
    log_level: str = "INFO",
) -> int:
    """
    Run the Things Cloud MCP server.

    Args:
        port: Port to bind the server to
        server_url: Public URL of this server (for OAuth metadata and issuer)
        database_url: PostgreSQL URL; in-memory stores are used when unset
        log_level: Root log level

    Returns:
        Exit code (0 for success, 1 for error)
    """
    # Configure logging with timestamps for all loggers including uvicorn
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    logging.basicConfig(level=log_level.upper(), format=log_format)

    # Also configure uvicorn loggers to use the same format
    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
        uv_logger = logging.getLogger(logger_name)
        uv_logger.handlers = []
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(log_format))
        uv_logger.addHandler(handler)

    if server_url is None:
        server_url = os.getenv("MCP_SERVER_URL")
    if server_url:
        # Issuer and metadata URLs must not end in a slash
        server_url = server_url.rstrip("/")

    try:
        settings = ThingsOAuthSettings()
        asyncio.run(run_server(port, server_url, settings, database_url))
        logger.info("Server stopped")
        return 0
    except Exception as e:
        logger.error(f"Server error: {e}")
        logger.exception("Exception details:")
        return 1


if __name__ == "__main__":
    main()
