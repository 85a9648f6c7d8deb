"""
OAuth 2.1 HTTP endpoints for the Things Cloud MCP server.

Routes:
    /.well-known/oauth-protected-resource[/mcp]     RFC 9728 metadata
    /.well-known/oauth-authorization-server[/mcp]   RFC 8414 metadata
    /register                                       RFC 7591 dynamic registration
    /authorize                                      GET login form, POST sign-in
    /token                                          authorization_code / refresh_token grants
"""

import html
import logging
from typing import Any

from mcp.server.auth.routes import cors_middleware
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from .oauth_provider import OAuthError, ThingsOAuthProvider
from .stores import OAuthClient

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

LOCAL_HOSTS = ("localhost", "127.0.0.1", "[::1]")


def get_base_url(request: Request, server_url: str | None = None) -> str:
    """Public base URL of this server, without a trailing slash.

    A configured ``server_url`` wins. Otherwise the scheme comes from
    ``X-Forwarded-Proto`` when a proxy sets it, else ``http`` for local hosts
    and ``https`` for everything else.
    """
    if server_url:
        return server_url.rstrip("/")
    host = request.headers.get("host") or request.url.netloc
    scheme = request.headers.get("x-forwarded-proto")
    if not scheme:
        scheme = "http" if host.startswith(LOCAL_HOSTS) else "https"
    return f"{scheme}://{host}"


def oauth_error_response(error: OAuthError) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.status_code, headers=NO_STORE_HEADERS)


def describe_validation_error(error: ValidationError) -> str:
    """First validation problem as ``field: message``."""
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


def registration_response(client: OAuthClient) -> dict[str, Any]:
    """RFC 7591 client information for a public client. No secret is issued."""
    info = OAuthClientInformationFull(
        client_id=client.client_id,
        client_id_issued_at=int(client.created_at),
        client_name=client.client_name,
        redirect_uris=client.redirect_uris,
        grant_types=client.grant_types,
        response_types=client.response_types,
        token_endpoint_auth_method="none",
    )
    return info.model_dump(mode="json", exclude_none=True)


LOGIN_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Sign In - Things Cloud MCP</title>
<style>
body{{margin:0;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",sans-serif;background:#F5F5F7;color:#1D1D1F}}
.auth-container{{min-height:100vh;display:flex;align-items:center;justify-content:center;padding:24px}}
.auth-card{{width:100%;max-width:380px;background:#fff;border:1px solid #E5E5EA;border-radius:12px;padding:40px 32px;box-shadow:0 2px 12px rgba(0,0,0,0.06)}}
.auth-title{{font-size:20px;font-weight:700;text-align:center;margin-bottom:6px}}
.auth-subtitle{{font-size:14px;color:#6E6E73;text-align:center;margin-bottom:28px}}
.auth-error{{background:#FFF2F2;color:#D70015;border:1px solid #FFD6D6;border-radius:8px;padding:10px 14px;font-size:13px;margin-bottom:20px}}
.auth-field{{margin-bottom:16px}}
.auth-field label{{display:block;font-size:13px;font-weight:600;margin-bottom:6px}}
.auth-field input{{width:100%;padding:10px 14px;font-size:15px;border:1px solid #E5E5EA;border-radius:8px;box-sizing:border-box}}
.auth-btn{{width:100%;padding:12px;font-size:15px;font-weight:600;color:#fff;background:#1A7CF9;border:none;border-radius:8px;cursor:pointer;margin-top:8px}}
</style>
</head>
<body>
<div class="auth-container">
  <div class="auth-card">
    <div class="auth-title">Sign in with Things Cloud</div>
    <div class="auth-subtitle">{subtitle}</div>
    {error}
    <form method="POST" action="/authorize?{query}">
      <div class="auth-field">
        <label for="email">Email</label>
        <input type="email" id="email" name="email" required autocomplete="email" autofocus>
      </div>
      <div class="auth-field">
        <label for="password">Password</label>
        <input type="password" id="password" name="password" required autocomplete="current-password">
      </div>
      <button type="submit" class="auth-btn">Authorize</button>
    </form>
  </div>
</div>
</body>
</html>"""


def render_login_page(client_name: str | None, error: str | None, query: str) -> HTMLResponse:
    """Render the sign-in form, carrying the original /authorize query forward."""
    if client_name:
        subtitle = f"<strong>{html.escape(client_name)}</strong> wants to access your tasks"
    else:
        subtitle = "Authorize access to your tasks"
    error_html = f'<div class="auth-error">{html.escape(error)}</div>' if error else ""
    page = LOGIN_PAGE.format(subtitle=subtitle, error=error_html, query=html.escape(query))
    return HTMLResponse(page, headers=NO_STORE_HEADERS)


def protected_resource_metadata(base: str, scope: str) -> dict[str, Any]:
    return {
        "resource": base,
        "authorization_servers": [base],
        "scopes_supported": [scope],
        "bearer_methods_supported": ["header"],
    }


def authorization_server_metadata(base: str, scope: str) -> dict[str, Any]:
    return {
        "issuer": base,
        "authorization_endpoint": f"{base}/authorize",
        "token_endpoint": f"{base}/token",
        "registration_endpoint": f"{base}/register",
        "scopes_supported": [scope],
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_methods_supported": ["none", "client_secret_basic"],
        "code_challenge_methods_supported": ["S256"],
    }


def create_auth_routes(provider: ThingsOAuthProvider, server_url: str | None = None) -> list[Route]:
    """Create the OAuth discovery, registration, authorization and token routes."""
    scope = provider.settings.scope

    async def protected_resource_handler(request: Request) -> JSONResponse:
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)"""
        base = get_base_url(request, server_url)
        return JSONResponse(protected_resource_metadata(base, scope))

    async def authorization_server_handler(request: Request) -> JSONResponse:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)"""
        base = get_base_url(request, server_url)
        return JSONResponse(authorization_server_metadata(base, scope))

    async def register_handler(request: Request) -> Response:
        """Dynamic Client Registration endpoint (RFC 7591)."""
        body = await request.body()
        try:
            metadata = OAuthClientMetadata.model_validate_json(body or b"{}")
        except ValidationError as e:
            description = describe_validation_error(e)
            logger.warning(f"Invalid registration request: {description}")
            return oauth_error_response(OAuthError("invalid_request", description))

        # Unset fields fall back to the provider's defaults, not the model's
        sent = metadata.model_fields_set
        try:
            client = await provider.register_client(
                client_name=metadata.client_name,
                redirect_uris=[str(uri) for uri in metadata.redirect_uris or []],
                grant_types=list(metadata.grant_types) if "grant_types" in sent else None,
                response_types=list(metadata.response_types) if "response_types" in sent else None,
            )
        except OAuthError as e:
            return oauth_error_response(e)

        return JSONResponse(registration_response(client), status_code=201, headers=NO_STORE_HEADERS)

    async def authorize_handler(request: Request) -> Response:
        """Authorization endpoint: GET renders the login form, POST signs in."""
        query = request.url.query
        params = request.query_params

        try:
            auth_request = await provider.validate_authorization_request(params)
        except OAuthError as e:
            # Never redirect errors: the redirect target may not be trustworthy
            logger.warning(f"Rejected authorization request: {e.description}")
            return render_login_page(None, e.description, query)

        client_name = auth_request.client.client_name
        if request.method == "GET":
            return render_login_page(client_name, None, query)

        form = await request.form()
        email = form.get("email")
        password = form.get("password")
        try:
            location = await provider.authorize(
                auth_request,
                email if isinstance(email, str) else "",
                password if isinstance(password, str) else "",
            )
        except OAuthError as e:
            return render_login_page(client_name, e.description, query)

        return RedirectResponse(url=location, status_code=302, headers=NO_STORE_HEADERS)

    async def token_handler(request: Request) -> Response:
        """Token endpoint for the authorization_code and refresh_token grants."""
        try:
            form = await request.form()
        except Exception as e:
            logger.warning(f"Invalid token request body: {e}")
            return oauth_error_response(OAuthError("invalid_request", "invalid form body"))

        def field(name: str) -> str:
            value = form.get(name)
            return value if isinstance(value, str) else ""

        grant_type = field("grant_type")
        issuer = get_base_url(request, server_url)
        try:
            if grant_type == "authorization_code":
                grant = await provider.exchange_authorization_code(
                    code=field("code"),
                    client_id=field("client_id"),
                    redirect_uri=field("redirect_uri"),
                    code_verifier=field("code_verifier"),
                    issuer=issuer,
                )
            elif grant_type == "refresh_token":
                grant = await provider.exchange_refresh_token(field("refresh_token"), issuer)
            else:
                raise OAuthError(
                    "unsupported_grant_type",
                    "grant_type must be authorization_code or refresh_token",
                )
        except OAuthError as e:
            return oauth_error_response(e)

        return JSONResponse(grant.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)

    routes = []
    for path in ("/.well-known/oauth-protected-resource", "/.well-known/oauth-protected-resource/mcp"):
        routes.append(
            Route(
                path,
                endpoint=cors_middleware(protected_resource_handler, ["GET", "OPTIONS"]),
                methods=["GET", "OPTIONS"],
            )
        )
    for path in (
        "/.well-known/oauth-authorization-server",
        "/.well-known/oauth-authorization-server/mcp",
    ):
        routes.append(
            Route(
                path,
                endpoint=cors_middleware(authorization_server_handler, ["GET", "OPTIONS"]),
                methods=["GET", "OPTIONS"],
            )
        )
    routes.append(
        Route(
            "/register",
            endpoint=cors_middleware(register_handler, ["POST", "OPTIONS"]),
            methods=["POST", "OPTIONS"],
        )
    )
    routes.append(Route("/authorize", endpoint=authorize_handler, methods=["GET", "POST"]))
    routes.append(
        Route(
            "/token",
            endpoint=cors_middleware(token_handler, ["POST", "OPTIONS"]),
            methods=["POST", "OPTIONS"],
        )
    )
    return routes
