"""Things Cloud MCP Server Package.

OAuth-protected MCP server that bridges bearer tokens to Things Cloud
email/password accounts.
"""

from thingscloud_mcp.backend import ThingsCloudClient, ThingsSession
from thingscloud_mcp.oauth_provider import OAuthError, ThingsOAuthProvider, ThingsOAuthSettings
from thingscloud_mcp.session_cache import SessionCache

__all__ = [
    "OAuthError",
    "SessionCache",
    "ThingsCloudClient",
    "ThingsOAuthProvider",
    "ThingsOAuthSettings",
    "ThingsSession",
]

__version__ = "0.1.0"
