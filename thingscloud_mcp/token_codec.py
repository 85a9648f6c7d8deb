"""
Signed access tokens for the Things Cloud MCP authorization server.

Access tokens are compact HS256 JWTs carrying ``sub`` (the Things Cloud
account email), ``iss``, ``iat``, ``exp`` and ``scope``. They are never stored:
a token is valid exactly when its signature checks out and it has not expired.
"""

import logging
import time
from typing import Any

import jwt

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class InvalidTokenError(Exception):
    """Raised for any token that fails verification.

    Malformed tokens, bad signatures and expired tokens all raise this same
    error with the same message so callers cannot tell the cases apart.
    """

    def __init__(self) -> None:
        super().__init__("invalid token")


class TokenSigningError(Exception):
    """Raised when a set of claims cannot be signed."""


class TokenCodec:
    """Sign and verify access tokens with a shared secret."""

    def __init__(self, secret: str | bytes, algorithm: str = ALGORITHM):
        if not secret:
            raise ValueError("A non-empty token secret is required")
        self._secret = secret
        self.algorithm = algorithm

    def sign(self, claims: dict[str, Any]) -> str:
        """Encode and sign ``claims`` as ``header.payload.signature``."""
        try:
            return jwt.encode(claims, self._secret, algorithm=self.algorithm)
        except (TypeError, ValueError, jwt.PyJWTError) as e:
            raise TokenSigningError(f"Could not sign token: {e}") from e

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid, unexpired token.

        Raises:
            InvalidTokenError: For every kind of failure.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp"], "verify_aud": False},
            )
        except jwt.PyJWTError as e:
            logger.debug(f"Token verification failed: {type(e).__name__}")
            raise InvalidTokenError() from None
        return claims

    def issue_access_token(
        self,
        subject: str,
        issuer: str,
        scope: str,
        ttl: int,
        now: float | None = None,
    ) -> str:
        """Sign an access token for ``subject`` valid for ``ttl`` seconds."""
        issued_at = int(now if now is not None else time.time())
        return self.sign(
            {
                "sub": subject,
                "iss": issuer,
                "iat": issued_at,
                "exp": issued_at + ttl,
                "scope": scope,
            }
        )
