"""Encryption for Things Cloud passwords held by the authorization server."""

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class CredentialDecryptError(Exception):
    """Raised when a stored credential cannot be decrypted."""


class CredentialCipher:
    """Fernet wrapper used for every stored Things Cloud password.

    Authorization codes, refresh tokens and credential entries only ever hold
    the ciphertext produced here.
    """

    def __init__(self, key: str | bytes):
        self._fernet = Fernet(key)

    @classmethod
    def from_secret(cls, secret: str) -> "CredentialCipher":
        """Derive a Fernet key from an arbitrary secret string."""
        digest = hashlib.sha256(b"thingscloud-mcp/credentials:" + secret.encode()).digest()
        return cls(base64.urlsafe_b64encode(digest))

    @classmethod
    def generate(cls) -> "CredentialCipher":
        return cls(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.warning("Stored credential could not be decrypted (key changed?)")
            raise CredentialDecryptError("stored credential could not be decrypted") from None
