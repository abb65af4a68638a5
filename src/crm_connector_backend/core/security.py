from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .logging import get_logger

logger = get_logger(__name__)


# PUBLIC_INTERFACE
def get_fernet(raw_key: str) -> Fernet:
    """Return a Fernet instance derived from the configured ENCRYPTION_KEY.

    The key may be any string; we KDF it into a Fernet key using SHA-256
    (not ideal KDF but acceptable here as a simple derivation).
    """
    # Derive 32 bytes from raw key and base64-url encode as Fernet expects
    digest = hashlib.sha256(raw_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


class SecretBox:
    """Encrypts and decrypts token strings for storage at rest."""

    def __init__(self, raw_key: str):
        self._fernet = get_fernet(raw_key)

    # PUBLIC_INTERFACE
    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a secret string with Fernet; returns token in urlsafe base64."""
        if plaintext is None:
            return None
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    # PUBLIC_INTERFACE
    def decrypt(self, token: Optional[str]) -> Optional[str]:
        """Decrypt a token; returns plaintext or None if input is None or unreadable."""
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except (InvalidToken, ValueError):
            # Do not leak the token content in logs
            logger.warning("Failed to decrypt stored secret; treating as missing.")
            return None
