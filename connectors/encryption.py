"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
Keys are loaded from ``config.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``).  Several comma-separated keys may be
given to rotate: the first one encrypts, every one of them can decrypt.

There is no plaintext fallback: without a key every encrypt/decrypt call
raises ``ConfigurationError``.  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from config.settings import config
from connectors.errors import ConfigurationError

logger = logging.getLogger(__name__)


class TokenCipher:
    """Symmetric cipher for token columns."""

    def __init__(self, keys: str | List[str]) -> None:
        if isinstance(keys, str):
            keys = [k.strip() for k in keys.split(",") if k.strip()]
        if not keys:
            raise ConfigurationError(
                "TOKEN_ENCRYPTION_KEY is not set. Generate a key: "
                "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        try:
            self._fernet = MultiFernet([Fernet(k.encode()) for k in keys])
        except ValueError as exc:
            raise ConfigurationError(f"TOKEN_ENCRYPTION_KEY is not a valid Fernet key: {exc}") from exc

    def encrypt(self, plaintext: str) -> str:
        """Return the Fernet ciphertext (URL-safe base64)."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise ConfigurationError(
                "Stored token could not be decrypted; check TOKEN_ENCRYPTION_KEY"
            ) from exc


_default_cipher: Optional[TokenCipher] = None


def get_cipher() -> TokenCipher:
    """Lazy-initialise the process-wide cipher once."""
    global _default_cipher
    if _default_cipher is None:
        _default_cipher = TokenCipher(config.token_encryption_key)
        logger.info("Token encryption enabled (Fernet/AES-128-CBC)")
    return _default_cipher
