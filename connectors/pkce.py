"""
Random tokens for the OAuth flow: CSRF state and PKCE (RFC 7636) pairs.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

STATE_TOKEN_BYTES = 32


def generate_state_token(nbytes: int = STATE_TOKEN_BYTES) -> str:
    """Hex-encoded random state token (64 characters by default)."""
    return secrets.token_hex(nbytes)


def generate_code_verifier() -> str:
    """43-character base64url verifier from 32 random bytes."""
    return secrets.token_urlsafe(32)


def code_challenge_s256(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def mask(value: str | None) -> str:
    """Show the first and last four characters of a secret for log lines."""
    if not value or len(value) < 12:
        return "***"
    return f"{value[:4]}...{value[-4:]}"
