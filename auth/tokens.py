"""
Bearer token creation and verification.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256 and carry
the user id plus the workspaces the user may act for.  Secret key is loaded
from ``config.jwt_secret`` (env var: ``JWT_SECRET``).
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode
from typing import Iterable, List

from fastapi import HTTPException, status
from pydantic import BaseModel, Field

from config.settings import config

_TOKEN_SECRET = config.jwt_secret
_TOKEN_EXPIRY_SECONDS = config.jwt_expiry_seconds


class Principal(BaseModel):
    user_id: str
    workspace_ids: List[str] = Field(default_factory=list)

    def can_access(self, workspace_id: str) -> bool:
        return str(workspace_id) in self.workspace_ids


def _sign(raw: bytes) -> str:
    return hmac.new(_TOKEN_SECRET.encode(), raw, hashlib.sha256).hexdigest()


def create_token(user_id: str, workspace_ids: Iterable[str] = ()) -> str:
    """Create a signed token for ``user_id`` scoped to ``workspace_ids``."""
    payload = {
        "user_id": str(user_id),
        "workspace_ids": [str(ws) for ws in workspace_ids],
        "exp": int(time.time()) + _TOKEN_EXPIRY_SECONDS,
    }
    raw = json.dumps(payload).encode()
    return b64encode(raw).decode() + "." + _sign(raw)


def verify_token(token: str) -> Principal:
    """
    Verify token and return the ``Principal`` it names.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        parts = token.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = b64decode(parts[0])
        if not hmac.compare_digest(parts[1], _sign(raw)):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        return Principal(user_id=payload["user_id"], workspace_ids=payload.get("workspace_ids", []))
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        ) from exc
