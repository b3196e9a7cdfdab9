"""
FastAPI dependencies for authentication.

Provides ``db_session``, ``get_current_principal`` and ``require_workspace``
used across the channel routes.
"""

from __future__ import annotations

import uuid
from typing import AsyncGenerator

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from auth.tokens import Principal, verify_token
from connectors.errors import InvalidIdentifier, WorkspaceAccessDenied
from database.session import get_db_session

_bearer_scheme = HTTPBearer()


async def db_session(
    session: AsyncSession = Depends(get_db_session),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session for route handlers."""
    yield session


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> Principal:
    """Extract and verify the Bearer token."""
    return verify_token(credentials.credentials)


def _check_uuid(kind: str, value: str) -> None:
    try:
        uuid.UUID(value)
    except ValueError as exc:
        raise InvalidIdentifier(kind, value) from exc


async def require_workspace(
    workspace_id: str,
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """Reject callers whose token does not cover the ``workspace_id`` path parameter."""
    _check_uuid("workspace", workspace_id)
    _check_uuid("user", principal.user_id)
    if not principal.can_access(workspace_id):
        raise WorkspaceAccessDenied(workspace_id)
    return principal
