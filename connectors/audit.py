"""
RefreshAuditLog — append-only record of every token refresh attempt.

Rows are inserted and read, never updated or deleted by the service; they
are the trail for diagnosing connections that keep flapping.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import RefreshOutcome, TokenRefreshLog
from database.session import async_session_factory

logger = logging.getLogger(__name__)


class RefreshAuditLog:
    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None) -> None:
        self._session_factory = session_factory or async_session_factory

    async def record(
        self,
        session: AsyncSession,
        channel_id: int,
        outcome: RefreshOutcome,
        *,
        old_expires_at: Optional[datetime] = None,
        new_expires_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> TokenRefreshLog:
        """
        Append one entry inside the caller's transaction.

        The entry commits together with the channel update it describes.
        """
        entry = TokenRefreshLog(
            channel_id=channel_id,
            status=outcome.value,
            old_expires_at=old_expires_at,
            new_expires_at=new_expires_at,
            error_message=error_message,
            error_code=error_code,
            request_duration_ms=duration_ms,
        )
        session.add(entry)
        await session.flush()
        logger.debug("Refresh log: channel=%s outcome=%s", channel_id, outcome.value)
        return entry

    async def list_for_channel(
        self,
        channel_id: int,
        *,
        limit: int = 50,
        db_session: Optional[AsyncSession] = None,
    ) -> List[TokenRefreshLog]:
        """Newest entries first."""
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            result = await session.execute(
                select(TokenRefreshLog)
                .where(TokenRefreshLog.channel_id == channel_id)
                .order_by(TokenRefreshLog.created_at.desc(), TokenRefreshLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
        finally:
            if own_session:
                await session.close()
