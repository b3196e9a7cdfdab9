"""
Database helper functions shared by the connector services.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional


def to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a timestamp read from the database to an aware UTC datetime.

    Some drivers (SQLite) hand back naive values even for
    ``DateTime(timezone=True)`` columns; those are stored as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
