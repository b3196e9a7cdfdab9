"""
SQLAlchemy ORM models for channels, OAuth state and the refresh audit trail.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, relationship

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_BigId = BigInteger().with_variant(Integer, "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    EXPIRED = "expired"
    ERROR = "error"
    REVOKED = "revoked"


class RefreshOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


class OAuthState(Base):
    __tablename__ = "oauth_states"

    id = Column(_BigId, primary_key=True, autoincrement=True)
    state_token = Column(String(64), unique=True, nullable=False)
    workspace_id = Column(Uuid(as_uuid=True), nullable=False)
    user_id = Column(Uuid(as_uuid=True), nullable=False)
    provider = Column(String(32), nullable=False)
    redirect_url = Column(Text)
    code_verifier = Column(String(128))
    additional_data = Column(JSON)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("oauth_expires_idx", "expires_at"),
    )


class Channel(Base):
    __tablename__ = "channels"

    id = Column(_BigId, primary_key=True, autoincrement=True)
    workspace_id = Column(Uuid(as_uuid=True), nullable=False)
    provider = Column(String(32), nullable=False)
    account_type = Column(String(32), nullable=False)
    platform_account_id = Column(String(255), nullable=False)

    account_name = Column(String(255), nullable=False)
    username = Column(String(255))
    profile_picture_url = Column(Text)

    # Encrypted at the application layer
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    token_scope = Column(Text)

    permissions = Column(JSON, default=list)
    capabilities = Column(JSON)

    is_active = Column(Boolean, nullable=False, default=True)
    connection_status = Column(String(16), nullable=False, default=ConnectionStatus.CONNECTED.value)
    consecutive_errors = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    last_error_at = Column(DateTime(timezone=True))
    last_refreshed_at = Column(DateTime(timezone=True))

    metadata_ = Column("metadata", JSON, default=dict)
    connected_by_user_id = Column(Uuid(as_uuid=True), nullable=False)
    display_order = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    refresh_logs = relationship(
        "TokenRefreshLog",
        back_populates="channel",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", "platform_account_id", name="unique_platform_account"),
        Index("channels_workspace_idx", "workspace_id"),
        Index("channels_status_idx", "connection_status"),
    )


class TokenRefreshLog(Base):
    __tablename__ = "token_refresh_logs"

    id = Column(_BigId, primary_key=True, autoincrement=True)
    channel_id = Column(_BigId, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(16), nullable=False)
    error_message = Column(Text)
    error_code = Column(String(50))
    old_expires_at = Column(DateTime(timezone=True))
    new_expires_at = Column(DateTime(timezone=True))
    request_duration_ms = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    channel = relationship("Channel", back_populates="refresh_logs")

    __table_args__ = (
        Index("token_refresh_channel_idx", "channel_id"),
        Index("token_refresh_created_idx", "created_at"),
    )


class PlatformCredential(Base):
    __tablename__ = "platform_credentials"

    id = Column(_BigId, primary_key=True, autoincrement=True)
    provider = Column(String(32), unique=True, nullable=False)
    client_id = Column(Text, nullable=False)
    client_secret = Column(Text, nullable=False)  # Fernet-encrypted
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)