"""
Pydantic schemas for the connector flow and the channel API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth flow
# ═══════════════════════════════════════════════════════════════════════════════


class AuthorizationRequest(BaseModel):
    """Result of starting an OAuth flow."""

    authorization_url: str
    state: str
    expires_at: datetime


class OAuthStateData(BaseModel):
    """A redeemed state record, detached from the session."""

    workspace_id: str
    user_id: str
    provider: str
    code_verifier: Optional[str] = None
    redirect_url: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None
    expires_at: datetime
    used_at: Optional[datetime] = None


class TokenSet(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"TokenSet(token_type={self.token_type!r}, expires_in={self.expires_in!r}, "
            f"has_refresh_token={self.refresh_token is not None})"
        )


class AccountProfile(BaseModel):
    """Identity of the connected platform account."""

    platform_account_id: str
    account_name: str
    username: Optional[str] = None
    profile_picture_url: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# Channel API
# ═══════════════════════════════════════════════════════════════════════════════


class InitiateOAuthRequest(BaseModel):
    provider: str
    redirect_url: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None


class ChannelOut(BaseModel):
    """Channel as returned to clients — never carries tokens."""

    id: int
    workspace_id: str
    provider: str
    account_type: str
    platform_account_id: str
    account_name: str
    username: Optional[str] = None
    profile_picture_url: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    capabilities: Optional[Dict[str, Any]] = None
    is_active: bool
    connection_status: str
    consecutive_errors: int
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    is_token_expired: bool
    display_order: int
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ChannelStats(BaseModel):
    total_channels: int = 0
    active_channels: int = 0
    expired_channels: int = 0
    error_channels: int = 0
    by_provider: Dict[str, int] = Field(default_factory=dict)


class RefreshLogOut(BaseModel):
    id: int
    channel_id: int
    status: str
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    old_expires_at: Optional[datetime] = None
    new_expires_at: Optional[datetime] = None
    request_duration_ms: Optional[int] = None
    created_at: datetime
