"""
Channel API routes — providers, OAuth initiate/callback, channel listing,
stats, refresh history and disconnect.

Route prefix: /api/v1/channels
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import db_session, require_workspace
from auth.tokens import Principal
from config.settings import config
from connectors.errors import ConnectorError
from connectors.schemas import (
    AuthorizationRequest,
    ChannelOut,
    ChannelStats,
    InitiateOAuthRequest,
    RefreshLogOut,
)
from connectors.vault import CredentialVault, get_vault, to_channel_out
from database.helpers import as_utc
from database.models import ConnectionStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["channels"])


def vault_dependency() -> CredentialVault:
    return get_vault()


# ── Providers & OAuth ──────────────────────────────────────────────────


@router.get("/providers")
async def list_providers(vault: CredentialVault = Depends(vault_dependency)) -> List[Dict[str, Any]]:
    """
    List supported providers and whether app credentials are configured.
    No auth required — used by the frontend to render the connect menu.
    """
    return vault.coordinator.registry.list_providers()


@router.post("/workspaces/{workspace_id}/oauth/initiate", response_model=AuthorizationRequest)
async def initiate_oauth(
    workspace_id: str,
    body: InitiateOAuthRequest,
    principal: Principal = Depends(require_workspace),
    vault: CredentialVault = Depends(vault_dependency),
) -> AuthorizationRequest:
    """
    Start connecting a channel.

    The frontend should send the user to ``authorization_url``.
    """
    return await vault.coordinator.initiate(
        workspace_id,
        principal.user_id,
        body.provider,
        redirect_url=body.redirect_url,
        extra=body.additional_data,
    )


@router.get("/oauth/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    vault: CredentialVault = Depends(vault_dependency),
) -> RedirectResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Redeems the state, exchanges the code, reads the account profile and
    stores the channel, then redirects back to the frontend with a
    ``success`` or ``error`` query parameter.
    """
    if error:
        logger.warning("Provider %s denied authorization: %s %s", provider, error, error_description or "")
        return _redirect(None, {"error": error_description or error, "provider": provider})
    if not code or not state:
        return _redirect(None, {"error": "missing_code_or_state", "provider": provider})

    coordinator = vault.coordinator
    redirect_url: Optional[str] = None
    try:
        # 1. Redeem state → workspace / user / PKCE verifier
        oauth_state = await coordinator.validate_and_consume(state)
        redirect_url = oauth_state.redirect_url
        if oauth_state.provider != provider:
            logger.error("Callback provider %s does not match state provider %s", provider, oauth_state.provider)
            return _redirect(redirect_url, {"error": "provider_mismatch", "provider": provider})

        # 2. Exchange code for tokens
        tokens = await coordinator.exchange_code_for_tokens(provider, code, oauth_state.code_verifier)

        # 3. Identify the connected account
        profile = await coordinator.fetch_account_profile(provider, tokens.access_token)

        # 4. Store connection
        channel, created = await vault.connect_account(
            oauth_state.workspace_id,
            oauth_state.user_id,
            provider,
            profile,
            tokens,
            metadata=oauth_state.additional_data,
        )
    except ConnectorError as exc:
        logger.error("OAuth callback failed for %s: %s", provider, exc.message)
        return _redirect(redirect_url, {"error": exc.code, "provider": provider})

    return _redirect(
        redirect_url,
        {
            "success": "true",
            "provider": provider,
            "channel_id": str(channel.id),
            "created": "true" if created else "false",
        },
    )


# ── Channels ───────────────────────────────────────────────────────────


@router.get("/workspaces/{workspace_id}/channels", response_model=List[ChannelOut])
async def list_channels(
    workspace_id: str,
    provider: Optional[str] = Query(None),
    status: Optional[ConnectionStatus] = Query(None),
    principal: Principal = Depends(require_workspace),
    session: AsyncSession = Depends(db_session),
    vault: CredentialVault = Depends(vault_dependency),
) -> List[ChannelOut]:
    channels = await vault.list_channels(workspace_id, provider=provider, status=status, db_session=session)
    return [to_channel_out(ch) for ch in channels]


@router.get("/workspaces/{workspace_id}/stats", response_model=ChannelStats)
async def channel_stats(
    workspace_id: str,
    principal: Principal = Depends(require_workspace),
    session: AsyncSession = Depends(db_session),
    vault: CredentialVault = Depends(vault_dependency),
) -> ChannelStats:
    return await vault.channel_stats(workspace_id, db_session=session)


@router.get(
    "/workspaces/{workspace_id}/channels/{channel_id}/refresh-logs",
    response_model=List[RefreshLogOut],
)
async def refresh_logs(
    workspace_id: str,
    channel_id: int,
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(require_workspace),
    session: AsyncSession = Depends(db_session),
    vault: CredentialVault = Depends(vault_dependency),
) -> List[RefreshLogOut]:
    """Most recent refresh attempts for one channel, newest first."""
    await vault.get_channel(channel_id, workspace_id, db_session=session)
    entries = await vault.audit_log.list_for_channel(channel_id, limit=limit, db_session=session)
    return [
        RefreshLogOut(
            id=entry.id,
            channel_id=entry.channel_id,
            status=entry.status,
            error_message=entry.error_message,
            error_code=entry.error_code,
            old_expires_at=as_utc(entry.old_expires_at),
            new_expires_at=as_utc(entry.new_expires_at),
            request_duration_ms=entry.request_duration_ms,
            created_at=as_utc(entry.created_at),
        )
        for entry in entries
    ]


@router.delete("/workspaces/{workspace_id}/channels/{channel_id}")
async def delete_channel(
    workspace_id: str,
    channel_id: int,
    principal: Principal = Depends(require_workspace),
    session: AsyncSession = Depends(db_session),
    vault: CredentialVault = Depends(vault_dependency),
) -> Dict[str, Any]:
    """Disconnect a channel."""
    await vault.disconnect(channel_id, workspace_id, db_session=session)
    return {"status": "disconnected", "channel_id": channel_id}


# ── Redirect helper ────────────────────────────────────────────────────


def _redirect(redirect_url: Optional[str], params: Dict[str, str]) -> RedirectResponse:
    target = redirect_url or f"{config.frontend_url.rstrip('/')}/channels"
    separator = "&" if "?" in target else "?"
    return RedirectResponse(url=f"{target}{separator}{urlencode(params)}", status_code=302)
