"""
CredentialVault — encrypted channel credentials and their health state.

Connection status state machine::

    connected ──refresh ok──────────────▶ connected   (counter reset)
    connected ──downstream failure──────▶ error       (counter + 1)
    error     ──counter reaches limit───▶ revoked     (terminal; new OAuth flow only)
    connected/error ──hard expiry and
                     refresh failed or
                     unavailable────────▶ expired

``get_decrypted_access_token`` is the single entry point content-API
wrappers use to obtain a usable token; refresh happens lazily there and is
single-flight per channel id.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import Settings, config
from connectors.audit import RefreshAuditLog
from connectors.encryption import TokenCipher, get_cipher
from connectors.errors import (
    ChannelNotFound,
    ConnectorError,
    DuplicateChannel,
    ReconnectRequired,
    TokenExpired,
)
from connectors.oauth_flow import OAuthFlowCoordinator
from connectors.registry import ProviderConfig, ProviderRegistry, get_registry
from connectors.schemas import AccountProfile, ChannelOut, ChannelStats, TokenSet
from database.helpers import as_utc, to_uuid, utcnow
from database.models import Channel, ConnectionStatus, RefreshOutcome
from database.session import async_session_factory

logger = logging.getLogger(__name__)


class CredentialVault:
    """Channel storage plus the on-demand refresh policy."""

    def __init__(
        self,
        coordinator: Optional[OAuthFlowCoordinator] = None,
        registry: Optional[ProviderRegistry] = None,
        cipher: Optional[TokenCipher] = None,
        audit_log: Optional[RefreshAuditLog] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or config
        self._session_factory = session_factory or async_session_factory
        self._registry = registry or get_registry()
        self._coordinator = coordinator or OAuthFlowCoordinator(
            registry=self._registry,
            session_factory=self._session_factory,
            settings=self._settings,
        )
        self._cipher = cipher
        self._audit = audit_log or RefreshAuditLog(self._session_factory)
        self.refresh_buffer = timedelta(seconds=self._settings.token_refresh_buffer_seconds)
        self.max_consecutive_errors = self._settings.max_consecutive_errors
        self._inflight: Dict[int, asyncio.Task] = {}

    @property
    def coordinator(self) -> OAuthFlowCoordinator:
        return self._coordinator

    @property
    def audit_log(self) -> RefreshAuditLog:
        return self._audit

    @property
    def cipher(self) -> TokenCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    # ── Channel creation ────────────────────────────────────────────────

    async def create_channel(
        self,
        workspace_id: str,
        user_id: str,
        provider_id: str,
        profile: AccountProfile,
        tokens: TokenSet,
        *,
        permissions: Optional[List[str]] = None,
        capabilities: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        db_session: Optional[AsyncSession] = None,
    ) -> Channel:
        """
        Store a newly connected account.

        Raises ``DuplicateChannel`` when the (workspace, provider, account)
        triple is already connected.
        """
        provider = self._registry.lookup(provider_id)
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            existing = await self._find_by_account(session, workspace_id, provider_id, profile.platform_account_id)
            if existing is not None:
                raise DuplicateChannel(provider_id)

            channel = await self._insert_channel(
                session, workspace_id, user_id, provider, profile, tokens,
                permissions=permissions, capabilities=capabilities, metadata=metadata,
            )
            if own_session:
                await session.commit()
            return channel
        except IntegrityError as exc:
            if own_session:
                await session.rollback()
            raise DuplicateChannel(provider_id) from exc
        except Exception:
            if own_session:
                await session.rollback()
            raise
        finally:
            if own_session:
                await session.close()

    async def connect_account(
        self,
        workspace_id: str,
        user_id: str,
        provider_id: str,
        profile: AccountProfile,
        tokens: TokenSet,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        db_session: Optional[AsyncSession] = None,
    ) -> Tuple[Channel, bool]:
        """
        Persist the outcome of a completed OAuth flow.

        A new account becomes a channel; an account that is already
        connected (including a revoked one) gets the fresh tokens and is
        reset to ``connected``.  Returns ``(channel, created)``.
        """
        provider = self._registry.lookup(provider_id)
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            try:
                channel, created = await self._store_account(
                    session, workspace_id, user_id, provider, profile, tokens, metadata
                )
                if own_session:
                    await session.commit()
            except IntegrityError as exc:
                # A concurrent callback inserted the same account first.
                if not own_session:
                    raise DuplicateChannel(provider_id) from exc
                await session.rollback()
                logger.info(
                    "Concurrent connect of %s account %s; updating the existing channel",
                    provider_id,
                    profile.platform_account_id,
                )
                channel, created = await self._store_account(
                    session, workspace_id, user_id, provider, profile, tokens, metadata
                )
                await session.commit()
        except IntegrityError as exc:
            if own_session:
                await session.rollback()
            raise DuplicateChannel(provider_id) from exc
        except Exception:
            if own_session:
                await session.rollback()
            raise
        finally:
            if own_session:
                await session.close()

        logger.info(
            "%s %s channel %s for workspace %s (%s)",
            "Created" if created else "Reconnected",
            provider_id,
            channel.id,
            workspace_id,
            profile.account_name,
        )
        return channel, created

    async def _store_account(
        self,
        session: AsyncSession,
        workspace_id: str,
        user_id: str,
        provider: ProviderConfig,
        profile: AccountProfile,
        tokens: TokenSet,
        metadata: Optional[Dict[str, Any]],
    ) -> Tuple[Channel, bool]:
        channel = await self._find_by_account(
            session, workspace_id, provider.provider_id, profile.platform_account_id
        )
        if channel is None:
            channel = await self._insert_channel(
                session, workspace_id, user_id, provider, profile, tokens, metadata=metadata,
            )
            return channel, True

        now = utcnow()
        self._apply_tokens(channel, tokens, now)
        channel.account_name = profile.account_name
        channel.username = profile.username or channel.username
        channel.profile_picture_url = profile.profile_picture_url or channel.profile_picture_url
        channel.connection_status = ConnectionStatus.CONNECTED.value
        channel.consecutive_errors = 0
        channel.last_error = None
        channel.last_error_at = None
        channel.is_active = True
        channel.updated_at = now
        if metadata:
            channel.metadata_ = {**(channel.metadata_ or {}), **metadata}
        await session.flush()
        return channel, False

    # ── Reads ───────────────────────────────────────────────────────────

    async def get_channel(
        self,
        channel_id: int,
        workspace_id: Optional[str] = None,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> Channel:
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            return await self._load(session, channel_id, workspace_id)
        finally:
            if own_session:
                await session.close()

    async def list_channels(
        self,
        workspace_id: str,
        *,
        provider: Optional[str] = None,
        status: Optional[ConnectionStatus] = None,
        is_active: Optional[bool] = None,
        db_session: Optional[AsyncSession] = None,
    ) -> List[Channel]:
        stmt = select(Channel).where(Channel.workspace_id == to_uuid(workspace_id))
        if provider:
            stmt = stmt.where(Channel.provider == provider)
        if status is not None:
            stmt = stmt.where(Channel.connection_status == ConnectionStatus(status).value)
        if is_active is not None:
            stmt = stmt.where(Channel.is_active.is_(is_active))
        stmt = stmt.order_by(Channel.display_order.asc(), Channel.id.asc())

        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            result = await session.execute(stmt)
            return list(result.scalars().all())
        finally:
            if own_session:
                await session.close()

    async def channel_stats(
        self,
        workspace_id: str,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> ChannelStats:
        channels = await self.list_channels(workspace_id, db_session=db_session)
        stats = ChannelStats(total_channels=len(channels))
        for ch in channels:
            if ch.is_active and ch.connection_status == ConnectionStatus.CONNECTED.value:
                stats.active_channels += 1
            elif ch.connection_status == ConnectionStatus.EXPIRED.value:
                stats.expired_channels += 1
            elif ch.connection_status in (ConnectionStatus.ERROR.value, ConnectionStatus.REVOKED.value):
                stats.error_channels += 1
            stats.by_provider[ch.provider] = stats.by_provider.get(ch.provider, 0) + 1
        return stats

    async def get_expiring_channels(
        self,
        within_days: int = 7,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> List[Channel]:
        """Active channels whose token expires between now and ``within_days``."""
        now = utcnow()
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            result = await session.execute(
                select(Channel).where(
                    Channel.is_active.is_(True),
                    Channel.token_expires_at.is_not(None),
                    Channel.token_expires_at > now,
                    Channel.token_expires_at < now + timedelta(days=within_days),
                )
            )
            return list(result.scalars().all())
        finally:
            if own_session:
                await session.close()

    async def get_decrypted_refresh_token(
        self,
        channel_id: int,
        workspace_id: Optional[str] = None,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> Optional[str]:
        channel = await self.get_channel(channel_id, workspace_id, db_session=db_session)
        if not channel.refresh_token:
            return None
        return self.cipher.decrypt(channel.refresh_token)

    # ── Token access ────────────────────────────────────────────────────

    async def get_decrypted_access_token(
        self,
        channel_id: int,
        workspace_id: Optional[str] = None,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> str:
        """
        Return an access token that is usable right now.

        Tokens inside the refresh buffer are refreshed first.  A refresh
        that fails while the token is still nominally valid is logged and
        the current token is returned; once the token is past expiry the
        channel becomes ``expired`` and ``TokenExpired`` is raised.
        Revoked channels raise ``ReconnectRequired``.

        Refresh work commits in its own session, independent of
        ``db_session``, so a rotated refresh token is never lost to a
        caller's rollback.
        """
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            channel = await self._load(session, channel_id, workspace_id)
            if channel.connection_status == ConnectionStatus.REVOKED.value:
                raise ReconnectRequired(channel.id, channel.provider)
            if not self._needs_refresh(channel, utcnow()):
                return self.cipher.decrypt(channel.access_token)
        finally:
            if own_session:
                await session.close()

        return await self._single_flight(channel_id)

    async def update_tokens(
        self,
        channel_id: int,
        tokens: TokenSet,
        workspace_id: Optional[str] = None,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> Channel:
        """Store tokens obtained outside the lazy refresh path."""
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            channel = await self._load(session, channel_id, workspace_id)
            old_expires_at = as_utc(channel.token_expires_at)
            now = utcnow()
            self._apply_tokens(channel, tokens, now)
            self._mark_healthy(channel, now)
            await self._audit.record(
                session,
                channel.id,
                RefreshOutcome.SUCCESS,
                old_expires_at=old_expires_at,
                new_expires_at=channel.token_expires_at,
            )
            if own_session:
                await session.commit()
        except Exception:
            if own_session:
                await session.rollback()
            raise
        finally:
            if own_session:
                await session.close()

        logger.info("Updated tokens for channel %s", channel_id)
        return channel

    # ── Health ──────────────────────────────────────────────────────────

    async def report_downstream_error(
        self,
        channel_id: int,
        message: str,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> Channel:
        """
        Record a failure reported by a content-API wrapper.

        Moves the channel to ``error``; the failure that brings the
        consecutive count to the limit moves it to ``revoked``.
        """
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            channel = await self._load(session, channel_id)
            await self._register_failure(session, channel, message, utcnow(), ConnectionStatus.ERROR)
            if own_session:
                await session.commit()
        except Exception:
            if own_session:
                await session.rollback()
            raise
        finally:
            if own_session:
                await session.close()

        if channel.connection_status == ConnectionStatus.REVOKED.value:
            logger.error(
                "Channel %s revoked after %d consecutive errors: %s",
                channel_id,
                channel.consecutive_errors,
                message,
            )
        else:
            logger.warning("Channel %s error (%d): %s", channel_id, channel.consecutive_errors, message)
        return channel

    async def disconnect(
        self,
        channel_id: int,
        workspace_id: str,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> None:
        """Delete a channel at the user's request."""
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            channel = await self._load(session, channel_id, workspace_id)
            provider = channel.provider
            await session.delete(channel)
            if own_session:
                await session.commit()
            else:
                await session.flush()
        except Exception:
            if own_session:
                await session.rollback()
            raise
        finally:
            if own_session:
                await session.close()

        logger.info("Disconnected %s channel %s from workspace %s", provider, channel_id, workspace_id)

    # ── Refresh internals ───────────────────────────────────────────────

    def _needs_refresh(self, channel: Channel, now: datetime) -> bool:
        expires_at = as_utc(channel.token_expires_at)
        return expires_at is not None and now >= expires_at - self.refresh_buffer

    async def _single_flight(self, channel_id: int) -> str:
        """Join the in-flight refresh for ``channel_id`` or start one."""
        task = self._inflight.get(channel_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh_channel(channel_id))
            self._inflight[channel_id] = task

            def _forget(done: asyncio.Task, channel_id: int = channel_id) -> None:
                if self._inflight.get(channel_id) is done:
                    del self._inflight[channel_id]
                # Every awaiter may have been cancelled; mark the failure retrieved.
                if not done.cancelled():
                    done.exception()

            task.add_done_callback(_forget)
        else:
            logger.debug("Joining in-flight refresh for channel %s", channel_id)
        return await asyncio.shield(task)

    async def _refresh_channel(self, channel_id: int) -> str:
        session = self._session_factory()
        try:
            # Row lock serialises refresh across instances; the in-process
            # single-flight only covers this one.
            channel = await self._load(session, channel_id, for_update=True)
            if channel.connection_status == ConnectionStatus.REVOKED.value:
                raise ReconnectRequired(channel.id, channel.provider)

            now = utcnow()
            if not self._needs_refresh(channel, now):
                # Another instance refreshed while we waited for the lock.
                return self.cipher.decrypt(channel.access_token)

            provider = self._registry.lookup(channel.provider)
            expires_at = as_utc(channel.token_expires_at)

            if not (channel.refresh_token and provider.supports_refresh):
                if now >= expires_at:
                    channel.connection_status = ConnectionStatus.EXPIRED.value
                    channel.last_error = "Token expired and no refresh token available"
                    channel.last_error_at = now
                    channel.updated_at = now
                    await session.commit()
                    logger.warning("Channel %s (%s) expired without a way to refresh", channel_id, channel.provider)
                    raise TokenExpired(channel.id, channel.provider)
                return self.cipher.decrypt(channel.access_token)

            return await self._attempt_refresh(session, channel, provider, expires_at)
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def _attempt_refresh(
        self,
        session: AsyncSession,
        channel: Channel,
        provider: ProviderConfig,
        old_expires_at: datetime,
    ) -> str:
        logger.info(
            "Token for channel %s (%s) %s, refreshing",
            channel.id,
            provider.provider_id,
            "expired" if utcnow() >= old_expires_at else "about to expire",
        )
        started = time.perf_counter()
        try:
            tokens = await self._coordinator.refresh_access_token(
                provider.provider_id,
                self.cipher.decrypt(channel.refresh_token),
            )
        except ConnectorError as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            now = utcnow()
            hard_expired = now >= old_expires_at
            await self._audit.record(
                session,
                channel.id,
                RefreshOutcome.FAILED,
                old_expires_at=old_expires_at,
                error_message=exc.message,
                error_code=exc.code,
                duration_ms=duration_ms,
            )
            await self._register_failure(
                session,
                channel,
                f"Token refresh failed: {exc.message}",
                now,
                ConnectionStatus.EXPIRED if hard_expired else None,
            )
            await session.commit()
            logger.error("Failed to refresh token for channel %s: %s", channel.id, exc.message)

            if hard_expired:
                raise TokenExpired(channel.id, provider.provider_id) from exc
            # Still nominally valid; keep using it until hard expiry.
            return self.cipher.decrypt(channel.access_token)

        duration_ms = int((time.perf_counter() - started) * 1000)
        now = utcnow()
        self._apply_tokens(channel, tokens, now)
        self._mark_healthy(channel, now)
        await self._audit.record(
            session,
            channel.id,
            RefreshOutcome.SUCCESS,
            old_expires_at=old_expires_at,
            new_expires_at=channel.token_expires_at,
            duration_ms=duration_ms,
        )
        await session.commit()
        logger.info("Refreshed token for channel %s (%s)", channel.id, provider.provider_id)
        return tokens.access_token

    async def _register_failure(
        self,
        session: AsyncSession,
        channel: Channel,
        message: str,
        now: datetime,
        status: Optional[ConnectionStatus],
    ) -> None:
        """Increment the error counter in SQL; the limit forces ``revoked``."""
        fallback = status.value if status is not None else Channel.connection_status
        await session.execute(
            update(Channel)
            .where(Channel.id == channel.id)
            .values(
                consecutive_errors=Channel.consecutive_errors + 1,
                connection_status=case(
                    (Channel.consecutive_errors + 1 >= self.max_consecutive_errors, ConnectionStatus.REVOKED.value),
                    else_=fallback,
                ),
                last_error=message,
                last_error_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.refresh(channel)

    # ── Helpers ─────────────────────────────────────────────────────────

    def _apply_tokens(self, channel: Channel, tokens: TokenSet, now: datetime) -> None:
        channel.access_token = self.cipher.encrypt(tokens.access_token)
        if tokens.refresh_token:
            channel.refresh_token = self.cipher.encrypt(tokens.refresh_token)
        channel.token_expires_at = now + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
        if tokens.scope:
            channel.token_scope = tokens.scope

    @staticmethod
    def _mark_healthy(channel: Channel, now: datetime) -> None:
        channel.connection_status = ConnectionStatus.CONNECTED.value
        channel.consecutive_errors = 0
        channel.last_error = None
        channel.last_error_at = None
        channel.last_refreshed_at = now
        channel.updated_at = now

    async def _insert_channel(
        self,
        session: AsyncSession,
        workspace_id: str,
        user_id: str,
        provider: ProviderConfig,
        profile: AccountProfile,
        tokens: TokenSet,
        *,
        permissions: Optional[List[str]] = None,
        capabilities: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Channel:
        ws = to_uuid(workspace_id)
        max_order = (
            await session.execute(
                select(func.coalesce(func.max(Channel.display_order), 0)).where(Channel.workspace_id == ws)
            )
        ).scalar_one()

        channel = Channel(
            workspace_id=ws,
            provider=provider.provider_id,
            account_type=provider.account_type,
            platform_account_id=profile.platform_account_id,
            account_name=profile.account_name,
            username=profile.username,
            profile_picture_url=profile.profile_picture_url,
            permissions=permissions if permissions is not None else list(provider.scopes),
            capabilities=capabilities or provider.default_capabilities(),
            is_active=True,
            connection_status=ConnectionStatus.CONNECTED.value,
            consecutive_errors=0,
            metadata_=metadata or {},
            connected_by_user_id=to_uuid(user_id),
            display_order=max_order + 1,
        )
        self._apply_tokens(channel, tokens, utcnow())
        session.add(channel)
        await session.flush()
        return channel

    async def _find_by_account(
        self,
        session: AsyncSession,
        workspace_id: str,
        provider_id: str,
        platform_account_id: str,
    ) -> Optional[Channel]:
        result = await session.execute(
            select(Channel).where(
                Channel.workspace_id == to_uuid(workspace_id),
                Channel.provider == provider_id,
                Channel.platform_account_id == platform_account_id,
            )
        )
        return result.scalar_one_or_none()

    async def _load(
        self,
        session: AsyncSession,
        channel_id: int,
        workspace_id: Optional[str] = None,
        *,
        for_update: bool = False,
    ) -> Channel:
        stmt = select(Channel).where(Channel.id == channel_id)
        if workspace_id is not None:
            stmt = stmt.where(Channel.workspace_id == to_uuid(workspace_id))
        if for_update:
            stmt = stmt.with_for_update()
        channel = (await session.execute(stmt)).scalar_one_or_none()
        if channel is None:
            raise ChannelNotFound(channel_id)
        return channel


def to_channel_out(channel: Channel) -> ChannelOut:
    """Public view of a channel (strips tokens)."""
    expires_at = as_utc(channel.token_expires_at)
    return ChannelOut(
        id=channel.id,
        workspace_id=str(channel.workspace_id),
        provider=channel.provider,
        account_type=channel.account_type,
        platform_account_id=channel.platform_account_id,
        account_name=channel.account_name,
        username=channel.username,
        profile_picture_url=channel.profile_picture_url,
        permissions=list(channel.permissions or []),
        capabilities=channel.capabilities,
        is_active=channel.is_active,
        connection_status=channel.connection_status,
        consecutive_errors=channel.consecutive_errors,
        last_error=channel.last_error,
        last_error_at=as_utc(channel.last_error_at),
        token_expires_at=expires_at,
        is_token_expired=expires_at is not None and expires_at < utcnow(),
        display_order=channel.display_order,
        metadata=channel.metadata_ or {},
        created_at=as_utc(channel.created_at),
        updated_at=as_utc(channel.updated_at),
    )


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Process-wide vault; sharing it is what makes refresh single-flight."""
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault
