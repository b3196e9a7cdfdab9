"""
OAuthFlowCoordinator — authorization URLs, single-use CSRF state and the
token endpoint calls (code exchange and refresh).

State records always live in the database so a callback can be served by
any instance, including one started after the flow was initiated.
"""

from __future__ import annotations

import base64
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Optional, Type
from urllib.parse import urlencode

import httpx
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import Settings, config
from connectors.credentials import ClientCredentials, CredentialResolver
from connectors.errors import (
    ConfigurationError,
    ExchangeFailed,
    ProviderRequestError,
    RefreshFailed,
    StateAlreadyUsed,
    StateExpired,
    StateNotFound,
)
from connectors.pkce import code_challenge_s256, generate_code_verifier, generate_state_token, mask
from connectors.registry import CredentialMode, ProviderConfig, ProviderRegistry, get_registry
from connectors.schemas import AccountProfile, AuthorizationRequest, OAuthStateData, TokenSet
from database.helpers import as_utc, to_uuid, utcnow
from database.models import OAuthState
from database.session import async_session_factory

logger = logging.getLogger(__name__)


def _dig(data: Any, path: Optional[str]) -> Any:
    """Follow a dotted path through nested dicts / lists; None when absent."""
    if not path:
        return None
    current = data
    for part in path.split("."):
        if isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
        if current is None:
            return None
    return current


class OAuthFlowCoordinator:
    """Drives the authorization-code grant for every registered provider."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        credentials: Optional[CredentialResolver] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or config
        self._registry = registry or get_registry()
        self._session_factory = session_factory or async_session_factory
        self._credentials = credentials or CredentialResolver(
            settings=self._settings, session_factory=self._session_factory
        )
        self._http_client = http_client

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def redirect_uri(self, provider_id: str) -> str:
        return f"{self._settings.oauth_redirect_base}/api/v1/channels/oauth/{provider_id}/callback"

    # ── Authorization ───────────────────────────────────────────────────

    async def initiate(
        self,
        workspace_id: str,
        user_id: str,
        provider_id: str,
        redirect_url: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> AuthorizationRequest:
        """
        Start an OAuth flow.

        Persists a single-use state record (15 minute TTL by default) and
        returns the provider authorization URL the user should be sent to.
        """
        provider = self._registry.lookup(provider_id)

        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            creds = await self._credentials.resolve(provider, db_session=session)

            state_token = generate_state_token()
            code_verifier = generate_code_verifier() if provider.use_pkce else None
            expires_at = utcnow() + timedelta(seconds=self._settings.oauth_state_ttl_seconds)

            session.add(
                OAuthState(
                    state_token=state_token,
                    workspace_id=to_uuid(workspace_id),
                    user_id=to_uuid(user_id),
                    provider=provider.provider_id,
                    redirect_url=redirect_url,
                    code_verifier=code_verifier,
                    additional_data=extra,
                    expires_at=expires_at,
                )
            )
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

        params: Dict[str, str] = {
            provider.client_id_param: creds.client_id,
            "redirect_uri": self.redirect_uri(provider.provider_id),
            "response_type": "code",
            "state": state_token,
            "scope": provider.scope_delimiter.join(provider.scopes),
        }
        if code_verifier:
            params["code_challenge"] = code_challenge_s256(code_verifier)
            params["code_challenge_method"] = "S256"
        params.update(provider.extra_auth_params)

        authorization_url = f"{provider.authorization_url}?{urlencode(params)}"
        logger.info(
            "Initiated OAuth flow for %s in workspace %s (state %s)",
            provider.provider_id,
            workspace_id,
            mask(state_token),
        )
        return AuthorizationRequest(
            authorization_url=authorization_url,
            state=state_token,
            expires_at=expires_at,
        )

    async def validate_and_consume(
        self,
        state_token: str,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> OAuthStateData:
        """
        Redeem a state token exactly once.

        The claim is a single conditional UPDATE (``used_at IS NULL`` and
        not expired); only the caller whose UPDATE touched the row wins.
        Raises ``StateNotFound``, ``StateExpired`` or ``StateAlreadyUsed``.
        """
        now = utcnow()
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            result = await session.execute(
                update(OAuthState)
                .where(
                    OAuthState.state_token == state_token,
                    OAuthState.used_at.is_(None),
                    OAuthState.expires_at > now,
                )
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1

            row = (
                await session.execute(
                    select(OAuthState)
                    .where(OAuthState.state_token == state_token)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
            state = _to_state_data(row, now) if claimed else None
            expired = row is not None and as_utc(row.expires_at) <= now
            used_at = row.used_at if row is not None else None

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

        if state is None:
            if row is None:
                logger.error("OAuth state not found: %s", mask(state_token))
                raise StateNotFound()
            if expired:
                logger.error("OAuth state expired: %s", mask(state_token))
                raise StateExpired()
            logger.error("OAuth state already used: %s (used %s)", mask(state_token), used_at)
            raise StateAlreadyUsed()

        logger.info("OAuth state %s validated for %s", mask(state_token), state.provider)
        return state

    async def cleanup_expired_states(self, *, db_session: Optional[AsyncSession] = None) -> int:
        """Delete state rows past their expiry. Returns the number removed."""
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            result = await session.execute(
                delete(OAuthState)
                .where(OAuthState.expires_at < utcnow())
                .execution_options(synchronize_session=False)
            )
            if own_session:
                await session.commit()
            removed = result.rowcount or 0
        finally:
            if own_session:
                await session.close()

        if removed:
            logger.info("Cleaned up %d expired OAuth states", removed)
        return removed

    # ── Token endpoint ──────────────────────────────────────────────────

    async def exchange_code_for_tokens(
        self,
        provider_id: str,
        code: str,
        code_verifier: Optional[str] = None,
        *,
        redirect_uri: Optional[str] = None,
        db_session: Optional[AsyncSession] = None,
    ) -> TokenSet:
        """Exchange an authorization code for a token set. Raises ``ExchangeFailed``."""
        provider = self._registry.lookup(provider_id)
        creds = await self._credentials.resolve(provider, db_session=db_session)

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or self.redirect_uri(provider.provider_id),
        }
        headers = {"Accept": "application/json"}
        _apply_client_credentials(provider, provider.exchange_credential_mode, creds, form, headers)

        if provider.use_pkce and code_verifier:
            form["code_verifier"] = code_verifier

        tokens = await self._post_token_request(provider, form, headers, ExchangeFailed, "exchange")
        logger.info("Exchanged authorization code for %s", provider.provider_id)
        return tokens

    async def refresh_access_token(
        self,
        provider_id: str,
        refresh_token: str,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> TokenSet:
        """Trade a refresh token for a new token set. Raises ``RefreshFailed``."""
        provider = self._registry.lookup(provider_id)
        if not provider.supports_refresh:
            raise RefreshFailed(
                f"{provider.display_name} does not support token refresh",
                provider=provider.provider_id,
            )
        creds = await self._credentials.resolve(provider, db_session=db_session)

        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        headers = {"Accept": "application/json"}
        _apply_client_credentials(provider, provider.refresh_credential_mode, creds, form, headers)

        tokens = await self._post_token_request(provider, form, headers, RefreshFailed, "refresh")
        logger.info("Refreshed access token for %s", provider.provider_id)
        return tokens

    async def fetch_account_profile(self, provider_id: str, access_token: str) -> AccountProfile:
        """Read the connected account's identity from the provider's profile endpoint."""
        provider = self._registry.lookup(provider_id)
        endpoint = provider.profile
        if endpoint is None:
            raise ConfigurationError(f"No profile endpoint declared for {provider.provider_id}")

        try:
            async with self._client() as client:
                resp = await client.get(
                    endpoint.url,
                    headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.error("Profile request for %s failed: %s", provider.provider_id, exc)
            raise ExchangeFailed(
                f"Failed to fetch {provider.display_name} profile",
                provider=provider.provider_id,
                body=str(exc),
            ) from exc

        if not resp.is_success:
            logger.error("Profile request for %s failed: %s %s", provider.provider_id, resp.status_code, resp.text)
            raise ExchangeFailed(
                f"Failed to fetch {provider.display_name} profile: {resp.status_code}",
                provider=provider.provider_id,
                provider_status=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            logger.error("Profile response for %s is not JSON: %s", provider.provider_id, resp.text)
            raise ExchangeFailed(
                f"{provider.display_name} profile response was not JSON",
                provider=provider.provider_id,
                provider_status=resp.status_code,
                body=resp.text,
            ) from exc

        account_id = _dig(data, endpoint.id_path)
        if account_id in (None, ""):
            raise ExchangeFailed(
                f"{provider.display_name} profile did not include an account id",
                provider=provider.provider_id,
                provider_status=resp.status_code,
                body=resp.text,
            )
        username = _dig(data, endpoint.username_path)
        name = _dig(data, endpoint.name_path) or username or str(account_id)
        try:
            return AccountProfile(
                platform_account_id=str(account_id),
                account_name=str(name),
                username=username,
                profile_picture_url=_dig(data, endpoint.picture_path),
                raw=data if isinstance(data, dict) else {},
            )
        except ValueError as exc:
            logger.error("Malformed %s profile: %s", provider.provider_id, resp.text)
            raise ExchangeFailed(
                f"{provider.display_name} profile response was malformed",
                provider=provider.provider_id,
                provider_status=resp.status_code,
                body=resp.text,
            ) from exc

    # ── Helpers ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._settings.http_timeout_seconds) as client:
            yield client

    async def _post_token_request(
        self,
        provider: ProviderConfig,
        form: Dict[str, str],
        headers: Dict[str, str],
        error_cls: Type[ProviderRequestError],
        action: str,
    ) -> TokenSet:
        try:
            async with self._client() as client:
                resp = await client.post(provider.token_url, data=form, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Token %s request for %s failed: %s", action, provider.provider_id, exc)
            raise error_cls(
                f"Token {action} request to {provider.display_name} failed",
                provider=provider.provider_id,
                body=str(exc),
            ) from exc

        if not resp.is_success:
            logger.error(
                "Token %s failed for %s: %s %s",
                action,
                provider.provider_id,
                resp.status_code,
                resp.text,
            )
            raise error_cls(
                f"Token {action} with {provider.display_name} failed: {resp.status_code}",
                provider=provider.provider_id,
                provider_status=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError:
            data = None

        # Some providers report errors with a 200 status.
        if not isinstance(data, dict) or data.get("error") or not data.get("access_token"):
            logger.error("Token %s for %s returned no access token: %s", action, provider.provider_id, resp.text)
            raise error_cls(
                f"Token {action} with {provider.display_name} returned no access token",
                provider=provider.provider_id,
                provider_status=resp.status_code,
                body=resp.text,
            )
        try:
            return _to_token_set(data)
        except (ValueError, TypeError) as exc:
            # pydantic ValidationError is a ValueError
            logger.error("Token %s for %s returned a malformed body: %s", action, provider.provider_id, resp.text)
            raise error_cls(
                f"Token {action} with {provider.display_name} returned a malformed response",
                provider=provider.provider_id,
                provider_status=resp.status_code,
                body=resp.text,
            ) from exc


def _apply_client_credentials(
    provider: ProviderConfig,
    mode: CredentialMode,
    creds: ClientCredentials,
    form: Dict[str, str],
    headers: Dict[str, str],
) -> None:
    if mode is CredentialMode.BASIC_HEADER:
        raw = f"{creds.client_id}:{creds.client_secret}".encode()
        headers["Authorization"] = f"Basic {base64.b64encode(raw).decode()}"
    else:
        form[provider.client_id_param] = creds.client_id
        form["client_secret"] = creds.client_secret


def _to_token_set(data: Dict[str, Any]) -> TokenSet:
    expires_in = data.get("expires_in")
    scope = data.get("scope")
    if isinstance(scope, list):
        scope = " ".join(scope)
    return TokenSet(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or None,
        expires_in=int(expires_in) if expires_in else None,
        token_type=data.get("token_type") or "Bearer",
        scope=scope or None,
    )


def _to_state_data(row: OAuthState, now: datetime) -> OAuthStateData:
    return OAuthStateData(
        workspace_id=str(row.workspace_id),
        user_id=str(row.user_id),
        provider=row.provider,
        code_verifier=row.code_verifier,
        redirect_url=row.redirect_url,
        additional_data=row.additional_data,
        expires_at=as_utc(row.expires_at),
        used_at=as_utc(row.used_at) or now,
    )
