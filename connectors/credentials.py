"""
Client credential resolution for provider OAuth apps.

An active ``platform_credentials`` row wins (its secret is stored
encrypted); otherwise the ``<prefix>_CLIENT_ID`` / ``<prefix>_CLIENT_SECRET``
settings are used.  Providers that share an app (Instagram → Facebook,
Google services → YouTube) resolve through their ``credentials_prefix``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import Settings, config
from connectors.encryption import TokenCipher, get_cipher
from connectors.errors import ConfigurationError
from connectors.registry import ProviderConfig
from database.models import PlatformCredential
from database.session import async_session_factory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientCredentials:
    client_id: str
    client_secret: str

    def __repr__(self) -> str:
        return f"ClientCredentials(client_id={self.client_id!r}, client_secret='***')"


class CredentialResolver:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        cipher: Optional[TokenCipher] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ) -> None:
        self._settings = settings or config
        self._cipher = cipher
        self._session_factory = session_factory or async_session_factory

    async def resolve(
        self,
        provider: ProviderConfig,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> ClientCredentials:
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            result = await session.execute(
                select(PlatformCredential).where(
                    PlatformCredential.provider == provider.provider_id,
                    PlatformCredential.is_active.is_(True),
                )
            )
            row = result.scalar_one_or_none()
        finally:
            if own_session:
                await session.close()

        if row is not None:
            cipher = self._cipher or get_cipher()
            return ClientCredentials(row.client_id, cipher.decrypt(row.client_secret))

        pair = self._settings.get_client_credentials(provider.credentials_prefix)
        if pair is None:
            env = provider.credentials_prefix.upper()
            hint = f"Set {env}_CLIENT_ID and {env}_CLIENT_SECRET."
            if provider.credentials_prefix != provider.provider_id:
                hint = f"{provider.display_name} uses the {env.title()} app credentials. " + hint
            raise ConfigurationError(
                f"OAuth credentials not configured for {provider.provider_id}. {hint}"
            )
        return ClientCredentials(*pair)
