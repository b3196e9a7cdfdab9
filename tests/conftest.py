"""
Shared fixtures: a file-backed SQLite database per test, a Fernet cipher and
settings with fake provider apps.
"""

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.settings import Settings
from connectors.encryption import TokenCipher
from connectors.registry import ProviderRegistry
from database.models import Base


@pytest.fixture
def settings() -> Settings:
    # threads is deliberately left without app credentials
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        token_encryption_key=Fernet.generate_key().decode(),
        jwt_secret="test-secret",
        oauth_redirect_base="https://api.example.test",
        frontend_url="https://app.example.test",
        facebook_client_id="fb-id",
        facebook_client_secret="fb-secret",
        youtube_client_id="yt-id",
        youtube_client_secret="yt-secret",
        tiktok_client_id="tt-key",
        tiktok_client_secret="tt-secret",
        pinterest_client_id="pin-id",
        pinterest_client_secret="pin-secret",
        twitter_client_id="tw-id",
        twitter_client_secret="tw-secret",
        linkedin_client_id="li-id",
        linkedin_client_secret="li-secret",
        threads_client_id="",
        threads_client_secret="",
    )


@pytest.fixture
def cipher(settings: Settings) -> TokenCipher:
    return TokenCipher(settings.token_encryption_key)


@pytest.fixture
def registry(settings: Settings) -> ProviderRegistry:
    return ProviderRegistry(settings)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'channels.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
