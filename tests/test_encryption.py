"""
Tests for token encryption at rest and client credential resolution.
"""

import pytest
from cryptography.fernet import Fernet

from config.settings import Settings
from connectors.credentials import CredentialResolver
from connectors.encryption import TokenCipher
from connectors.errors import ConfigurationError
from connectors.registry import ProviderRegistry
from database.models import PlatformCredential


class TestTokenCipher:
    def test_ciphertext_differs_from_plaintext(self, cipher):
        encrypted = cipher.encrypt("ya29.secret-access-token")
        assert "ya29" not in encrypted
        assert cipher.decrypt(encrypted) == "ya29.secret-access-token"

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            TokenCipher("")

    def test_invalid_key(self):
        with pytest.raises(ConfigurationError):
            TokenCipher("not-a-fernet-key")

    def test_wrong_key_cannot_decrypt(self, cipher):
        encrypted = cipher.encrypt("token")
        other = TokenCipher(Fernet.generate_key().decode())
        with pytest.raises(ConfigurationError):
            other.decrypt(encrypted)

    def test_key_rotation(self):
        old_key = Fernet.generate_key().decode()
        new_key = Fernet.generate_key().decode()
        encrypted_with_old = TokenCipher(old_key).encrypt("token")

        rotated = TokenCipher(f"{new_key},{old_key}")
        assert rotated.decrypt(encrypted_with_old) == "token"
        # New writes use the first key only
        assert TokenCipher(new_key).decrypt(rotated.encrypt("fresh")) == "fresh"


class TestCredentialResolver:
    @pytest.mark.asyncio
    async def test_settings_credentials(self, settings, cipher, registry, session_factory):
        resolver = CredentialResolver(settings=settings, cipher=cipher, session_factory=session_factory)
        creds = await resolver.resolve(registry.lookup("instagram"))
        assert creds.client_id == "fb-id"
        assert creds.client_secret == "fb-secret"
        assert "fb-secret" not in repr(creds)

    @pytest.mark.asyncio
    async def test_database_row_wins(self, settings, cipher, registry, session_factory):
        async with session_factory() as session:
            session.add(
                PlatformCredential(
                    provider="twitter",
                    client_id="db-id",
                    client_secret=cipher.encrypt("db-secret"),
                    is_active=True,
                )
            )
            await session.commit()

        resolver = CredentialResolver(settings=settings, cipher=cipher, session_factory=session_factory)
        creds = await resolver.resolve(registry.lookup("twitter"))
        assert (creds.client_id, creds.client_secret) == ("db-id", "db-secret")

    @pytest.mark.asyncio
    async def test_inactive_row_ignored(self, settings, cipher, registry, session_factory):
        async with session_factory() as session:
            session.add(
                PlatformCredential(
                    provider="twitter",
                    client_id="db-id",
                    client_secret=cipher.encrypt("db-secret"),
                    is_active=False,
                )
            )
            await session.commit()

        resolver = CredentialResolver(settings=settings, cipher=cipher, session_factory=session_factory)
        creds = await resolver.resolve(registry.lookup("twitter"))
        assert creds.client_id == "tw-id"

    @pytest.mark.asyncio
    async def test_missing_credentials_hint(self, cipher, session_factory):
        bare = Settings(_env_file=None)
        resolver = CredentialResolver(settings=bare, cipher=cipher, session_factory=session_factory)
        with pytest.raises(ConfigurationError) as exc_info:
            await resolver.resolve(ProviderRegistry(bare).lookup("instagram"))
        assert "FACEBOOK_CLIENT_ID" in exc_info.value.message
