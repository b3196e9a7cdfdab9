"""
ProviderRegistry — the static table of per-provider OAuth configuration.

Every provider quirk (PKCE, how client credentials travel to the token
endpoint, scope delimiter, the name of the client-id parameter, extra
authorization parameters) is declared here and nowhere else.  The flow
coordinator reads these fields; it never branches on a provider name.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from config.settings import Settings, config
from connectors.errors import UnknownProvider

logger = logging.getLogger(__name__)


class CredentialMode(str, enum.Enum):
    """How client credentials are sent to a token endpoint."""

    BASIC_HEADER = "basic_header"   # Authorization: Basic base64(id:secret)
    BODY = "body"                   # form fields <client_id_param> + client_secret


class ProfileEndpoint(BaseModel):
    """Where to read the connected account's identity after the exchange.

    Paths are dotted lookups into the JSON response; integer segments index
    into lists (``items.0.id``).
    """

    model_config = {"frozen": True}

    url: str
    id_path: str
    name_path: Optional[str] = None
    username_path: Optional[str] = None
    picture_path: Optional[str] = None


class ProviderConfig(BaseModel):
    model_config = {"frozen": True}

    provider_id: str
    display_name: str
    authorization_url: str
    token_url: str
    scopes: Tuple[str, ...]
    scope_delimiter: str = " "
    client_id_param: str = "client_id"
    use_pkce: bool = False
    exchange_credential_mode: CredentialMode = CredentialMode.BODY
    refresh_credential_mode: CredentialMode = CredentialMode.BODY
    extra_auth_params: Dict[str, str] = Field(default_factory=dict)
    supports_refresh: bool = False
    credentials_prefix: str
    account_type: str
    max_media_per_post: int = 1
    max_text_length: int = 0
    supported_media_types: Tuple[str, ...] = ()
    profile: Optional[ProfileEndpoint] = None

    def default_capabilities(self) -> Dict[str, Any]:
        return {
            "can_post": self.max_media_per_post > 0,
            "can_schedule": self.max_media_per_post > 0,
            "can_read_analytics": True,
            "can_reply": False,
            "can_delete": False,
            "supported_media_types": list(self.supported_media_types),
            "max_media_per_post": self.max_media_per_post,
            "max_text_length": self.max_text_length,
        }


# ── Provider table — add new providers here ──────────────────────────────

_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_OFFLINE = {"access_type": "offline", "prompt": "consent"}
_GOOGLE_USERINFO = ProfileEndpoint(
    url="https://openidconnect.googleapis.com/v1/userinfo",
    id_path="sub",
    name_path="name",
    username_path="email",
    picture_path="picture",
)

_FACEBOOK_SCOPES = (
    "pages_show_list",
    "pages_read_engagement",
    "pages_manage_posts",
    "pages_manage_metadata",
)


def _build_providers(settings: Settings) -> Dict[str, ProviderConfig]:
    pinterest_api = (
        "https://api-sandbox.pinterest.com/v5"
        if settings.pinterest_use_sandbox
        else "https://api.pinterest.com/v5"
    )
    facebook_profile = ProfileEndpoint(
        url="https://graph.facebook.com/v18.0/me?fields=id,name,picture",
        id_path="id",
        name_path="name",
        picture_path="picture.data.url",
    )

    providers = [
        ProviderConfig(
            provider_id="facebook",
            display_name="Facebook",
            authorization_url="https://www.facebook.com/v18.0/dialog/oauth",
            token_url="https://graph.facebook.com/v18.0/oauth/access_token",
            scopes=_FACEBOOK_SCOPES,
            extra_auth_params={"auth_type": "rerequest"},
            supports_refresh=False,  # long-lived tokens
            credentials_prefix="facebook",
            account_type="page",
            max_media_per_post=10,
            max_text_length=63206,
            supported_media_types=("image", "video", "link"),
            profile=facebook_profile,
        ),
        ProviderConfig(
            provider_id="instagram",
            display_name="Instagram",
            authorization_url="https://www.facebook.com/v18.0/dialog/oauth",
            token_url="https://graph.facebook.com/v18.0/oauth/access_token",
            scopes=_FACEBOOK_SCOPES + ("instagram_basic", "instagram_content_publish"),
            supports_refresh=False,
            credentials_prefix="facebook",
            account_type="business_account",
            max_media_per_post=10,
            max_text_length=2200,
            supported_media_types=("image", "video", "carousel"),
            profile=facebook_profile,
        ),
        ProviderConfig(
            provider_id="youtube",
            display_name="YouTube",
            authorization_url=_GOOGLE_AUTH_URL,
            token_url=_GOOGLE_TOKEN_URL,
            scopes=(
                "https://www.googleapis.com/auth/youtube.upload",
                "https://www.googleapis.com/auth/youtube",
            ),
            use_pkce=True,
            extra_auth_params=_GOOGLE_OFFLINE,
            supports_refresh=True,
            credentials_prefix="youtube",
            account_type="channel",
            max_media_per_post=1,
            max_text_length=5000,
            supported_media_types=("video",),
            profile=ProfileEndpoint(
                url="https://www.googleapis.com/youtube/v3/channels?part=snippet&mine=true",
                id_path="items.0.id",
                name_path="items.0.snippet.title",
                username_path="items.0.snippet.customUrl",
                picture_path="items.0.snippet.thumbnails.default.url",
            ),
        ),
        ProviderConfig(
            provider_id="tiktok",
            display_name="TikTok",
            authorization_url="https://www.tiktok.com/v2/auth/authorize",
            token_url="https://open.tiktokapis.com/v2/oauth/token/",
            scopes=(
                "user.info.basic",
                "user.info.profile",
                "user.info.stats",
                "video.list",
                "video.upload",
                "video.publish",
            ),
            scope_delimiter=",",
            client_id_param="client_key",
            use_pkce=True,
            supports_refresh=True,
            credentials_prefix="tiktok",
            account_type="business_account",
            max_media_per_post=1,
            max_text_length=2200,
            supported_media_types=("video",),
            profile=ProfileEndpoint(
                url="https://open.tiktokapis.com/v2/user/info/?fields=open_id,display_name,username,avatar_url",
                id_path="data.user.open_id",
                name_path="data.user.display_name",
                username_path="data.user.username",
                picture_path="data.user.avatar_url",
            ),
        ),
        ProviderConfig(
            provider_id="pinterest",
            display_name="Pinterest",
            authorization_url="https://www.pinterest.com/oauth/",
            token_url=f"{pinterest_api}/oauth/token",
            scopes=("user_accounts:read", "boards:read", "boards:write", "pins:read", "pins:write"),
            exchange_credential_mode=CredentialMode.BASIC_HEADER,
            refresh_credential_mode=CredentialMode.BODY,
            supports_refresh=True,
            credentials_prefix="pinterest",
            account_type="business_account",
            max_media_per_post=1,
            max_text_length=500,
            supported_media_types=("image", "video"),
            profile=ProfileEndpoint(
                url=f"{pinterest_api}/user_account",
                id_path="username",
                name_path="business_name",
                username_path="username",
                picture_path="profile_image",
            ),
        ),
        ProviderConfig(
            provider_id="twitter",
            display_name="X (Twitter)",
            authorization_url="https://twitter.com/i/oauth2/authorize",
            token_url="https://api.twitter.com/2/oauth2/token",
            scopes=("tweet.read", "tweet.write", "users.read", "offline.access"),
            use_pkce=True,
            exchange_credential_mode=CredentialMode.BASIC_HEADER,
            refresh_credential_mode=CredentialMode.BASIC_HEADER,
            supports_refresh=True,
            credentials_prefix="twitter",
            account_type="profile",
            max_media_per_post=4,
            max_text_length=280,
            supported_media_types=("image", "video", "gif"),
            profile=ProfileEndpoint(
                url="https://api.twitter.com/2/users/me?user.fields=profile_image_url",
                id_path="data.id",
                name_path="data.name",
                username_path="data.username",
                picture_path="data.profile_image_url",
            ),
        ),
        ProviderConfig(
            provider_id="linkedin",
            display_name="LinkedIn",
            authorization_url="https://www.linkedin.com/oauth/v2/authorization",
            token_url="https://www.linkedin.com/oauth/v2/accessToken",
            scopes=("openid", "profile", "email", "w_member_social"),
            supports_refresh=True,
            credentials_prefix="linkedin",
            account_type="profile",
            max_media_per_post=9,
            max_text_length=3000,
            supported_media_types=("image", "video", "document"),
            profile=ProfileEndpoint(
                url="https://api.linkedin.com/v2/userinfo",
                id_path="sub",
                name_path="name",
                username_path="email",
                picture_path="picture",
            ),
        ),
        ProviderConfig(
            provider_id="threads",
            display_name="Threads",
            authorization_url="https://threads.net/oauth/authorize",
            token_url="https://graph.threads.net/oauth/access_token",
            scopes=("threads_basic", "threads_content_publish"),
            supports_refresh=False,
            credentials_prefix="threads",
            account_type="profile",
            max_media_per_post=10,
            max_text_length=500,
            supported_media_types=("image", "video"),
            profile=ProfileEndpoint(
                url="https://graph.threads.net/v1.0/me?fields=id,username,threads_profile_picture_url",
                id_path="id",
                name_path="username",
                username_path="username",
                picture_path="threads_profile_picture_url",
            ),
        ),
        # Google storage services share the YouTube app but not its scopes.
        ProviderConfig(
            provider_id="google_drive",
            display_name="Google Drive",
            authorization_url=_GOOGLE_AUTH_URL,
            token_url=_GOOGLE_TOKEN_URL,
            scopes=("openid", "email", "https://www.googleapis.com/auth/drive.readonly"),
            use_pkce=True,
            extra_auth_params=_GOOGLE_OFFLINE,
            supports_refresh=True,
            credentials_prefix="youtube",
            account_type="storage",
            max_media_per_post=0,
            supported_media_types=("image", "video", "document"),
            profile=_GOOGLE_USERINFO,
        ),
        ProviderConfig(
            provider_id="google_photos",
            display_name="Google Photos",
            authorization_url=_GOOGLE_AUTH_URL,
            token_url=_GOOGLE_TOKEN_URL,
            scopes=("openid", "email", "https://www.googleapis.com/auth/photoslibrary.readonly"),
            use_pkce=True,
            extra_auth_params=_GOOGLE_OFFLINE,
            supports_refresh=True,
            credentials_prefix="youtube",
            account_type="storage",
            max_media_per_post=0,
            supported_media_types=("image", "video"),
            profile=_GOOGLE_USERINFO,
        ),
        ProviderConfig(
            provider_id="google_calendar",
            display_name="Google Calendar",
            authorization_url=_GOOGLE_AUTH_URL,
            token_url=_GOOGLE_TOKEN_URL,
            scopes=("openid", "email", "https://www.googleapis.com/auth/calendar.readonly"),
            use_pkce=True,
            extra_auth_params=_GOOGLE_OFFLINE,
            supports_refresh=True,
            credentials_prefix="youtube",
            account_type="storage",
            max_media_per_post=0,
            profile=_GOOGLE_USERINFO,
        ),
    ]
    return {p.provider_id: p for p in providers}


class ProviderRegistry:
    """Read-only lookup over the provider table."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or config
        self._providers = _build_providers(self._settings)

    def lookup(self, provider_id: str) -> ProviderConfig:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise UnknownProvider(provider_id)
        return provider

    def provider_ids(self) -> List[str]:
        return list(self._providers.keys())

    def list_providers(self) -> List[Dict[str, Any]]:
        """Return public info about every provider (no endpoints, no secrets)."""
        return [
            {
                "provider": p.provider_id,
                "display_name": p.display_name,
                "account_type": p.account_type,
                "uses_pkce": p.use_pkce,
                "supports_refresh": p.supports_refresh,
                "configured": self._settings.get_client_credentials(p.credentials_prefix) is not None,
            }
            for p in self._providers.values()
        ]


_registry: Optional[ProviderRegistry] = None


def get_registry() -> ProviderRegistry:
    """Process-wide registry built from the global settings."""
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
        logger.info("Provider registry loaded: %s", ", ".join(_registry.provider_ids()))
    return _registry
