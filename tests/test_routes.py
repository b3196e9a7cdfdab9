"""
Tests for the channel API — auth, the full OAuth callback and error mapping.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio

from auth.dependencies import db_session
from auth.tokens import create_token
from connectors.credentials import CredentialResolver
from connectors.oauth_flow import OAuthFlowCoordinator
from connectors.routes import vault_dependency
from connectors.vault import CredentialVault
from factories import OTHER_WORKSPACE_ID, USER_ID, WORKSPACE_ID
from main import create_app


def _provider_api(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/2/oauth2/token":
        return httpx.Response(
            200,
            json={"access_token": "tw-access", "refresh_token": "tw-refresh", "expires_in": 7200},
        )
    if request.url.path == "/2/users/me":
        return httpx.Response(200, json={"data": {"id": "42", "name": "Acme Corp", "username": "acme"}})
    return httpx.Response(404)


@pytest.fixture
def vault(settings, cipher, registry, session_factory):
    coordinator = OAuthFlowCoordinator(
        registry=registry,
        credentials=CredentialResolver(settings=settings, cipher=cipher, session_factory=session_factory),
        session_factory=session_factory,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_provider_api)),
        settings=settings,
    )
    return CredentialVault(
        coordinator=coordinator,
        registry=registry,
        cipher=cipher,
        session_factory=session_factory,
        settings=settings,
    )


@pytest_asyncio.fixture
async def client(vault, session_factory):
    app = create_app()

    async def _session():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[vault_dependency] = lambda: vault
    app.dependency_overrides[db_session] = _session

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


def _auth(*workspaces: str) -> dict:
    return {"Authorization": f"Bearer {create_token(USER_ID, workspaces or [WORKSPACE_ID])}"}


def _location_query(response: httpx.Response) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(response.headers["location"]).query).items()}


async def _connect_twitter(client) -> dict:
    initiated = await client.post(
        f"/api/v1/channels/workspaces/{WORKSPACE_ID}/oauth/initiate",
        json={"provider": "twitter"},
        headers=_auth(),
    )
    assert initiated.status_code == 200
    state = initiated.json()["state"]
    callback = await client.get(
        "/api/v1/channels/oauth/twitter/callback",
        params={"code": "auth-code", "state": state},
    )
    assert callback.status_code == 302
    return _location_query(callback)


class TestProviders:
    @pytest.mark.asyncio
    async def test_list_providers_public(self, client):
        response = await client.get("/api/v1/channels/providers")
        assert response.status_code == 200
        assert {p["provider"] for p in response.json()} >= {"twitter", "tiktok", "google_drive"}


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get(f"/api/v1/channels/workspaces/{WORKSPACE_ID}/channels")
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_bad_token(self, client):
        response = await client.get(
            f"/api/v1/channels/workspaces/{WORKSPACE_ID}/channels",
            headers={"Authorization": "Bearer garbage"},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_foreign_workspace(self, client):
        response = await client.get(
            f"/api/v1/channels/workspaces/{WORKSPACE_ID}/channels",
            headers=_auth(OTHER_WORKSPACE_ID),
        )
        assert response.status_code == 403
        assert response.json()["error"] == "workspace_access_denied"


class TestOAuthRoutes:
    @pytest.mark.asyncio
    async def test_initiate(self, client):
        response = await client.post(
            f"/api/v1/channels/workspaces/{WORKSPACE_ID}/oauth/initiate",
            json={"provider": "twitter", "redirect_url": "https://app.example.test/after"},
            headers=_auth(),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["authorization_url"].startswith("https://twitter.com/i/oauth2/authorize?")
        assert len(body["state"]) == 64

    @pytest.mark.asyncio
    async def test_initiate_unknown_provider(self, client):
        response = await client.post(
            f"/api/v1/channels/workspaces/{WORKSPACE_ID}/oauth/initiate",
            json={"provider": "friendster"},
            headers=_auth(),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "unknown_provider"

    @pytest.mark.asyncio
    async def test_initiate_unconfigured_provider(self, client):
        response = await client.post(
            f"/api/v1/channels/workspaces/{WORKSPACE_ID}/oauth/initiate",
            json={"provider": "threads"},
            headers=_auth(),
        )
        assert response.status_code == 500
        assert response.json()["error"] == "configuration_error"

    @pytest.mark.asyncio
    async def test_callback_connects_channel(self, client):
        query = await _connect_twitter(client)
        assert query["success"] == "true"
        assert query["provider"] == "twitter"
        assert query["created"] == "true"

        channels = await client.get(f"/api/v1/channels/workspaces/{WORKSPACE_ID}/channels", headers=_auth())
        assert channels.status_code == 200
        [channel] = channels.json()
        assert channel["id"] == int(query["channel_id"])
        assert channel["platform_account_id"] == "42"
        assert channel["account_name"] == "Acme Corp"
        assert channel["connection_status"] == "connected"
        assert "access_token" not in channel

    @pytest.mark.asyncio
    async def test_callback_redirects_to_stored_url(self, client):
        initiated = await client.post(
            f"/api/v1/channels/workspaces/{WORKSPACE_ID}/oauth/initiate",
            json={"provider": "twitter", "redirect_url": "https://app.example.test/after?tab=channels"},
            headers=_auth(),
        )
        callback = await client.get(
            "/api/v1/channels/oauth/twitter/callback",
            params={"code": "auth-code", "state": initiated.json()["state"]},
        )
        location = callback.headers["location"]
        assert location.startswith("https://app.example.test/after?tab=channels&")
        assert "success=true" in location

    @pytest.mark.asyncio
    async def test_callback_replay_is_rejected(self, client):
        initiated = await client.post(
            f"/api/v1/channels/workspaces/{WORKSPACE_ID}/oauth/initiate",
            json={"provider": "twitter"},
            headers=_auth(),
        )
        params = {"code": "auth-code", "state": initiated.json()["state"]}
        await client.get("/api/v1/channels/oauth/twitter/callback", params=params)
        replay = await client.get("/api/v1/channels/oauth/twitter/callback", params=params)

        assert replay.status_code == 302
        assert _location_query(replay)["error"] == "state_already_used"

    @pytest.mark.asyncio
    async def test_callback_unknown_state(self, client):
        response = await client.get(
            "/api/v1/channels/oauth/twitter/callback",
            params={"code": "auth-code", "state": "0" * 64},
        )
        assert response.status_code == 302
        assert urlparse(response.headers["location"]).path == "/channels"
        assert _location_query(response)["error"] == "state_not_found"

    @pytest.mark.asyncio
    async def test_callback_user_denied(self, client):
        response = await client.get(
            "/api/v1/channels/oauth/twitter/callback",
            params={"error": "access_denied"},
        )
        assert response.status_code == 302
        assert _location_query(response)["error"] == "access_denied"


class TestChannelRoutes:
    @pytest.mark.asyncio
    async def test_stats(self, client):
        await _connect_twitter(client)
        response = await client.get(f"/api/v1/channels/workspaces/{WORKSPACE_ID}/stats", headers=_auth())
        assert response.status_code == 200
        assert response.json()["total_channels"] == 1
        assert response.json()["by_provider"] == {"twitter": 1}

    @pytest.mark.asyncio
    async def test_refresh_logs_empty(self, client):
        query = await _connect_twitter(client)
        response = await client.get(
            f"/api/v1/channels/workspaces/{WORKSPACE_ID}/channels/{query['channel_id']}/refresh-logs",
            headers=_auth(),
        )
        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_delete(self, client):
        query = await _connect_twitter(client)
        channel_url = f"/api/v1/channels/workspaces/{WORKSPACE_ID}/channels/{query['channel_id']}"

        deleted = await client.delete(channel_url, headers=_auth())
        assert deleted.status_code == 200
        assert deleted.json()["status"] == "disconnected"

        again = await client.delete(channel_url, headers=_auth())
        assert again.status_code == 404
        assert again.json() == {"error": "channel_not_found", "detail": "Channel not found"}

    @pytest.mark.asyncio
    async def test_malformed_workspace_id(self, client):
        response = await client.get(
            "/api/v1/channels/workspaces/not-a-uuid/channels",
            headers=_auth("not-a-uuid"),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_identifier"

    @pytest.mark.asyncio
    async def test_malformed_user_id(self, client):
        token = create_token("user-7", [WORKSPACE_ID])
        response = await client.post(
            f"/api/v1/channels/workspaces/{WORKSPACE_ID}/oauth/initiate",
            json={"provider": "twitter"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_identifier"
