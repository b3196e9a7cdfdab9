"""
Connector error taxonomy.

Every failure the credential lifecycle can surface is a ``ConnectorError``
carrying an HTTP status and a stable ``code``.  Provider response bodies are
kept on the exception for logging only and never appear in ``str(exc)``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ConnectorError(Exception):
    """Base class for all connector errors."""

    status_code: int = 500
    code: str = "connector_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class ConfigurationError(ConnectorError):
    """Missing provider app credentials or encryption key."""

    status_code = 500
    code = "configuration_error"


class UnknownProvider(ConnectorError):
    status_code = 400
    code = "unknown_provider"

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unsupported provider: {provider}")
        self.provider = provider


# ── OAuth state ────────────────────────────────────────────────────────


class StateError(ConnectorError):
    """The OAuth ``state`` parameter could not be redeemed."""

    status_code = 400
    code = "invalid_state"
    reason = "invalid"


class StateNotFound(StateError):
    code = "state_not_found"
    reason = "not_found"

    def __init__(self) -> None:
        super().__init__("Invalid or expired OAuth state - token not found")


class StateExpired(StateError):
    code = "state_expired"
    reason = "expired"

    def __init__(self) -> None:
        super().__init__("Invalid or expired OAuth state - token expired")


class StateAlreadyUsed(StateError):
    code = "state_already_used"
    reason = "already_used"

    def __init__(self) -> None:
        super().__init__("OAuth state already used")


# ── Token endpoint ─────────────────────────────────────────────────────


class ProviderRequestError(ConnectorError):
    """A provider token endpoint rejected the request."""

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_status: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message, details={"provider": provider, "provider_status": provider_status})
        self.provider = provider
        self.provider_status = provider_status
        self.body = body


class ExchangeFailed(ProviderRequestError):
    code = "exchange_failed"


class RefreshFailed(ProviderRequestError):
    code = "refresh_failed"


# ── Channel lifecycle ──────────────────────────────────────────────────


class ChannelNotFound(ConnectorError):
    status_code = 404
    code = "channel_not_found"

    def __init__(self, channel_id: int) -> None:
        super().__init__("Channel not found")
        self.channel_id = channel_id


class DuplicateChannel(ConnectorError):
    status_code = 409
    code = "duplicate_channel"

    def __init__(self, provider: str) -> None:
        super().__init__(f"This {provider} account is already connected to this workspace")
        self.provider = provider


class TokenExpired(ConnectorError):
    """Access token is past expiry and could not be refreshed."""

    status_code = 409
    code = "token_expired"

    def __init__(self, channel_id: int, provider: str) -> None:
        super().__init__(f"Access token has expired. Please reconnect the {provider} channel.")
        self.channel_id = channel_id
        self.provider = provider


class ReconnectRequired(ConnectorError):
    """Channel was revoked after repeated failures; only a new OAuth flow restores it."""

    status_code = 409
    code = "reconnect_required"

    def __init__(self, channel_id: int, provider: str) -> None:
        super().__init__(f"The {provider} channel must be reconnected.")
        self.channel_id = channel_id
        self.provider = provider


class WorkspaceAccessDenied(ConnectorError):
    status_code = 403
    code = "workspace_access_denied"

    def __init__(self, workspace_id: str) -> None:
        super().__init__("Not a member of this workspace")
        self.workspace_id = workspace_id


class InvalidIdentifier(ConnectorError):
    status_code = 400
    code = "invalid_identifier"

    def __init__(self, kind: str, value: str) -> None:
        super().__init__(f"Invalid {kind} id")
        self.kind = kind
        self.value = value
