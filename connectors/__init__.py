"""
connectors — OAuth channel credential lifecycle.

Provides:
  • A registry of supported providers and their wire quirks
  • Authorization URLs with single-use CSRF state (PKCE where supported)
  • Code exchange and token refresh against provider token endpoints
  • Fernet encryption of tokens at rest
  • Lazy, single-flight refresh with per-channel health tracking
  • An append-only audit trail of refresh attempts
"""
