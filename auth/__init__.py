"""
auth — Bearer-token authentication for the channel API.

Provides:
  • HMAC-signed token creation & verification
  • ``get_current_principal`` / ``require_workspace`` FastAPI dependencies
"""
