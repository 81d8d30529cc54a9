"""
donor_sync.auth - Google account connections

OAuth credentials per platform account and signed OAuth state tokens.
"""

from donor_sync.auth.google_auth import SCOPES, AuthenticationError, GoogleAuth
from donor_sync.auth.state import generate_state_token, verify_state_token

__all__ = [
    "SCOPES",
    "AuthenticationError",
    "GoogleAuth",
    "generate_state_token",
    "verify_state_token",
]
