"""
Signed OAuth state tokens.

The state parameter round-trips through Google's consent page and tells the
callback which platform account started the flow. It is signed with
HMAC-SHA256 so a forged or replayed-late state is rejected.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Optional

# Seconds a state token stays valid
DEFAULT_STATE_MAX_AGE = 600

logger = logging.getLogger(__name__)


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_state_token(
    account_id: str, secret: str, now: Optional[float] = None
) -> str:
    """
    Create a signed state token carrying the account id.

    Args:
        account_id: Platform account starting the OAuth flow
        secret: Server-side signing secret
        now: Issue time (epoch seconds), defaults to the current time

    Returns:
        "<base64url payload>.<hex signature>"
    """
    if not secret:
        raise ValueError("A state secret is required to sign OAuth state")

    payload = json.dumps(
        {"accountId": account_id, "ts": int(now if now is not None else time.time())},
        separators=(",", ":"),
    )
    encoded = base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")
    return f"{encoded}.{_sign(encoded, secret)}"


def verify_state_token(
    token: str,
    secret: str,
    max_age: int = DEFAULT_STATE_MAX_AGE,
    now: Optional[float] = None,
) -> Optional[str]:
    """
    Verify a state token and return the account id it carries.

    Returns:
        The account id, or None when the token is malformed, tampered with
        or older than max_age seconds
    """
    if not token or not secret or "." not in token:
        return None

    encoded, signature = token.rsplit(".", 1)
    if not hmac.compare_digest(_sign(encoded, secret), signature):
        logger.warning("Rejected OAuth state with bad signature")
        return None

    try:
        payload = json.loads(base64.urlsafe_b64decode(encoded.encode("ascii")))
        account_id = payload["accountId"]
        issued_at = int(payload["ts"])
    except (binascii.Error, ValueError, KeyError, TypeError):
        return None

    current = now if now is not None else time.time()
    if current - issued_at > max_age:
        logger.info("Rejected expired OAuth state")
        return None

    return str(account_id) if account_id else None
