"""
OAuth2 connection management for the Google Contacts sync.

Provides OAuth 2.0 authentication with support for:
- One Google connection per platform account
- Automatic token refresh
- Installed-app flow for the CLI and web flow for the HTTP callback
- Token revocation on disconnect
- Secure credential storage in the configuration directory
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

import requests
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow, InstalledAppFlow

from donor_sync.utils.paths import resolve_config_dir

# OAuth2 scopes required for Google Contacts access
SCOPES = [
    "https://www.googleapis.com/auth/contacts",
    "https://www.googleapis.com/auth/userinfo.email",
    "openid",  # Required by Google when requesting userinfo.email
]

USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"

# Account ids end up in file names
ACCOUNT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

TOKEN_PREFIX = "token_"

# Default auth timeout for network requests (in seconds)
DEFAULT_AUTH_TIMEOUT = 10

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when authentication fails or credentials are invalid."""

    pass


def validate_account_id(account_id: str) -> str:
    """
    Validate an account identifier.

    Raises:
        ValueError: If account_id is empty or contains unsafe characters
    """
    if not account_id or not ACCOUNT_ID_PATTERN.match(account_id):
        raise ValueError(
            f"Invalid account_id '{account_id}'. "
            "Use letters, digits, '.', '_' or '-'."
        )
    return account_id


class GoogleAuth:
    """
    OAuth2 connection manager, one Google account per platform account.

    Each connection lives in token_<account_id>.json next to the OAuth client
    secrets. Besides the serialized credentials the file records the Google
    email and whether scheduled sync is enabled.

    Attributes:
        config_dir: Directory for storing credentials and tokens
        credentials_path: Path to OAuth client credentials file

    Usage:
        auth = GoogleAuth()

        # CLI: run the local-server flow
        creds = auth.authenticate('acme')

        # Web: exchange the code delivered to the OAuth callback
        auth.exchange_code('acme', code, redirect_uri)

        # Later
        creds = auth.get_credentials('acme')
    """

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        credentials_path: Optional[Path] = None,
        auth_timeout: int = DEFAULT_AUTH_TIMEOUT,
    ):
        """
        Initialize the authentication manager.

        Args:
            config_dir: Directory for storing tokens.
                       Defaults to ~/.donor-sync/ or $DONOR_SYNC_CONFIG_DIR
            credentials_path: OAuth client secrets file
                       (default: <config_dir>/credentials.json)
            auth_timeout: Timeout in seconds for network requests (default: 10)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.credentials_path = (
            Path(credentials_path)
            if credentials_path
            else self.config_dir / "credentials.json"
        )
        self.auth_timeout = auth_timeout

    def _get_token_path(self, account_id: str) -> Path:
        validate_account_id(account_id)
        return self.config_dir / f"{TOKEN_PREFIX}{account_id}.json"

    def _ensure_config_dir(self) -> None:
        """Create the configuration directory (mode 700) if it doesn't exist."""
        if not self.config_dir.exists():
            self.config_dir.mkdir(parents=True, mode=0o700)
            logger.debug(f"Created config directory: {self.config_dir}")

    def _read_token_data(self, account_id: str) -> Optional[dict[str, Any]]:
        token_path = self._get_token_path(account_id)
        if not token_path.exists():
            return None
        try:
            data = json.loads(token_path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Invalid token file for {account_id}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _write_token_data(self, account_id: str, data: dict[str, Any]) -> None:
        self._ensure_config_dir()
        token_path = self._get_token_path(account_id)
        token_path.write_text(json.dumps(data))
        token_path.chmod(0o600)

    def _load_credentials(self, account_id: str) -> Optional[Credentials]:
        """
        Load credentials from the token file if it exists.

        Returns:
            Credentials object if the token file exists and is valid, None otherwise
        """
        data = self._read_token_data(account_id)
        if data is None:
            logger.debug(f"No token file found for {account_id}")
            return None

        try:
            creds: Credentials = Credentials.from_authorized_user_info(data, SCOPES)
            logger.debug(f"Loaded credentials for {account_id}")
            return creds
        except ValueError as e:
            logger.warning(f"Invalid token file for {account_id}: {e}")
            return None

    def _save_credentials(
        self,
        account_id: str,
        creds: Credentials,
        email: Optional[str] = None,
    ) -> None:
        """
        Save credentials, keeping the stored email and sync flag.

        Args:
            account_id: Account identifier
            creds: Credentials object to save
            email: Email address to store; keeps the previous one when None
        """
        previous = self._read_token_data(account_id) or {}
        token_data = json.loads(creds.to_json())
        token_data["email"] = email or previous.get("email")
        token_data["sync_enabled"] = previous.get("sync_enabled", True)

        self._write_token_data(account_id, token_data)
        logger.debug(f"Saved credentials for {account_id}")

    def _refresh_credentials(self, creds: Credentials) -> bool:
        """
        Attempt to refresh expired credentials.

        Returns:
            True if refresh succeeded, False otherwise
        """
        if not creds.refresh_token:
            logger.debug("No refresh token available")
            return False

        try:
            creds.refresh(Request())
            logger.debug("Successfully refreshed credentials")
            return True
        except RefreshError as e:
            logger.warning(f"Failed to refresh credentials: {e}")
            return False

    def _fetch_user_email(self, creds: Credentials) -> Optional[str]:
        """
        Fetch the authenticated user's email address from Google.

        Returns:
            Email address if available, None otherwise
        """
        try:
            response = requests.get(
                USERINFO_URL,
                headers={"Authorization": f"Bearer {creds.token}"},
                timeout=self.auth_timeout,
            )
            response.raise_for_status()
            email = response.json().get("email")
            return str(email) if email else None
        except requests.RequestException as e:
            logger.debug(f"Failed to fetch user email: {e}")
            return None

    # =========================================================================
    # Credentials
    # =========================================================================

    def get_credentials(self, account_id: str) -> Optional[Credentials]:
        """
        Get valid credentials for an account if available.

        Attempts to load and refresh credentials without user interaction.

        Args:
            account_id: Account identifier

        Returns:
            Valid Credentials object, or None if not available

        Raises:
            ValueError: If account_id is invalid
        """
        validate_account_id(account_id)

        creds = self._load_credentials(account_id)
        if creds is None:
            return None

        if creds.valid:
            return creds

        if creds.expired and creds.refresh_token and self._refresh_credentials(creds):
            self._save_credentials(account_id, creds)
            return creds

        return None

    def require_credentials(self, account_id: str) -> Credentials:
        """
        Get valid credentials or fail.

        Raises:
            AuthenticationError: If the account is not connected or its token
                cannot be refreshed
        """
        creds = self.get_credentials(account_id)
        if creds is None:
            raise AuthenticationError(
                f"Google Contacts not connected for {account_id}. "
                "Please connect first."
            )
        return creds

    def is_connected(self, account_id: str) -> bool:
        """True if a stored connection exists for the account."""
        return self._get_token_path(account_id).exists()

    def authenticate(self, account_id: str, force_reauth: bool = False) -> Credentials:
        """
        Connect a Google account with the installed-app (local server) flow.

        Args:
            account_id: Account identifier
            force_reauth: If True, ignore existing credentials and re-authenticate

        Returns:
            Valid Credentials object

        Raises:
            ValueError: If account_id is invalid
            AuthenticationError: If authentication fails
            FileNotFoundError: If the client secrets file is not found
        """
        validate_account_id(account_id)

        if not force_reauth:
            creds = self.get_credentials(account_id)
            if creds is not None:
                logger.info(f"Using existing credentials for {account_id}")
                return creds

        self._require_client_secrets()
        logger.info(f"Starting OAuth flow for {account_id}")

        try:
            flow = InstalledAppFlow.from_client_secrets_file(
                str(self.credentials_path), SCOPES
            )
            new_creds: Credentials = flow.run_local_server(port=0)
        except Exception as e:
            logger.error(f"Authentication failed for {account_id}: {e}")
            raise AuthenticationError(
                f"Failed to authenticate {account_id}: {e}"
            ) from e

        self._save_credentials(account_id, new_creds, email=self._fetch_user_email(new_creds))
        logger.info(f"Successfully authenticated {account_id}")
        return new_creds

    def _require_client_secrets(self) -> None:
        if not self.credentials_path.exists():
            raise FileNotFoundError(
                f"OAuth credentials file not found: {self.credentials_path}\n"
                "Please download your OAuth client credentials from "
                "Google Cloud Console and save them to this location."
            )

    def build_web_flow(self, redirect_uri: str, state: Optional[str] = None) -> Flow:
        """
        Create a web-server OAuth flow.

        Args:
            redirect_uri: Callback URL registered for the OAuth client
            state: Opaque state echoed back to the callback

        Raises:
            FileNotFoundError: If the client secrets file is not found
        """
        self._require_client_secrets()
        return Flow.from_client_secrets_file(
            str(self.credentials_path),
            scopes=SCOPES,
            redirect_uri=redirect_uri,
            state=state,
            # the callback builds a fresh flow, so no PKCE verifier survives
            autogenerate_code_verifier=False,
        )

    def get_authorization_url(self, redirect_uri: str, state: str) -> str:
        """URL of Google's consent page; offline access so a refresh token is issued."""
        flow = self.build_web_flow(redirect_uri, state=state)
        url, _ = flow.authorization_url(
            access_type="offline", prompt="consent", include_granted_scopes="true"
        )
        return str(url)

    def exchange_code(self, account_id: str, code: str, redirect_uri: str) -> str:
        """
        Finish the web flow and store the resulting connection.

        Args:
            account_id: Account the connection belongs to
            code: Authorization code from the callback
            redirect_uri: The same redirect URI used to start the flow

        Returns:
            The connected Google email, or "" when it cannot be read

        Raises:
            AuthenticationError: If the code cannot be exchanged
        """
        validate_account_id(account_id)
        flow = self.build_web_flow(redirect_uri)

        try:
            flow.fetch_token(code=code)
        except Exception as e:
            logger.error(f"Token exchange failed for {account_id}: {e}")
            raise AuthenticationError(f"Token exchange failed: {e}") from e

        creds: Credentials = flow.credentials
        email = self._fetch_user_email(creds)
        self._save_credentials(account_id, creds, email=email)
        logger.info(f"Connected Google account {email or '(unknown)'} for {account_id}")
        return email or ""

    # =========================================================================
    # Connection metadata
    # =========================================================================

    def get_account_email(self, account_id: str) -> Optional[str]:
        """
        Get the Google email associated with a connected account.

        Reads the email stored with the token; if missing, fetches it from
        Google's userinfo API and stores it for future use.
        """
        data = self._read_token_data(account_id)
        if data is None:
            return None

        email: Optional[str] = data.get("email")
        if not email:
            creds = self.get_credentials(account_id)
            if creds:
                email = self._fetch_user_email(creds)
                if email:
                    data = self._read_token_data(account_id) or data
                    data["email"] = email
                    self._write_token_data(account_id, data)
                    logger.debug(f"Updated stored email for {account_id}")
        return email

    def is_sync_enabled(self, account_id: str) -> bool:
        data = self._read_token_data(account_id)
        return bool(data and data.get("sync_enabled", True))

    def set_sync_enabled(self, account_id: str, enabled: bool) -> bool:
        """
        Turn scheduled sync on or off for a connection.

        Returns:
            False if the account is not connected
        """
        data = self._read_token_data(account_id)
        if data is None:
            return False
        data["sync_enabled"] = enabled
        self._write_token_data(account_id, data)
        return True

    def list_accounts(self, enabled_only: bool = False) -> list[str]:
        """
        List connected account ids.

        Args:
            enabled_only: Only accounts with scheduled sync enabled

        Returns:
            Sorted account ids
        """
        if not self.config_dir.exists():
            return []

        accounts = []
        for path in sorted(self.config_dir.glob(f"{TOKEN_PREFIX}*.json")):
            account_id = path.stem[len(TOKEN_PREFIX):]
            if not ACCOUNT_ID_PATTERN.match(account_id):
                continue
            if enabled_only and not self.is_sync_enabled(account_id):
                continue
            accounts.append(account_id)
        return accounts

    # =========================================================================
    # Disconnect
    # =========================================================================

    def revoke_credentials(self, account_id: str) -> bool:
        """
        Revoke the stored token at Google.

        Failures are logged; the local credential is not touched.

        Returns:
            True if Google confirmed the revocation
        """
        data = self._read_token_data(account_id)
        if data is None:
            return False

        token = data.get("refresh_token") or data.get("token")
        if not token:
            return False

        try:
            response = requests.post(
                REVOKE_URL,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.auth_timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Failed to revoke token for {account_id}: {e}")
            return False

        if response.status_code != 200:
            logger.warning(
                f"Token revocation for {account_id} returned {response.status_code}"
            )
            return False

        logger.info(f"Revoked Google token for {account_id}")
        return True

    def clear_credentials(self, account_id: str) -> bool:
        """
        Remove stored credentials for an account.

        Returns:
            True if credentials were removed, False if they didn't exist

        Raises:
            ValueError: If account_id is invalid
        """
        token_path = self._get_token_path(account_id)

        if token_path.exists():
            token_path.unlink()
            logger.info(f"Cleared credentials for {account_id}")
            return True

        return False
