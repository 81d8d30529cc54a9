"""
Unit tests for the authentication module.

Tests GoogleAuth connection handling with mocked OAuth flows and HTTP calls,
and the signed OAuth state tokens.
"""

import json
import os
import stat
from unittest.mock import MagicMock, patch

import pytest
import requests

from donor_sync.auth.google_auth import (
    REVOKE_URL,
    SCOPES,
    AuthenticationError,
    GoogleAuth,
    validate_account_id,
)
from donor_sync.auth.state import generate_state_token, verify_state_token


def make_creds(token_data=None, valid=True):
    creds = MagicMock()
    creds.valid = valid
    creds.expired = not valid
    creds.refresh_token = "refresh"
    creds.token = "access"
    creds.to_json.return_value = json.dumps(
        token_data or {"token": "access", "refresh_token": "refresh"}
    )
    return creds


def write_token(config_dir, account_id="acme", **extra):
    data = {"token": "access", "refresh_token": "refresh", "client_id": "id"}
    data.update(extra)
    path = config_dir / f"token_{account_id}.json"
    path.write_text(json.dumps(data))
    return path


@pytest.fixture
def auth(tmp_path):
    return GoogleAuth(config_dir=tmp_path)


class TestGoogleAuthInit:
    """Tests for GoogleAuth initialization."""

    def test_config_dir_from_environment_variable(self, tmp_path):
        """Test that DONOR_SYNC_CONFIG_DIR is honoured."""
        with patch.dict(os.environ, {"DONOR_SYNC_CONFIG_DIR": str(tmp_path)}):
            auth = GoogleAuth()

        assert auth.config_dir == tmp_path.resolve()

    def test_default_credentials_path(self, auth, tmp_path):
        """Test that client secrets default to credentials.json in config_dir."""
        assert auth.credentials_path == tmp_path.resolve() / "credentials.json"

    def test_custom_credentials_path(self, tmp_path):
        """Test that an explicit client secrets path is kept."""
        auth = GoogleAuth(config_dir=tmp_path, credentials_path=tmp_path / "client.json")

        assert auth.credentials_path == tmp_path / "client.json"


class TestAccountValidation:
    """Tests for account id validation."""

    @pytest.mark.parametrize("account_id", ["acme", "acme-2", "org_1.prod"])
    def test_valid(self, account_id):
        """Test that safe identifiers pass."""
        assert validate_account_id(account_id) == account_id

    @pytest.mark.parametrize("account_id", ["", "../etc", "a b", "acme/1", None])
    def test_invalid(self, account_id):
        """Test that unsafe identifiers are rejected."""
        with pytest.raises(ValueError, match="Invalid account_id"):
            validate_account_id(account_id)

    def test_token_path(self, auth, tmp_path):
        """Test that tokens are stored per account."""
        assert auth._get_token_path("acme") == tmp_path.resolve() / "token_acme.json"


class TestCredentialStorage:
    """Tests for loading and saving credentials."""

    def test_save_credentials_creates_file(self, auth):
        """Test that saving writes the token with email and sync flag."""
        auth._save_credentials("acme", make_creds(), email="ada@example.com")

        data = json.loads(auth._get_token_path("acme").read_text())
        assert data["token"] == "access"
        assert data["email"] == "ada@example.com"
        assert data["sync_enabled"] is True

    def test_save_credentials_sets_permissions(self, auth):
        """Test that the token file is readable by the owner only."""
        auth._save_credentials("acme", make_creds())

        mode = stat.S_IMODE(auth._get_token_path("acme").stat().st_mode)
        assert mode == 0o600

    def test_save_keeps_previous_email_and_flag(self, auth, tmp_path):
        """Test that a token refresh keeps stored metadata."""
        write_token(tmp_path, email="ada@example.com", sync_enabled=False)

        auth._save_credentials("acme", make_creds())

        data = json.loads(auth._get_token_path("acme").read_text())
        assert data["email"] == "ada@example.com"
        assert data["sync_enabled"] is False

    def test_save_creates_config_dir(self, tmp_path):
        """Test that a missing config directory is created."""
        auth = GoogleAuth(config_dir=tmp_path / "nested" / "dir")

        auth._save_credentials("acme", make_creds())

        assert (tmp_path / "nested" / "dir" / "token_acme.json").exists()

    def test_load_without_file(self, auth):
        """Test that a missing token loads as None."""
        assert auth._load_credentials("acme") is None

    def test_load_invalid_json(self, auth, tmp_path):
        """Test that a corrupt token loads as None."""
        (tmp_path / "token_acme.json").write_text("not json")

        assert auth._load_credentials("acme") is None

    @patch("donor_sync.auth.google_auth.Credentials")
    def test_load_from_file(self, mock_creds_class, auth, tmp_path):
        """Test that stored data is handed to Credentials with the scopes."""
        write_token(tmp_path)

        creds = auth._load_credentials("acme")

        assert creds is mock_creds_class.from_authorized_user_info.return_value
        args = mock_creds_class.from_authorized_user_info.call_args[0]
        assert args[0]["token"] == "access"
        assert args[1] == SCOPES


class TestGetCredentials:
    """Tests for get_credentials and require_credentials."""

    @patch("donor_sync.auth.google_auth.Credentials")
    def test_valid_credentials(self, mock_creds_class, auth, tmp_path):
        """Test that valid stored credentials are returned as-is."""
        write_token(tmp_path)
        mock_creds_class.from_authorized_user_info.return_value = make_creds()

        assert auth.get_credentials("acme") is not None

    @patch("donor_sync.auth.google_auth.Request")
    @patch("donor_sync.auth.google_auth.Credentials")
    def test_expired_credentials_are_refreshed(self, mock_creds_class, mock_request, auth, tmp_path):
        """Test that an expired token is refreshed and saved."""
        write_token(tmp_path)
        creds = make_creds(token_data={"token": "new-access"}, valid=False)
        mock_creds_class.from_authorized_user_info.return_value = creds

        assert auth.get_credentials("acme") is creds
        creds.refresh.assert_called_once()
        data = json.loads(auth._get_token_path("acme").read_text())
        assert data["token"] == "new-access"

    @patch("donor_sync.auth.google_auth.Request")
    @patch("donor_sync.auth.google_auth.Credentials")
    def test_refresh_failure(self, mock_creds_class, mock_request, auth, tmp_path):
        """Test that a failed refresh yields no credentials."""
        from google.auth.exceptions import RefreshError

        write_token(tmp_path)
        creds = make_creds(valid=False)
        creds.refresh.side_effect = RefreshError("revoked")
        mock_creds_class.from_authorized_user_info.return_value = creds

        assert auth.get_credentials("acme") is None

    def test_require_credentials_raises(self, auth):
        """Test that a missing connection raises AuthenticationError."""
        with pytest.raises(AuthenticationError, match="not connected"):
            auth.require_credentials("acme")


class TestAuthenticate:
    """Tests for the installed-app flow."""

    def test_missing_client_secrets(self, auth):
        """Test that a missing secrets file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="OAuth credentials file not found"):
            auth.authenticate("acme", force_reauth=True)

    @patch("donor_sync.auth.google_auth.requests")
    @patch("donor_sync.auth.google_auth.InstalledAppFlow")
    def test_runs_flow_and_saves(self, mock_flow_class, mock_requests, auth, tmp_path):
        """Test that the flow result is stored with the user's email."""
        (tmp_path / "credentials.json").write_text("{}")
        mock_flow_class.from_client_secrets_file.return_value.run_local_server.return_value = (
            make_creds()
        )
        mock_requests.get.return_value.json.return_value = {"email": "ada@example.com"}

        auth.authenticate("acme", force_reauth=True)

        assert auth.is_connected("acme")
        assert auth.get_account_email("acme") == "ada@example.com"

    @patch("donor_sync.auth.google_auth.InstalledAppFlow")
    def test_flow_failure(self, mock_flow_class, auth, tmp_path):
        """Test that flow errors become AuthenticationError."""
        (tmp_path / "credentials.json").write_text("{}")
        mock_flow_class.from_client_secrets_file.side_effect = Exception("browser closed")

        with pytest.raises(AuthenticationError, match="browser closed"):
            auth.authenticate("acme", force_reauth=True)


class TestWebFlow:
    """Tests for the web authorization flow."""

    @patch("donor_sync.auth.google_auth.Flow")
    def test_authorization_url(self, mock_flow_class, auth, tmp_path):
        """Test that offline access is requested with the given state."""
        (tmp_path / "credentials.json").write_text("{}")
        flow = mock_flow_class.from_client_secrets_file.return_value
        flow.authorization_url.return_value = ("https://accounts.google.com/o/oauth2", "s")

        url = auth.get_authorization_url("http://localhost/oauth2callback", "state-1")

        assert url == "https://accounts.google.com/o/oauth2"
        kwargs = mock_flow_class.from_client_secrets_file.call_args.kwargs
        assert kwargs["redirect_uri"] == "http://localhost/oauth2callback"
        assert kwargs["state"] == "state-1"
        assert flow.authorization_url.call_args.kwargs["access_type"] == "offline"

    @patch("donor_sync.auth.google_auth.requests")
    @patch("donor_sync.auth.google_auth.Flow")
    def test_exchange_code(self, mock_flow_class, mock_requests, auth, tmp_path):
        """Test that the code is exchanged and the connection stored."""
        (tmp_path / "credentials.json").write_text("{}")
        flow = mock_flow_class.from_client_secrets_file.return_value
        flow.credentials = make_creds()
        mock_requests.get.return_value.json.return_value = {"email": "ada@example.com"}

        email = auth.exchange_code("acme", "code-1", "http://localhost/oauth2callback")

        assert email == "ada@example.com"
        flow.fetch_token.assert_called_once_with(code="code-1")
        assert auth.is_connected("acme")

    @patch("donor_sync.auth.google_auth.Flow")
    def test_exchange_code_failure(self, mock_flow_class, auth, tmp_path):
        """Test that a rejected code raises AuthenticationError."""
        (tmp_path / "credentials.json").write_text("{}")
        mock_flow_class.from_client_secrets_file.return_value.fetch_token.side_effect = (
            Exception("invalid_grant")
        )

        with pytest.raises(AuthenticationError, match="invalid_grant"):
            auth.exchange_code("acme", "bad", "http://localhost/oauth2callback")
        assert not auth.is_connected("acme")


class TestConnectionMetadata:
    """Tests for stored connection metadata."""

    def test_sync_enabled_default(self, auth, tmp_path):
        """Test that scheduled sync defaults to enabled."""
        write_token(tmp_path)

        assert auth.is_sync_enabled("acme") is True

    def test_set_sync_enabled(self, auth, tmp_path):
        """Test toggling scheduled sync."""
        write_token(tmp_path)

        assert auth.set_sync_enabled("acme", False) is True
        assert auth.is_sync_enabled("acme") is False

    def test_set_sync_enabled_not_connected(self, auth):
        """Test that toggling an unknown account fails."""
        assert auth.set_sync_enabled("acme", False) is False

    def test_list_accounts(self, auth, tmp_path):
        """Test listing all and enabled-only connections."""
        write_token(tmp_path, "acme")
        write_token(tmp_path, "globex", sync_enabled=False)

        assert auth.list_accounts() == ["acme", "globex"]
        assert auth.list_accounts(enabled_only=True) == ["acme"]

    def test_list_accounts_without_dir(self, tmp_path):
        """Test that a missing config directory lists nothing."""
        assert GoogleAuth(config_dir=tmp_path / "missing").list_accounts() == []

    def test_stored_email(self, auth, tmp_path):
        """Test that the stored email is returned without a network call."""
        write_token(tmp_path, email="ada@example.com")

        with patch("donor_sync.auth.google_auth.requests") as mock_requests:
            assert auth.get_account_email("acme") == "ada@example.com"
            mock_requests.get.assert_not_called()


class TestDisconnect:
    """Tests for revocation and clearing."""

    @patch("donor_sync.auth.google_auth.requests.post")
    def test_revoke_posts_refresh_token(self, mock_post, auth, tmp_path):
        """Test that the refresh token is revoked at Google."""
        write_token(tmp_path)
        mock_post.return_value.status_code = 200

        assert auth.revoke_credentials("acme") is True
        assert mock_post.call_args[0][0] == REVOKE_URL
        assert mock_post.call_args.kwargs["params"] == {"token": "refresh"}

    @patch("donor_sync.auth.google_auth.requests.post")
    def test_revoke_failure_is_reported(self, mock_post, auth, tmp_path):
        """Test that network errors during revocation return False."""
        write_token(tmp_path)
        mock_post.side_effect = requests.ConnectionError("offline")

        assert auth.revoke_credentials("acme") is False

    def test_revoke_without_connection(self, auth):
        """Test that an unknown account has nothing to revoke."""
        assert auth.revoke_credentials("acme") is False

    def test_clear_credentials(self, auth, tmp_path):
        """Test that clearing removes the token file once."""
        write_token(tmp_path)

        assert auth.clear_credentials("acme") is True
        assert auth.clear_credentials("acme") is False
        assert not auth.is_connected("acme")


class TestStateTokens:
    """Tests for signed OAuth state."""

    def test_round_trip(self):
        """Test that a fresh token yields its account id."""
        token = generate_state_token("acme", "secret", now=1000)

        assert verify_state_token(token, "secret", now=1010) == "acme"

    def test_wrong_secret(self):
        """Test that a token signed with another secret is rejected."""
        token = generate_state_token("acme", "secret", now=1000)

        assert verify_state_token(token, "other", now=1010) is None

    def test_tampered_payload(self):
        """Test that changing the payload breaks the signature."""
        token = generate_state_token("acme", "secret", now=1000)
        forged = generate_state_token("globex", "secret", now=1000)
        mixed = forged.split(".")[0] + "." + token.split(".")[1]

        assert verify_state_token(mixed, "secret", now=1010) is None

    def test_expired(self):
        """Test that old tokens are rejected."""
        token = generate_state_token("acme", "secret", now=1000)

        assert verify_state_token(token, "secret", max_age=600, now=1601) is None

    @pytest.mark.parametrize("token", ["", "no-dot", "abc.def"])
    def test_malformed(self, token):
        """Test that malformed tokens are rejected."""
        assert verify_state_token(token, "secret") is None

    def test_secret_required(self):
        """Test that signing without a secret fails."""
        with pytest.raises(ValueError):
            generate_state_token("acme", "")
