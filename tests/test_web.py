"""
Tests for the Flask sync endpoints.
"""

from http import HTTPStatus
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from donor_sync.auth.google_auth import AuthenticationError, GoogleAuth
from donor_sync.config.settings import Settings
from donor_sync.sync.conflict import ConflictPolicy
from donor_sync.sync.engine import SyncResult
from donor_sync.sync.models import TriggerType
from donor_sync.sync.service import (
    InvalidStateError,
    NotConnectedError,
    SyncInProgressError,
    SyncService,
)
from donor_sync.web import ACCOUNT_HEADER, create_app

HEADERS = {ACCOUNT_HEADER: "acme"}


@pytest.fixture
def settings(tmp_path):
    return Settings.from_config({"state_secret": "test-secret"}, tmp_path)


@pytest.fixture
def service(settings):
    service = MagicMock(spec=SyncService)
    service.settings = settings
    service.cooldown_remaining.return_value = 0
    service.rate_limited_result.side_effect = SyncService.rate_limited_result
    return service


@pytest.fixture
def client(settings, service):
    app = create_app(settings, service)
    app.config["TESTING"] = True
    return app.test_client()


def query(location: str) -> dict[str, list[str]]:
    return parse_qs(urlparse(location).query)


class TestAccountResolution:
    """Tests for resolving the caller's account."""

    def test_missing_header_is_unauthorized(self, client):
        """Test that requests without an account are rejected."""
        assert client.get("/sync/status").status_code == HTTPStatus.UNAUTHORIZED

    def test_custom_resolver(self, settings, service):
        """Test that a custom resolver replaces the header lookup."""
        service.get_status.return_value = {"isConnected": False}
        app = create_app(settings, service, account_resolver=lambda req: "globex")

        response = app.test_client().get("/sync/status")

        assert response.status_code == HTTPStatus.OK
        service.get_status.assert_called_once_with("globex")


class TestTrigger:
    """Tests for POST /sync/trigger."""

    def test_success(self, client, service):
        """Test that a manual sync returns the result."""
        service.trigger_sync.return_value = SyncResult(success=True, donors_pushed=2)

        response = client.post(
            "/sync/trigger",
            json={"conflictResolution": "newest_wins", "dryRun": True},
            headers=HEADERS,
        )

        assert response.status_code == HTTPStatus.OK
        assert response.get_json()["donorsPushed"] == 2
        service.trigger_sync.assert_called_once_with(
            "acme", ConflictPolicy.NEWEST_WINS, trigger_type=TriggerType.MANUAL, dry_run=True
        )

    def test_default_policy(self, client, service):
        """Test that platform_wins is used when the body has no policy."""
        service.trigger_sync.return_value = SyncResult(success=True)

        client.post("/sync/trigger", headers=HEADERS)

        assert service.trigger_sync.call_args.args[1] == ConflictPolicy.PLATFORM_WINS
        assert service.trigger_sync.call_args.kwargs["dry_run"] is False

    @pytest.mark.parametrize("value", ["false", "true", 1, "yes"])
    def test_dry_run_requires_json_true(self, client, service, value):
        """Test that only a JSON true turns on a dry run."""
        service.trigger_sync.return_value = SyncResult(success=True)

        client.post("/sync/trigger", json={"dryRun": value}, headers=HEADERS)

        assert service.trigger_sync.call_args.kwargs["dry_run"] is False

    def test_invalid_policy(self, client, service):
        """Test that an unknown policy is a bad request."""
        response = client.post(
            "/sync/trigger", json={"conflictResolution": "coin_flip"}, headers=HEADERS
        )

        assert response.status_code == HTTPStatus.BAD_REQUEST
        assert response.get_json()["success"] is False
        service.trigger_sync.assert_not_called()

    def test_rate_limited(self, client, service):
        """Test that the cooldown answers 429 without running a sync."""
        service.cooldown_remaining.return_value = 42

        response = client.post("/sync/trigger", json={}, headers=HEADERS)

        assert response.status_code == HTTPStatus.TOO_MANY_REQUESTS
        body = response.get_json()
        assert body["success"] is False
        assert "42 seconds" in body["errorDetails"][0]
        service.trigger_sync.assert_not_called()

    def test_not_connected(self, client, service):
        """Test that an unconnected account is a bad request."""
        service.trigger_sync.side_effect = NotConnectedError("acme")

        response = client.post("/sync/trigger", json={}, headers=HEADERS)

        assert response.status_code == HTTPStatus.BAD_REQUEST
        assert "not connected" in response.get_json()["error"]

    def test_already_running(self, client, service):
        """Test that a concurrent run is a conflict."""
        service.trigger_sync.side_effect = SyncInProgressError("A sync is already running for acme")

        response = client.post("/sync/trigger", json={}, headers=HEADERS)

        assert response.status_code == HTTPStatus.CONFLICT

    def test_failed_run_is_still_ok(self, client, service):
        """Test that a failed sync is reported in the body with 200."""
        result = SyncResult(success=False)
        result.add_error("Sync failed: token revoked")
        service.trigger_sync.return_value = result

        response = client.post("/sync/trigger", json={}, headers=HEADERS)

        assert response.status_code == HTTPStatus.OK
        assert response.get_json()["success"] is False


class TestStatusLogsDisconnect:
    """Tests for the read and disconnect endpoints."""

    def test_status(self, client, service):
        """Test that the connection status is returned."""
        service.get_status.return_value = {
            "isConnected": True,
            "externalAccountEmail": "ada@example.com",
            "lastSyncedAt": None,
        }

        response = client.get("/sync/status", headers=HEADERS)

        assert response.get_json()["externalAccountEmail"] == "ada@example.com"

    def test_logs_limit(self, client, service):
        """Test that the limit query parameter is passed through."""
        service.get_logs.return_value = [{"id": 1}]

        response = client.get("/sync/logs?limit=3", headers=HEADERS)

        assert response.get_json() == {"logs": [{"id": 1}]}
        service.get_logs.assert_called_once_with("acme", 3)

    def test_disconnect(self, client, service):
        """Test that disconnect reports whether a connection was removed."""
        service.disconnect.return_value = True

        response = client.post("/sync/disconnect", headers=HEADERS)

        assert response.get_json() == {"success": True, "disconnected": True}


class TestOAuthEndpoints:
    """Tests for the authorization URL and the OAuth callback."""

    def test_auth_url(self, client, service):
        """Test that the consent URL is returned."""
        service.authorization_url.return_value = "https://accounts.google.com/auth"

        response = client.get("/sync/auth-url", headers=HEADERS)

        assert response.get_json() == {"url": "https://accounts.google.com/auth"}

    def test_auth_url_without_client_secrets(self, client, service):
        """Test that missing client secrets is a server error."""
        service.authorization_url.side_effect = FileNotFoundError("credentials.json")

        response = client.get("/sync/auth-url", headers=HEADERS)

        assert response.status_code == HTTPStatus.INTERNAL_SERVER_ERROR

    def test_callback_success(self, client, service, settings):
        """Test that a completed authorization redirects with success."""
        service.complete_authorization.return_value = ("acme", "ada@example.com")

        response = client.get("/oauth2callback?code=abc&state=xyz")

        assert response.status_code == HTTPStatus.FOUND
        assert response.location.startswith(settings.ui_sync_route)
        assert query(response.location) == {"sync": ["success"]}
        service.complete_authorization.assert_called_once_with("abc", "xyz")

    def test_callback_provider_error(self, client, service):
        """Test that a denied consent is passed on as the reason."""
        response = client.get("/oauth2callback?error=access_denied")

        assert query(response.location) == {"sync": ["error"], "reason": ["access_denied"]}
        service.complete_authorization.assert_not_called()

    def test_callback_missing_params(self, client):
        """Test that a callback without code or state is rejected."""
        response = client.get("/oauth2callback?code=abc")

        assert query(response.location)["reason"] == ["missing_params"]

    def test_callback_invalid_state(self, client, service):
        """Test that a forged state is reported as invalid_state."""
        service.complete_authorization.side_effect = InvalidStateError("invalid_state")

        response = client.get("/oauth2callback?code=abc&state=forged")

        assert query(response.location)["reason"] == ["invalid_state"]

    def test_callback_exchange_failure(self, client, service):
        """Test that a failed token exchange carries the message."""
        service.complete_authorization.side_effect = AuthenticationError("invalid_grant")

        response = client.get("/oauth2callback?code=abc&state=xyz")

        assert query(response.location)["reason"] == ["invalid_grant"]

    def test_redirect_appends_to_existing_query(self, settings, service):
        """Test that the sync route may already carry a query string."""
        settings.ui_sync_route = "/settings?tab=google"
        app = create_app(settings, service)

        response = app.test_client().get("/oauth2callback?error=access_denied")

        assert response.location.startswith("/settings?tab=google&")


class TestWithRealService:
    """End-to-end request handling with a real SyncService."""

    def test_trigger_then_logs(self, settings, sync_db, platform_db, fake_client, add_donor):
        """Test that a triggered sync shows up in the logs endpoint."""
        auth = MagicMock(spec=GoogleAuth)
        auth.is_connected.return_value = True
        service = SyncService(
            settings,
            auth,
            sync_db,
            platform_db,
            client_factory=lambda account_id: fake_client,
            sleep=lambda seconds: None,
        )
        add_donor()
        client = create_app(settings, service).test_client()

        first = client.post("/sync/trigger", json={}, headers=HEADERS)
        second = client.post("/sync/trigger", json={}, headers=HEADERS)
        logs = client.get("/sync/logs", headers=HEADERS).get_json()["logs"]

        assert first.status_code == HTTPStatus.OK
        assert first.get_json()["donorsPushed"] == 1
        assert second.status_code == HTTPStatus.TOO_MANY_REQUESTS
        assert len(logs) == 1
        assert logs[0]["donorsPushed"] == 1
