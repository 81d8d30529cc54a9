"""
Sync endpoints: trigger, status, disconnect, logs and the OAuth callback.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any
from urllib.parse import urlencode

from flask import Blueprint, abort, current_app, jsonify, redirect, request

from donor_sync.auth.google_auth import AuthenticationError
from donor_sync.sync.conflict import ConflictPolicy
from donor_sync.sync.models import TriggerType
from donor_sync.sync.service import (
    InvalidStateError,
    NotConnectedError,
    SyncInProgressError,
    SyncService,
)

ACCOUNT_HEADER = "X-Account-Id"

sync_blueprint = Blueprint("sync", __name__)


def account_from_header(req: Any) -> str | None:
    return req.headers.get(ACCOUNT_HEADER) or None


def _service() -> SyncService:
    return current_app.extensions["donor_sync"]["service"]


def _current_account() -> str:
    resolver = current_app.extensions["donor_sync"]["account_resolver"]
    account_id = resolver(request)
    if not account_id:
        abort(HTTPStatus.UNAUTHORIZED)
    return account_id


def _error(message: str, status: HTTPStatus):
    return jsonify({"success": False, "error": message}), status


@sync_blueprint.post("/sync/trigger")
def trigger_sync():
    """Run a manual sync; body {conflictResolution, dryRun?}."""
    account_id = _current_account()
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return _error("Invalid JSON body", HTTPStatus.BAD_REQUEST)

    try:
        policy = ConflictPolicy.parse(data.get("conflictResolution", "platform_wins"))
    except ValueError as e:
        return _error(str(e), HTTPStatus.BAD_REQUEST)

    service = _service()
    remaining = service.cooldown_remaining(account_id)
    if remaining > 0:
        return jsonify(service.rate_limited_result(remaining).to_dict()), HTTPStatus.TOO_MANY_REQUESTS

    try:
        result = service.trigger_sync(
            account_id,
            policy,
            trigger_type=TriggerType.MANUAL,
            dry_run=data.get("dryRun") is True,
        )
    except NotConnectedError:
        return _error("Google Contacts not connected. Please connect first.", HTTPStatus.BAD_REQUEST)
    except SyncInProgressError as e:
        return _error(str(e), HTTPStatus.CONFLICT)
    except ValueError as e:
        return _error(str(e), HTTPStatus.BAD_REQUEST)

    current_app.logger.info(
        f"Manual sync for {account_id}: success={result.success} "
        f"pushed={result.donors_pushed} pulled={result.contacts_pulled}"
    )
    return jsonify(result.to_dict()), HTTPStatus.OK


@sync_blueprint.get("/sync/status")
def sync_status():
    return jsonify(_service().get_status(_current_account()))


@sync_blueprint.post("/sync/disconnect")
def disconnect():
    removed = _service().disconnect(_current_account())
    return jsonify({"success": True, "disconnected": removed})


@sync_blueprint.get("/sync/logs")
def sync_logs():
    account_id = _current_account()
    limit = request.args.get("limit", default=10, type=int)
    return jsonify({"logs": _service().get_logs(account_id, limit)})


@sync_blueprint.get("/sync/auth-url")
def auth_url():
    account_id = _current_account()
    try:
        url = _service().authorization_url(account_id)
    except (AuthenticationError, FileNotFoundError) as e:
        current_app.logger.error(f"Cannot start Google authorization: {e}")
        return _error(str(e), HTTPStatus.INTERNAL_SERVER_ERROR)
    return jsonify({"url": url})


def _sync_redirect(**params: str):
    route = current_app.extensions["donor_sync"]["settings"].ui_sync_route
    separator = "&" if "?" in route else "?"
    return redirect(f"{route}{separator}{urlencode(params)}")


@sync_blueprint.get("/oauth2callback")
def oauth_callback():
    """Google redirects here after consent; the browser goes back to the sync page."""
    provider_error = request.args.get("error")
    if provider_error:
        current_app.logger.warning(f"Google authorization denied: {provider_error}")
        return _sync_redirect(sync="error", reason=provider_error)

    code = request.args.get("code")
    state = request.args.get("state")
    if not code or not state:
        return _sync_redirect(sync="error", reason="missing_params")

    try:
        account_id, email = _service().complete_authorization(code, state)
    except InvalidStateError:
        return _sync_redirect(sync="error", reason="invalid_state")
    except AuthenticationError as e:
        return _sync_redirect(sync="error", reason=str(e))

    current_app.logger.info(f"Connected {email or 'Google account'} for {account_id}")
    return _sync_redirect(sync="success")
