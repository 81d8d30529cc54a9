"""
donor_sync.web - Flask application exposing the sync endpoints
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from flask import Flask

from donor_sync.config.settings import Settings
from donor_sync.sync.service import SyncService
from donor_sync.web.routes import ACCOUNT_HEADER, account_from_header, sync_blueprint


def create_app(
    settings: Settings | None = None,
    service: SyncService | None = None,
    account_resolver: Callable[[Any], str | None] | None = None,
) -> Flask:
    """
    Create the Flask application.

    Args:
        settings: Runtime settings (default: loaded from the config dir)
        service: Sync service (default: built from settings)
        account_resolver: Maps the request to the caller's account id;
            defaults to the X-Account-Id header

    Returns:
        Configured Flask app
    """
    if settings is None:
        settings = service.settings if service is not None else Settings.load()
    if service is None:
        service = SyncService.from_settings(settings)

    app = Flask(__name__)
    app.extensions["donor_sync"] = {
        "settings": settings,
        "service": service,
        "account_resolver": account_resolver or account_from_header,
    }
    app.register_blueprint(sync_blueprint)
    return app


__all__ = ["ACCOUNT_HEADER", "create_app", "sync_blueprint"]
