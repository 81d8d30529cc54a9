"""
Caller-side sync operations shared by the web app, the CLI and the daemon.

SyncService owns the collaborators a sync needs (auth, both databases, the
engine) and adds the rules the engine leaves to its caller: one active run
per account, a cooldown between manual triggers, connection status and the
OAuth web flow.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Optional

from donor_sync.api.people_api import PeopleAPI
from donor_sync.auth.google_auth import AuthenticationError, GoogleAuth, validate_account_id
from donor_sync.auth.state import generate_state_token, verify_state_token
from donor_sync.config.settings import Settings
from donor_sync.storage.db import SyncDatabase
from donor_sync.storage.platform import PlatformDatabase
from donor_sync.sync.conflict import ConflictPolicy
from donor_sync.sync.engine import SyncEngine, SyncResult
from donor_sync.sync.models import TriggerType
from donor_sync.sync.ports import ContactClient

logger = logging.getLogger(__name__)


class NotConnectedError(Exception):
    """Raised when an account has no Google connection."""

    pass


class SyncInProgressError(Exception):
    """Raised when a run for the same account is already active."""

    pass


class InvalidStateError(AuthenticationError):
    """Raised when the OAuth state parameter is forged, malformed or expired."""

    pass


class SyncService:
    """
    Entry point for triggering syncs and managing Google connections.

    Usage:
        service = SyncService.from_settings(Settings.load())

        result = service.trigger_sync('acme', 'newest_wins')
        status = service.get_status('acme')

        # Web OAuth flow
        url = service.authorization_url('acme')
        account_id, email = service.complete_authorization(code, state)
    """

    def __init__(
        self,
        settings: Settings,
        auth: GoogleAuth,
        sync_db: SyncDatabase,
        platform_db: PlatformDatabase,
        client_factory: Optional[Callable[[str], ContactClient]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the service.

        Args:
            settings: Runtime settings
            auth: Google connection manager
            sync_db: Mapping store and sync log
            platform_db: Donor read model and write port
            client_factory: Builds the Google client for an account
                (default: PeopleAPI with the account's credentials)
            sleep: Sleep function for the engine's throttle
            clock: Monotonic clock for the manual-trigger cooldown
        """
        self.settings = settings
        self.auth = auth
        self.sync_db = sync_db
        self.platform_db = platform_db
        self.client_factory = client_factory or self._build_client
        self._clock = clock
        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._last_manual_trigger: dict[str, float] = {}

        self.engine = SyncEngine(
            mapping_store=sync_db,
            sync_log=sync_db,
            repository=platform_db,
            client_factory=self.client_factory,
            contact_group_name=settings.contact_group_name,
            throttle_interval=settings.throttle_interval,
            sleep=sleep,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncService":
        """Create the service with file-backed databases from settings."""
        settings.config_dir.mkdir(parents=True, exist_ok=True)

        sync_db = SyncDatabase(str(settings.database_path))
        sync_db.initialize()
        platform_db = PlatformDatabase(str(settings.platform_database_path))
        platform_db.initialize()

        auth = GoogleAuth(
            config_dir=settings.config_dir,
            credentials_path=settings.client_secrets_file,
            auth_timeout=settings.auth_timeout,
        )
        return cls(settings, auth, sync_db, platform_db)

    def _build_client(self, account_id: str) -> PeopleAPI:
        return PeopleAPI(
            self.auth.require_credentials(account_id),
            timeout=self.settings.request_timeout,
            max_retries=self.settings.api_max_retries,
            max_members=self.settings.api_max_members,
        )

    # =========================================================================
    # Sync
    # =========================================================================

    def cooldown_remaining(self, account_id: str) -> int:
        """Seconds until the account may trigger another manual sync."""
        with self._lock:
            return self._cooldown_remaining(account_id)

    def _cooldown_remaining(self, account_id: str) -> int:
        last = self._last_manual_trigger.get(account_id)
        if last is None or self.settings.manual_cooldown <= 0:
            return 0
        remaining = self.settings.manual_cooldown - (self._clock() - last)
        return max(0, int(remaining + 0.999))

    @staticmethod
    def rate_limited_result(remaining: int) -> SyncResult:
        result = SyncResult(success=False)
        result.add_error(
            f"Rate limited: please wait {remaining} seconds before syncing again"
        )
        return result

    def trigger_sync(
        self,
        account_id: str,
        policy: ConflictPolicy | str | None = None,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        dry_run: bool = False,
    ) -> SyncResult:
        """
        Run a sync for an account.

        Args:
            account_id: Platform account to sync
            policy: Conflict policy (default: settings.default_policy)
            trigger_type: manual, scheduled or initial
            dry_run: Count what would change without writing anything

        Returns:
            SyncResult of the run, or a failed result with a rate-limit
            message when a manual trigger comes within the cooldown

        Raises:
            ValueError: If the account id or policy is invalid
            NotConnectedError: If the account has no Google connection
            SyncInProgressError: If a run for the account is already active
        """
        validate_account_id(account_id)
        policy = ConflictPolicy.parse(policy or self.settings.default_policy)
        trigger_type = TriggerType(trigger_type)

        if not self.auth.is_connected(account_id):
            raise NotConnectedError(f"Google Contacts not connected for {account_id}")

        with self._lock:
            if account_id in self._active:
                raise SyncInProgressError(f"A sync is already running for {account_id}")
            if trigger_type == TriggerType.MANUAL:
                remaining = self._cooldown_remaining(account_id)
                if remaining > 0:
                    logger.info(f"Manual sync for {account_id} rejected, {remaining}s cooldown left")
                    return self.rate_limited_result(remaining)
                self._last_manual_trigger[account_id] = self._clock()
            self._active.add(account_id)

        try:
            return self.engine.run_sync(
                account_id, policy=policy, trigger_type=trigger_type, dry_run=dry_run
            )
        finally:
            with self._lock:
                self._active.discard(account_id)

    def run_scheduled(self) -> bool:
        """
        Run one scheduled sync for every connected account with sync enabled.

        Returns:
            True if every run succeeded
        """
        accounts = self.auth.list_accounts(enabled_only=True)
        if not accounts:
            logger.info("No connected accounts to sync")
            return True

        all_ok = True
        for account_id in accounts:
            try:
                result = self.trigger_sync(
                    account_id,
                    ConflictPolicy.PLATFORM_WINS,
                    trigger_type=TriggerType.SCHEDULED,
                )
            except SyncInProgressError:
                logger.info(f"Skipping {account_id}: a sync is already running")
                continue
            except Exception as e:
                logger.error(f"Scheduled sync failed for {account_id}: {e}")
                all_ok = False
                continue

            if not result.success:
                all_ok = False
        return all_ok

    # =========================================================================
    # Status and logs
    # =========================================================================

    def get_status(self, account_id: str) -> dict[str, Any]:
        validate_account_id(account_id)
        connected = self.auth.is_connected(account_id)
        last_synced = self.sync_db.get_last_synced_at(account_id)
        return {
            "isConnected": connected,
            "externalAccountEmail": self.auth.get_account_email(account_id) if connected else None,
            "lastSyncedAt": last_synced.isoformat() if last_synced else None,
        }

    def get_logs(self, account_id: str, limit: int = 10) -> list[dict[str, Any]]:
        validate_account_id(account_id)
        return [entry.to_dict() for entry in self.sync_db.get_recent_sync_logs(account_id, limit)]

    def disconnect(self, account_id: str) -> bool:
        """
        Revoke and remove the account's Google connection.

        Revocation is best effort. Mappings are kept so a reconnect to the
        same Google account resumes without duplicates.

        Returns:
            True if a stored connection was removed
        """
        validate_account_id(account_id)
        if not self.auth.is_connected(account_id):
            return False
        self.auth.revoke_credentials(account_id)
        return self.auth.clear_credentials(account_id)

    # =========================================================================
    # OAuth web flow
    # =========================================================================

    def authorization_url(self, account_id: str) -> str:
        validate_account_id(account_id)
        state = generate_state_token(account_id, self.settings.state_secret)
        return self.auth.get_authorization_url(self.settings.redirect_uri, state)

    def complete_authorization(self, code: str, state: str) -> tuple[str, str]:
        """
        Finish the OAuth callback.

        Returns:
            (account_id, connected Google email)

        Raises:
            InvalidStateError: If the state does not verify
            AuthenticationError: If the code exchange fails
        """
        account_id = verify_state_token(
            state, self.settings.state_secret, max_age=self.settings.state_ttl
        )
        if account_id is None:
            raise InvalidStateError("invalid_state")

        email = self.auth.exchange_code(account_id, code, self.settings.redirect_uri)
        return account_id, email
