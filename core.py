"""
core.py — Wires the DropVault core together.

`DropVaultCore` owns one of each component and is the only place a new
settings snapshot is applied: it compares the snapshot with the last one
applied and reconfigures just the parts that changed.
"""

import logging
import threading
from datetime import date
from typing import Optional

from audit import RequesterInfo
from cache import InvalidatingCache
from config import AppSettings
from database import init_db, make_engine, make_session_factory
from encryption import CryptoEngine
from file_service import FileService
from models import HistoryEvent
from notifications import NotificationBatcher
from repository import Repository
from scheduler import LifecycleScheduler
from share_service import Redemption, ShareGrant, ShareManager
from storage import BlobStore, create_blob_store

logger = logging.getLogger(__name__)


class DropVaultCore:

    def __init__(
        self,
        settings: AppSettings,
        session_factory=None,
        blobs: Optional[BlobStore] = None,
        crypto: Optional[CryptoEngine] = None,
        notifications: Optional[NotificationBatcher] = None,
        scheduler=None,
    ):
        if session_factory is None:
            engine = make_engine(settings.database_url)
            init_db(engine)
            session_factory = make_session_factory(engine)

        self._settings = settings
        self._apply_lock = threading.Lock()

        self.repo = Repository(session_factory)
        self.blobs = blobs or create_blob_store(settings)
        self.crypto = crypto or CryptoEngine(iterations=settings.kdf_iterations)
        self.cache = InvalidatingCache()
        self.notifications = notifications or NotificationBatcher(settings.notifications)
        self.files = FileService(self.repo, self.blobs, self.crypto, self.cache, self.notifications, settings)
        self.shares = ShareManager(self.repo, self.files, self.notifications, self.cache, settings)
        self.scheduler = LifecycleScheduler(
            self.repo,
            self.blobs,
            self.cache,
            cron=settings.file_deletion_cron,
            max_file_lifetime_days=settings.max_file_lifetime_days,
            scheduler=scheduler,
        )

    @property
    def settings(self) -> AppSettings:
        return self._settings

    def start(self) -> None:
        self.scheduler.start()
        logger.info(f"DropVault core started (blob store: {self.blobs.backend_name})")

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.notifications.stop()
        if self.notifications.pending:
            self.notifications.flush()
        logger.info("DropVault core stopped")

    def apply_settings(self, new: AppSettings) -> AppSettings:
        """
        Apply a new settings snapshot. Raises InvalidSchedule for a bad cron
        string, in which case nothing from the new snapshot is applied.
        """
        with self._apply_lock:
            old = self._settings
            if new == old:
                return old

            if (new.file_deletion_cron, new.max_file_lifetime_days) != (old.file_deletion_cron, old.max_file_lifetime_days):
                self.scheduler.update_schedule(new.file_deletion_cron, new.max_file_lifetime_days)
            if new.notifications != old.notifications:
                self.notifications.reconfigure(new.notifications)
            if new.kdf_iterations != old.kdf_iterations:
                self.crypto.iterations = new.kdf_iterations
            if (new.use_minio, new.file_storage_path) != (old.use_minio, old.file_storage_path):
                logger.warning("Blob store settings changed; they take effect after a restart")

            self.files.settings = new
            self.shares.settings = new
            self._settings = new
            logger.info("Settings snapshot applied")
            return new

    # ─── Outward operations ──────────────────────────────────────

    def mint_share_token(self, external_id: str, **kwargs) -> ShareGrant:
        return self.shares.mint_share_token(external_id, **kwargs)

    def redeem_share_token(
        self,
        token: str,
        presented_secret: Optional[str] = None,
        requester: RequesterInfo = None,
        today: Optional[date] = None,
    ) -> Redemption:
        return self.shares.redeem_share_token(token, presented_secret, requester, today)

    def notify(self, event: HistoryEvent, file, requester: RequesterInfo = None) -> None:
        self.notifications.notify(event, file, requester)

    def run_expiry_sweep_now(self, today: Optional[date] = None) -> int:
        return self.scheduler.run_expiry_sweep_now(today)
