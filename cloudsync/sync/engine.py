"""
Sync engine: wires configuration, the local repository and the remote
database together and runs one push + pull cycle on request.

The remote connection is created lazily from the stored config and
rebuilt after reset_connection() (e.g. when the config changes).
"""

import logging
import threading
from typing import Any, Dict, Optional

from sqlalchemy.engine import Engine

from cloudsync.config import ConfigStore
from cloudsync.db.ledger import ChangeLedger
from cloudsync.db.local import LocalRepository
from cloudsync.db.remote import RemoteDatabase, create_remote_engine
from cloudsync.exceptions import ConfigurationError
from cloudsync.sync.initial import InitialSync
from cloudsync.sync.pull import PullPipeline
from cloudsync.sync.push import PushPipeline
from cloudsync.sync.results import CycleResult, InitialSyncResult

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Entry point for running sync work.

    Usage:
        engine = SyncEngine(local_engine, ConfigStore())
        cycle = engine.run_cycle()
        print(cycle.as_dict())
    """

    def __init__(self, local_engine: Engine, config_store: ConfigStore,
                 remote: Optional[RemoteDatabase] = None, resolve_host: bool = True):
        self.config_store = config_store
        self.ledger = ChangeLedger(local_engine)
        self.local = LocalRepository(local_engine, self.ledger)
        self.resolve_host = resolve_host
        self._remote = remote
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Remote connection
    # ------------------------------------------------------------------

    def get_remote(self) -> RemoteDatabase:
        """
        Remote database for the stored config, created on first use.

        Raises:
            ConfigurationError: No remote database URL configured
        """
        with self._lock:
            if self._remote is None:
                config = self.config_store.load()
                if config is None or not config.is_configured:
                    raise ConfigurationError("No remote database configured")
                engine = create_remote_engine(config.database_url, resolve_host=self.resolve_host)
                self._remote = RemoteDatabase(engine, instance_id=self.config_store.get_instance_id())
                logger.info("Remote database connection created")
            return self._remote

    def reset_connection(self) -> None:
        """Drop the cached remote connection; the next call reconnects."""
        with self._lock:
            if self._remote is not None:
                self._remote.dispose()
                self._remote = None
                logger.info("Remote database connection reset")

    def test_connection(self) -> Dict[str, Any]:
        try:
            remote = self.get_remote()
        except ConfigurationError as e:
            return {"success": False, "message": str(e)}
        return remote.test_connection()

    # ------------------------------------------------------------------
    # Sync work
    # ------------------------------------------------------------------

    def is_configured(self) -> bool:
        config = self.config_store.load()
        return config is not None and config.is_configured

    def is_enabled(self) -> bool:
        """Configured and switched on; the scheduler only runs while this holds."""
        return self.config_store.is_enabled()

    def get_pending_count(self) -> int:
        return self.ledger.get_pending_count()

    def run_cycle(self) -> CycleResult:
        """
        Push local changes, push settings, then pull remote changes.

        Returns zero counts when no remote is configured. Pipeline-level
        failures propagate to the caller.
        """
        if not self.is_configured():
            logger.debug("Sync not configured, skipping cycle")
            return CycleResult()

        remote = self.get_remote()
        pusher = PushPipeline(self.local, remote, self.ledger)
        push_result = pusher.run()
        pusher.push_settings(push_result)

        pull_result = PullPipeline(self.local, remote, self.config_store).run()
        return CycleResult(
            push=push_result,
            pull=pull_result,
            watermark=self.config_store.get_watermark(),
        )

    def run_initial_sync(self, direction) -> InitialSyncResult:
        return InitialSync(self.local, self.get_remote(), self.config_store).run(direction)
