"""
Initial (full) sync.

Used once per new connection instead of the incremental ledger:

- push: upload every local row, ignoring remote state (seeds an empty remote)
- pull: download every remote row, overwriting local (joins an existing team)
- merge: both directions over the whole tables, per-record last-writer-wins

Afterwards the watermark is set to now, sync is enabled and the Change
Ledger is emptied, since the full scan supersedes its backlog.
"""

import enum
import logging

from sqlalchemy.exc import SQLAlchemyError

from cloudsync.config import ConfigStore
from cloudsync.db.local import LocalRepository
from cloudsync.db.remote import RemoteDatabase, is_network_error
from cloudsync.exceptions import InvalidDirectionError, RemoteUnavailableError
from cloudsync.models.tables import SYNC_TABLE_ORDER, get_tracked_table, utcnow
from cloudsync.sync.conflict import Winner, push_allowed, settings_winner
from cloudsync.sync.pull import PullPipeline, rows_match
from cloudsync.sync.results import InitialSyncResult

logger = logging.getLogger(__name__)


class SyncDirection(str, enum.Enum):
    PUSH = "push"
    PULL = "pull"
    MERGE = "merge"

    @classmethod
    def parse(cls, value) -> "SyncDirection":
        try:
            return cls(value)
        except ValueError:
            raise InvalidDirectionError(value) from None


class InitialSync:
    """
    Full-table sync between the two copies.

    Usage:
        result = InitialSync(local_repo, remote_db, config_store).run("merge")
        print(result.message)
    """

    def __init__(self, local: LocalRepository, remote: RemoteDatabase,
                 config_store: ConfigStore):
        self.local = local
        self.remote = remote
        self.config_store = config_store
        self._puller = PullPipeline(local, remote, config_store)

    def run(self, direction) -> InitialSyncResult:
        direction = SyncDirection.parse(direction)
        result = InitialSyncResult(direction=direction.value)
        started_at = utcnow()
        logger.info(f"Starting initial sync ({direction.value})")

        try:
            if direction in (SyncDirection.PUSH, SyncDirection.MERGE):
                self._push_all(result, overwrite=direction == SyncDirection.PUSH)
            if direction in (SyncDirection.PULL, SyncDirection.MERGE):
                self._pull_all(result, overwrite=direction == SyncDirection.PULL)
        except SQLAlchemyError as e:
            if is_network_error(e):
                raise RemoteUnavailableError(f"Lost remote connection during initial sync: {e}") from e
            raise

        self.config_store.save(last_sync_at=started_at, enabled=True)
        cleared = self.local.ledger.clear_all_entries()
        if cleared:
            logger.info(f"Cleared {cleared} changelog entries superseded by initial sync")

        label = direction.value.capitalize()
        result.message = f"Initial {label} complete. Pushed: {result.pushed}, Pulled: {result.pulled}"
        logger.info(result.message)
        return result

    def _record_error(self, result: InitialSyncResult, table_name: str, record_id, e: Exception) -> None:
        if isinstance(e, SQLAlchemyError) and is_network_error(e):
            raise e
        message = str(e).splitlines()[0][:500]
        result.add_error(table_name, record_id, message)
        logger.warning(f"Initial sync error for {table_name}/{record_id}: {message}")

    def _push_all(self, result: InitialSyncResult, overwrite: bool) -> None:
        for table_name in SYNC_TABLE_ORDER:
            tracked = get_tracked_table(table_name)
            for row in self.local.fetch_all(table_name):
                record_id = row[tracked.primary_key]
                try:
                    if not overwrite:
                        remote_row = self.remote.fetch_row(table_name, record_id)
                        if rows_match(tracked, remote_row, row):
                            continue
                        remote_ts = remote_row.get("updated_at") if remote_row else None
                        if not push_allowed(tracked, row.get("updated_at"), remote_ts):
                            continue
                    self.remote.upsert(table_name, row)
                    result.pushed += 1
                except SQLAlchemyError as e:
                    self._record_error(result, table_name, record_id, e)

        for row in self.local.fetch_settings():
            try:
                if not overwrite:
                    remote_ts = self.remote.fetch_setting_timestamp(row["key"])
                    if settings_winner(row.get("updated_at"), remote_ts) == Winner.REMOTE:
                        continue
                self.remote.upsert_setting(row)
            except SQLAlchemyError as e:
                self._record_error(result, "app_settings", row["key"], e)

    def _pull_all(self, result: InitialSyncResult, overwrite: bool) -> None:
        for table_name in SYNC_TABLE_ORDER:
            tracked = get_tracked_table(table_name)
            for row in self.remote.fetch_all(table_name):
                record_id = row[tracked.primary_key]
                try:
                    outcome = self._puller.apply_row(tracked, row, honor_conflicts=not overwrite)
                except SQLAlchemyError as e:
                    self._record_error(result, table_name, record_id, e)
                    continue
                if outcome == "pulled":
                    result.pulled += 1
                elif outcome != "skipped":
                    result.add_error(table_name, record_id, outcome)
                    logger.warning(f"Initial pull error for {table_name}/{record_id}: {outcome}")

        for row in self.remote.fetch_settings():
            try:
                if not overwrite:
                    local_ts = self.local.fetch_setting_timestamp(row["key"])
                    if settings_winner(local_ts, row.get("updated_at")) == Winner.LOCAL:
                        continue
                self.local.apply_remote_setting(row)
            except SQLAlchemyError as e:
                self._record_error(result, "app_settings", row["key"], e)
