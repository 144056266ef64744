"""
Pull Pipeline

Brings remote changes made since the Sync Watermark into the local database.
Tables are walked parents-first; each remote row is applied under the
Suppression Flag unless the local copy is strictly newer. Remote deletions
come from the remote tombstone table and are applied children-first.

The watermark only moves after every table was processed without a
pipeline-level failure. It is set to the time the pull started, so remote
writes landing while the pull runs are picked up by the next one.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from cloudsync.config import ConfigStore
from cloudsync.db.local import LocalRepository
from cloudsync.db.remote import RemoteDatabase, is_network_error
from cloudsync.exceptions import RemoteUnavailableError
from cloudsync.models.tables import (
    SYNC_TABLE_ORDER,
    CollisionRule,
    TrackedTable,
    deletion_order,
    get_tracked_table,
    is_tracked,
    utcnow,
)
from cloudsync.sync.conflict import Winner, normalize_timestamp, pull_allowed, settings_winner
from cloudsync.sync.results import PullResult

logger = logging.getLogger(__name__)

MAX_LOGGED_ERRORS = 5


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    return value


def rows_match(tracked: TrackedTable, local_row: Optional[Dict[str, Any]],
               remote_row: Dict[str, Any]) -> bool:
    """True when the local row already holds every value of the remote row."""
    if local_row is None:
        return False
    return all(
        _comparable(local_row.get(col)) == _comparable(remote_row.get(col))
        for col in tracked.columns
    )


class PullPipeline:
    """
    Applies remote changes to the local database.

    Usage:
        pipeline = PullPipeline(local_repo, remote_db, config_store)
        result = pipeline.run()
    """

    def __init__(self, local: LocalRepository, remote: RemoteDatabase,
                 config_store: ConfigStore):
        self.local = local
        self.remote = remote
        self.config_store = config_store

    def run(self) -> PullResult:
        result = PullResult()
        config = self.config_store.load()
        if config is None or not config.is_configured:
            logger.debug("No remote configured, nothing to pull")
            return result

        watermark = config.last_sync_at
        started_at = utcnow()
        logger.info(f"Pulling remote changes since {watermark.isoformat() if watermark else 'the beginning'}")

        try:
            for table_name in SYNC_TABLE_ORDER:
                self._pull_table(get_tracked_table(table_name), watermark, result)
            self._pull_deletions(watermark, result)
            self._pull_settings(watermark, result)
        except SQLAlchemyError as e:
            if is_network_error(e):
                raise RemoteUnavailableError(f"Lost remote connection while pulling: {e}") from e
            raise

        self.config_store.advance_watermark(started_at)
        self.local.ledger.clear_synced_entries()

        logger.info(
            f"Pull complete: {result.pulled} pulled, {result.skipped} skipped, "
            f"{result.deleted} deleted, {len(result.errors)} errors"
        )
        return result

    def _pull_table(self, tracked: TrackedTable, watermark: Optional[datetime],
                    result: PullResult) -> None:
        # Remote query failures are pipeline-level and propagate
        rows = self.remote.changed_since(tracked.name, watermark)
        if not rows:
            return

        logged = 0
        for row in rows:
            record_id = row[tracked.primary_key]
            try:
                outcome = self.apply_row(tracked, row)
            except SQLAlchemyError as e:
                outcome = str(e).splitlines()[0][:500]

            if outcome == "pulled":
                result.pulled += 1
            elif outcome == "skipped":
                result.skipped += 1
            else:
                result.add_error(tracked.name, record_id, outcome)
                logged += 1
                if logged <= MAX_LOGGED_ERRORS:
                    logger.warning(f"Pull failed for {tracked.name}/{record_id}: {outcome}")

        logger.debug(f"Pulled {len(rows)} candidate rows from {tracked.name}")

    def apply_row(self, tracked: TrackedTable, row: Dict[str, Any],
                  honor_conflicts: bool = True) -> str:
        """
        Apply one remote row locally.

        Args:
            tracked: Table the row belongs to
            row: Remote row
            honor_conflicts: When False the remote row overwrites the local
                one regardless of timestamps (full pull)

        Returns:
            "pulled", "skipped" or an error message
        """
        record_id = row[tracked.primary_key]
        local_row = self.local.fetch_row(tracked.name, record_id)

        if rows_match(tracked, local_row, row):
            return "skipped"

        if honor_conflicts and local_row is not None and tracked.has_updated_at:
            if not pull_allowed(tracked, local_row.get("updated_at"), row.get("updated_at")):
                # Local edit still pending push
                return "skipped"

        replace_id = None
        collision = self.local.find_collision(tracked.name, row)
        if collision is not None:
            key, other_id = collision
            if key.rule != CollisionRule.PREFER_REMOTE:
                return f"Unique {tracked.describe_key(key)} already used by local record {other_id}"
            replace_id = other_id
            logger.info(
                f"Replacing local {tracked.name}/{other_id} with remote {record_id} "
                f"({tracked.describe_key(key)})"
            )

        self.local.apply_remote_row(tracked.name, row, replace_id=replace_id)
        return "pulled"

    def _pull_deletions(self, watermark: Optional[datetime], result: PullResult) -> None:
        tombstones = self.remote.deleted_since(watermark)
        if not tombstones:
            return

        by_table: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for tombstone in tombstones:
            if not is_tracked(tombstone["table_name"]):
                logger.warning(f"Ignoring tombstone for unknown table {tombstone['table_name']}")
                continue
            by_table[tombstone["table_name"]].append(tombstone)

        for table_name in deletion_order(by_table):
            for tombstone in by_table[table_name]:
                record_id = tombstone["record_id"]
                try:
                    if self.local.apply_remote_delete(table_name, record_id):
                        result.deleted += 1
                except SQLAlchemyError as e:
                    message = str(e).splitlines()[0][:500]
                    result.add_error(table_name, record_id, message)
                    logger.warning(f"Failed to apply remote delete {table_name}/{record_id}: {message}")

    def _pull_settings(self, watermark: Optional[datetime], result: PullResult) -> None:
        for row in self.remote.fetch_settings(watermark):
            key = row["key"]
            try:
                local_ts = self.local.fetch_setting_timestamp(key)
                if settings_winner(local_ts, row.get("updated_at")) == Winner.LOCAL:
                    result.skipped += 1
                    continue
                if self.local.get_setting(key) == row.get("value") and local_ts is not None:
                    result.skipped += 1
                    continue
                self.local.apply_remote_setting(row)
                result.pulled += 1
            except SQLAlchemyError as e:
                message = str(e).splitlines()[0][:500]
                result.add_error("app_settings", key, message)
                logger.warning(f"Failed to pull setting {key}: {message}")
