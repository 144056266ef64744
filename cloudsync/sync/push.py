"""
Push Pipeline

Drains the Change Ledger into the remote database:

1. Collapse pending entries to the latest operation per (table, id).
2. Split into upserts (parents first) and deletes (children first).
   A DELETE on a soft-delete table whose row is still live locally was a
   deactivation and is pushed as an upsert.
3. Re-read each live local row and write it remotely unless the remote
   copy wins the conflict policy.
4. Mark pushed and skipped entries synced; errors stay pending.

A lost connection aborts the run with RemoteUnavailableError. Entries
already handled in that run are still marked synced.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Tuple

from sqlalchemy.exc import SQLAlchemyError

from cloudsync.db.ledger import ChangeLedger, ChangelogEntry, Operation
from cloudsync.db.local import LocalRepository
from cloudsync.db.remote import RemoteDatabase, is_network_error
from cloudsync.exceptions import RemoteUnavailableError
from cloudsync.models.tables import CollisionRule, dependency_index, get_tracked_table
from cloudsync.sync.conflict import Winner, push_allowed, settings_winner
from cloudsync.sync.results import PushResult

logger = logging.getLogger(__name__)

# Per-table cap on full-detail warnings for failed records
MAX_LOGGED_ERRORS = 5

PUSHED = "pushed"
SKIPPED = "skipped"


def collapse_entries(entries: List[ChangelogEntry]) -> Tuple[List[ChangelogEntry], Dict[tuple, List[int]]]:
    """
    Keep only the latest entry per (table, record id).

    Args:
        entries: Pending entries in ascending id order

    Returns:
        Tuple of (latest entries in id order, mapping of key to every entry
        id collapsed into it, the latest included)
    """
    latest: Dict[tuple, ChangelogEntry] = {}
    ids_by_key: Dict[tuple, List[int]] = defaultdict(list)
    for entry in entries:
        latest[entry.key] = entry
        ids_by_key[entry.key].append(entry.id)
    ordered = sorted(latest.values(), key=lambda e: e.id)
    return ordered, dict(ids_by_key)


class PushPipeline:
    """
    Applies local changes to the remote database.

    Usage:
        pipeline = PushPipeline(local_repo, remote_db)
        result = pipeline.run()
        print(result.as_dict())
    """

    def __init__(self, local: LocalRepository, remote: RemoteDatabase,
                 ledger: ChangeLedger = None):
        self.local = local
        self.remote = remote
        self.ledger = ledger or local.ledger

    def partition(self, entries: List[ChangelogEntry]) -> Tuple[List[ChangelogEntry], List[ChangelogEntry]]:
        """
        Split collapsed entries into (upserts parents-first, deletes children-first).

        Within one table the original capture order is kept.
        """
        upserts: List[ChangelogEntry] = []
        deletes: List[ChangelogEntry] = []
        for entry in entries:
            tracked = get_tracked_table(entry.table_name)
            if entry.operation != Operation.DELETE:
                upserts.append(entry)
            elif tracked.has_soft_delete and self.local.fetch_row(entry.table_name, entry.record_id):
                # Deactivated, not removed
                upserts.append(entry)
            else:
                deletes.append(entry)

        upserts.sort(key=lambda e: (dependency_index(e.table_name), e.id))
        deletes.sort(key=lambda e: (-dependency_index(e.table_name), e.id))
        return upserts, deletes

    def run(self) -> PushResult:
        result = PushResult()
        pending = self.ledger.get_pending_changes()
        if not pending:
            return result

        latest, ids_by_key = collapse_entries(pending)
        upserts, deletes = self.partition(latest)
        logger.info(
            f"Pushing {len(latest)} records ({len(pending)} ledger entries): "
            f"{len(upserts)} upserts, {len(deletes)} deletes"
        )

        delete_ids = {e.id for e in deletes}
        synced_ids: List[int] = []
        errors_per_table: Dict[str, int] = defaultdict(int)
        try:
            for entry in upserts + deletes:
                try:
                    if entry.id in delete_ids:
                        outcome = self._push_delete(entry)
                    else:
                        outcome = self._push_upsert(entry)
                except SQLAlchemyError as e:
                    if is_network_error(e):
                        raise RemoteUnavailableError(
                            f"Lost remote connection while pushing {entry.table_name}: {e}"
                        ) from e
                    outcome = str(e).splitlines()[0][:500]

                if outcome == PUSHED:
                    result.pushed += 1
                    synced_ids.extend(ids_by_key[entry.key])
                elif outcome == SKIPPED:
                    result.skipped += 1
                    synced_ids.extend(ids_by_key[entry.key])
                else:
                    result.add_error(entry.table_name, entry.record_id, outcome)
                    self.ledger.mark_error(entry.id, outcome)
                    errors_per_table[entry.table_name] += 1
                    if errors_per_table[entry.table_name] <= MAX_LOGGED_ERRORS:
                        logger.warning(
                            f"Push failed for {entry.table_name}/{entry.record_id}: {outcome}"
                        )
        finally:
            self.ledger.mark_synced(synced_ids)

        logger.info(
            f"Push complete: {result.pushed} pushed, {result.skipped} skipped, "
            f"{len(result.errors)} errors"
        )
        return result

    def _push_upsert(self, entry: ChangelogEntry) -> str:
        """Returns PUSHED, SKIPPED or an error message."""
        tracked = get_tracked_table(entry.table_name)
        row = self.local.fetch_row(tracked.name, entry.record_id)
        if row is None:
            # Deleted after capture; a later DELETE entry covers it
            return SKIPPED

        if tracked.has_updated_at:
            remote_ts = self.remote.fetch_timestamp(tracked.name, entry.record_id)
            if not push_allowed(tracked, row.get("updated_at"), remote_ts):
                logger.debug(f"Remote wins for {tracked.name}/{entry.record_id}, skipping")
                return SKIPPED

        collision = self.remote.find_collision(tracked.name, row)
        if collision is not None:
            key, other_id = collision
            if key.rule == CollisionRule.PREFER_REMOTE:
                logger.info(
                    f"Remote {tracked.describe_key(key)} already held by {other_id}, "
                    f"keeping remote copy of {entry.record_id}"
                )
                return SKIPPED
            return f"Unique {tracked.describe_key(key)} already used by remote record {other_id}"

        self.remote.upsert(tracked.name, row)
        return PUSHED

    def _push_delete(self, entry: ChangelogEntry) -> str:
        self.remote.delete(entry.table_name, entry.record_id)
        return PUSHED

    def push_settings(self, result: PushResult = None) -> PushResult:
        """
        Push app_settings rows that are newer locally.

        Settings are not ledger-tracked; every local row is compared with
        the remote one. Failures are per-setting errors.
        """
        result = result or PushResult()
        for row in self.local.fetch_settings():
            key = row["key"]
            try:
                remote_ts = self.remote.fetch_setting_timestamp(key)
                if settings_winner(row.get("updated_at"), remote_ts) == Winner.REMOTE:
                    continue
                self.remote.upsert_setting(row)
                result.pushed += 1
            except SQLAlchemyError as e:
                if is_network_error(e):
                    raise RemoteUnavailableError(f"Lost remote connection while pushing settings: {e}") from e
                logger.warning(f"Failed to push setting {key}: {e}")
                result.add_error("app_settings", key, str(e).splitlines()[0][:500])
        return result
