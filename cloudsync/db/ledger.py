"""
Change Ledger

Append-only local log of every write to a tracked table. Entries name the
table, the record id and the operation; the row itself is re-read at push
time, so the most current state is always what gets sent.

Capture is an explicit call made by the local repository inside the same
transaction as the write it describes. Writes applied by the pull pipeline
run with the Suppression Flag set on their connection and are not captured.
"""

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from cloudsync.models.tables import get_tracked_table, sync_changelog, utcnow

logger = logging.getLogger(__name__)

# Key in Connection.info holding the Suppression Flag
SUPPRESS_CAPTURE_KEY = "cloudsync.suppress_capture"


class Operation(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangelogEntry:
    id: int
    table_name: str
    record_id: str
    operation: Operation
    changed_at: datetime
    synced: bool = False
    error_message: Optional[str] = None
    last_attempt_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.table_name, self.record_id)

    @classmethod
    def from_row(cls, row) -> "ChangelogEntry":
        return cls(
            id=row.id,
            table_name=row.table_name,
            record_id=row.record_id,
            operation=Operation(row.operation),
            changed_at=row.changed_at,
            synced=bool(row.synced),
            error_message=row.error_message,
            last_attempt_at=row.last_attempt_at,
        )


def is_suppressed(conn: Connection) -> bool:
    return bool(conn.info.get(SUPPRESS_CAPTURE_KEY, False))


@contextmanager
def suppressed(conn: Connection) -> Iterator[Connection]:
    """
    Set the Suppression Flag on conn for the duration of the block.

    The flag lives on the pooled DBAPI connection, so it is always cleared
    on exit; writes made later on the same connection are captured again.
    """
    conn.info[SUPPRESS_CAPTURE_KEY] = True
    try:
        yield conn
    finally:
        conn.info.pop(SUPPRESS_CAPTURE_KEY, None)


class ChangeLedger:
    """
    Reader/writer for the sync_changelog table.

    Usage:
        ledger = ChangeLedger(local_engine)

        # Inside a repository write transaction
        ledger.record(conn, "clients", client_id, Operation.UPDATE)

        # Push pipeline
        pending = ledger.get_pending_changes()
        ledger.mark_synced([e.id for e in pending])
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def record(self, conn: Connection, table_name: str, record_id: str,
               operation: Operation) -> Optional[int]:
        """
        Append one entry using the caller's connection and transaction.

        Returns:
            The new entry id, or None when capture is suppressed.
        """
        if is_suppressed(conn):
            return None

        tracked = get_tracked_table(table_name)
        result = conn.execute(
            insert(sync_changelog).values(
                table_name=tracked.name,
                record_id=str(record_id),
                operation=Operation(operation).value,
                changed_at=utcnow(),
                synced=False,
            )
        )
        return result.inserted_primary_key[0]

    def get_pending_changes(self) -> List[ChangelogEntry]:
        """All unsynced entries, oldest first."""
        stmt = (
            select(sync_changelog)
            .where(sync_changelog.c.synced.is_(False))
            .order_by(sync_changelog.c.id.asc())
        )
        with self.engine.connect() as conn:
            return [ChangelogEntry.from_row(row) for row in conn.execute(stmt)]

    def get_pending_count(self) -> int:
        stmt = select(func.count()).select_from(sync_changelog).where(
            sync_changelog.c.synced.is_(False)
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

    def mark_synced(self, ids: Sequence[int]) -> None:
        """Flag entries as synced and clear any stored error. Idempotent."""
        if not ids:
            return
        stmt = (
            update(sync_changelog)
            .where(sync_changelog.c.id.in_(list(ids)))
            .values(synced=True, error_message=None, last_attempt_at=utcnow())
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def mark_error(self, entry_id: int, message: str) -> None:
        """Attach a failure message; the entry stays pending."""
        stmt = (
            update(sync_changelog)
            .where(sync_changelog.c.id == entry_id)
            .values(error_message=message, last_attempt_at=utcnow())
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def clear_synced_entries(self) -> int:
        """Delete entries already marked synced. Returns how many were removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(sync_changelog).where(sync_changelog.c.synced.is_(True))
            )
            removed = result.rowcount or 0
        if removed:
            logger.debug(f"Cleared {removed} synced changelog entries")
        return removed

    def clear_all_entries(self) -> int:
        """Delete every entry, pending or not (after an initial sync)."""
        with self.engine.begin() as conn:
            return conn.execute(delete(sync_changelog)).rowcount or 0
