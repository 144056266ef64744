"""
Conflict Policy

Last-writer-wins on updated_at for tables that have it, with ties going to
the remote copy (it is the version every installation converges on).
Append-only tables have no update conflicts: writes are always applied.

Both pipelines and the merge mode of the initial sync use resolve();
none of them compare timestamps themselves.
"""

import enum
from datetime import datetime, timezone
from typing import Optional, Union

from cloudsync.models.tables import TrackedTable

Timestamp = Union[datetime, str, None]


class Winner(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"
    NO_CONFLICT = "no_conflict"


def normalize_timestamp(value: Timestamp) -> Optional[datetime]:
    """
    Bring a timestamp to naive UTC.

    SQLite hands back naive values, PostgreSQL timestamptz aware ones and
    the config file ISO strings; all three must compare.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def resolve(table: TrackedTable, local_ts: Timestamp, remote_ts: Timestamp) -> Winner:
    """
    Decide which version of a record wins.

    Args:
        table: The tracked table the record belongs to
        local_ts: updated_at of the local version (None if absent)
        remote_ts: updated_at of the remote version (None if absent)

    Returns:
        NO_CONFLICT when the table is append-only or either side has no
        version; otherwise the side with the strictly greater timestamp,
        REMOTE on equality.
    """
    if not table.has_updated_at:
        return Winner.NO_CONFLICT

    local = normalize_timestamp(local_ts)
    remote = normalize_timestamp(remote_ts)
    if local is None or remote is None:
        return Winner.NO_CONFLICT

    if local > remote:
        return Winner.LOCAL
    return Winner.REMOTE


def push_allowed(table: TrackedTable, local_ts: Timestamp, remote_ts: Timestamp) -> bool:
    """A local row may overwrite the remote one unless the remote wins."""
    return resolve(table, local_ts, remote_ts) != Winner.REMOTE


def pull_allowed(table: TrackedTable, local_ts: Timestamp, remote_ts: Timestamp) -> bool:
    """A remote row may overwrite the local one unless the local is strictly newer."""
    return resolve(table, local_ts, remote_ts) != Winner.LOCAL


def settings_winner(local_ts: Timestamp, remote_ts: Timestamp) -> Winner:
    """Same rule for app_settings rows, which are not tracked tables."""
    local = normalize_timestamp(local_ts)
    remote = normalize_timestamp(remote_ts)
    if local is None or remote is None:
        return Winner.NO_CONFLICT
    return Winner.LOCAL if local > remote else Winner.REMOTE
