"""
Statements shared by the local and remote sides.

Both sides have the same relational shape, so reads, upserts and collision
checks are built once here against the registry's Core tables and run on
whichever connection the caller holds.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Table, and_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection

from cloudsync.models.tables import TrackedTable, UniqueKey


def clean_text(val):
    """Remove NUL characters that PostgreSQL rejects."""
    if isinstance(val, str):
        return val.replace('\x00', '')
    return val


def row_values(table: Table, row: Dict[str, Any]) -> Dict[str, Any]:
    """Restrict a row to the table's columns; absent columns become NULL."""
    return {c.name: clean_text(row.get(c.name)) for c in table.columns}


def build_upsert(conn: Connection, table: Table, row: Dict[str, Any],
                 key_columns: Sequence[str] = ("id",)):
    """
    INSERT ... ON CONFLICT (key) DO UPDATE SET <every non-key column>.

    Supports the PostgreSQL (remote) and SQLite (local, tests) dialects.
    """
    dialect = conn.dialect.name
    if dialect == "postgresql":
        insert_fn = postgresql.insert
    elif dialect == "sqlite":
        insert_fn = sqlite.insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")

    values = row_values(table, row)
    stmt = insert_fn(table).values(**values)
    update_cols = {
        name: stmt.excluded[name]
        for name in values
        if name not in key_columns
    }
    return stmt.on_conflict_do_update(index_elements=list(key_columns), set_=update_cols)


def fetch_row(conn: Connection, tracked: TrackedTable, record_id: str) -> Optional[Dict[str, Any]]:
    table = tracked.table
    row = conn.execute(
        select(table).where(table.c[tracked.primary_key] == record_id)
    ).mappings().first()
    return dict(row) if row else None


def fetch_timestamp(conn: Connection, tracked: TrackedTable, record_id: str) -> Optional[datetime]:
    """updated_at of one record, None if the record or the column is absent."""
    if not tracked.has_updated_at:
        return None
    table = tracked.table
    return conn.execute(
        select(table.c.updated_at).where(table.c[tracked.primary_key] == record_id)
    ).scalar_one_or_none()


def fetch_all(conn: Connection, tracked: TrackedTable) -> List[Dict[str, Any]]:
    table = tracked.table
    result = conn.execute(select(table).order_by(table.c[tracked.primary_key]))
    return [dict(r) for r in result.mappings()]


def find_collision(conn: Connection, tracked: TrackedTable,
                   row: Dict[str, Any]) -> Optional[Tuple[UniqueKey, str]]:
    """
    Look for a row holding one of row's natural unique keys under another id.

    Returns:
        (unique key, id of the other row), or None if no key collides.
    """
    table = tracked.table
    pk = table.c[tracked.primary_key]
    for key in tracked.unique_keys:
        values = [row.get(col) for col in key.columns]
        if any(v is None for v in values):
            continue
        conditions = [table.c[col] == val for col, val in zip(key.columns, values)]
        other_id = conn.execute(
            select(pk).where(and_(*conditions, pk != row[tracked.primary_key])).limit(1)
        ).scalar_one_or_none()
        if other_id is not None:
            return key, other_id
    return None
