"""
Local Database Repository

Every application write to a tracked table goes through LocalRepository,
which performs the write and appends the matching Change Ledger entry in one
transaction. Writes arriving from the remote side use the apply_* methods,
which run under the Suppression Flag and are therefore never captured.
"""

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, delete, event, insert, select, update
from sqlalchemy.engine import Engine

from cloudsync.db.statements import (
    build_upsert,
    fetch_all,
    fetch_row,
    fetch_timestamp,
    find_collision,
    row_values,
)
from cloudsync.db.ledger import ChangeLedger, Operation, suppressed
from cloudsync.models.tables import app_settings, get_tracked_table, utcnow

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_local_engine(url: str, **kwargs) -> Engine:
    """
    Engine for the local database.

    SQLite does not enforce foreign keys unless asked per connection. The
    directory of a file-backed SQLite database is created if missing.
    """
    if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


class LocalRepository:
    """
    Write boundary for the local database.

    Usage:
        repo = LocalRepository(engine)
        client_id = repo.insert("clients", {"name": "Acme"})
        repo.update("clients", client_id, {"phone": "555-0100"})
        repo.deactivate("clients", client_id)
    """

    def __init__(self, engine: Engine, ledger: Optional[ChangeLedger] = None):
        self.engine = engine
        self.ledger = ledger or ChangeLedger(engine)

    def _write(self, conn, tracked, record_id: str, operation: Operation, stmt) -> bool:
        """
        Execute one write and append its ledger entry on the same connection.

        The ledger skips the entry when the connection's Suppression Flag
        is set. Returns False when the statement touched no row.
        """
        result = conn.execute(stmt)
        if not result.rowcount:
            return False
        self.ledger.record(conn, tracked.name, record_id, operation)
        return True

    # ------------------------------------------------------------------
    # Application writes (captured)
    # ------------------------------------------------------------------

    def insert(self, table_name: str, values: Dict[str, Any]) -> str:
        """Insert a row, generating its id if absent. Returns the id."""
        tracked = get_tracked_table(table_name)
        values = dict(values)
        values.setdefault(tracked.primary_key, str(uuid.uuid4()))
        now = utcnow()
        if "created_at" in tracked.table.c:
            values.setdefault("created_at", now)
        if tracked.has_updated_at:
            values.setdefault("updated_at", now)

        record_id = values[tracked.primary_key]
        with self.engine.begin() as conn:
            self._write(conn, tracked, record_id, Operation.INSERT,
                        insert(tracked.table).values(**values))
        return record_id

    def update(self, table_name: str, record_id: str, values: Dict[str, Any]) -> bool:
        """
        Update columns of one row, bumping updated_at when the table has it.

        Returns:
            False if the row does not exist.
        """
        tracked = get_tracked_table(table_name)
        values = dict(values)
        values.pop(tracked.primary_key, None)
        if tracked.has_updated_at:
            values.setdefault("updated_at", utcnow())

        table = tracked.table
        with self.engine.begin() as conn:
            return self._write(
                conn, tracked, record_id, Operation.UPDATE,
                update(table)
                .where(table.c[tracked.primary_key] == record_id)
                .values(**values),
            )

    def delete(self, table_name: str, record_id: str) -> bool:
        """Hard-delete one row. Returns False if it did not exist."""
        tracked = get_tracked_table(table_name)
        table = tracked.table
        with self.engine.begin() as conn:
            return self._write(
                conn, tracked, record_id, Operation.DELETE,
                delete(table).where(table.c[tracked.primary_key] == record_id),
            )

    def deactivate(self, table_name: str, record_id: str) -> bool:
        """
        Soft-delete one row (is_active = false).

        Captured as a DELETE; the push pipeline finds the row still present
        and sends it as an upsert.
        """
        tracked = get_tracked_table(table_name)
        if not tracked.has_soft_delete:
            raise ValueError(f"Table '{table_name}' has no is_active column")

        values: Dict[str, Any] = {"is_active": False}
        if tracked.has_updated_at:
            values["updated_at"] = utcnow()

        table = tracked.table
        with self.engine.begin() as conn:
            return self._write(
                conn, tracked, record_id, Operation.DELETE,
                update(table)
                .where(table.c[tracked.primary_key] == record_id)
                .values(**values),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_row(self, table_name: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            return fetch_row(conn, get_tracked_table(table_name), record_id)

    def fetch_timestamp(self, table_name: str, record_id: str) -> Optional[datetime]:
        with self.engine.connect() as conn:
            return fetch_timestamp(conn, get_tracked_table(table_name), record_id)

    def fetch_all(self, table_name: str) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            return fetch_all(conn, get_tracked_table(table_name))

    def find_collision(self, table_name: str, row: Dict[str, Any]):
        with self.engine.connect() as conn:
            return find_collision(conn, get_tracked_table(table_name), row)

    # ------------------------------------------------------------------
    # Remote-originated writes (suppressed)
    # ------------------------------------------------------------------

    def apply_remote_row(self, table_name: str, row: Dict[str, Any],
                         replace_id: Optional[str] = None) -> None:
        """
        Upsert a row received from the remote side without capturing it.

        Args:
            replace_id: Id of a local row to remove first in the same
                transaction (a natural-key collision the remote side wins).
        """
        tracked = get_tracked_table(table_name)
        table = tracked.table
        record_id = row[tracked.primary_key]
        with self.engine.begin() as conn:
            with suppressed(conn):
                if replace_id is not None:
                    self._write(
                        conn, tracked, replace_id, Operation.DELETE,
                        delete(table).where(table.c[tracked.primary_key] == replace_id),
                    )
                self._write(
                    conn, tracked, record_id, Operation.UPDATE,
                    build_upsert(conn, table, row, key_columns=(tracked.primary_key,)),
                )

    def apply_remote_delete(self, table_name: str, record_id: str) -> bool:
        """Delete a row removed on the remote side without capturing it."""
        tracked = get_tracked_table(table_name)
        table = tracked.table
        with self.engine.begin() as conn:
            with suppressed(conn):
                return self._write(
                    conn, tracked, record_id, Operation.DELETE,
                    delete(table).where(table.c[tracked.primary_key] == record_id),
                )

    # ------------------------------------------------------------------
    # App settings (text-keyed, not ledger-tracked)
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> Optional[str]:
        with self.engine.connect() as conn:
            return conn.execute(
                select(app_settings.c.value).where(app_settings.c.key == key)
            ).scalar_one_or_none()

    def set_setting(self, key: str, value: str) -> None:
        row = {"key": key, "value": value, "updated_at": utcnow()}
        with self.engine.begin() as conn:
            conn.execute(build_upsert(conn, app_settings, row, key_columns=("key",)))

    def fetch_settings(self) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            result = conn.execute(select(app_settings).order_by(app_settings.c.key))
            return [dict(r) for r in result.mappings()]

    def fetch_setting_timestamp(self, key: str) -> Optional[datetime]:
        with self.engine.connect() as conn:
            return conn.execute(
                select(app_settings.c.updated_at).where(app_settings.c.key == key)
            ).scalar_one_or_none()

    def apply_remote_setting(self, row: Dict[str, Any]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                build_upsert(conn, app_settings, row_values(app_settings, row),
                             key_columns=("key",))
            )
