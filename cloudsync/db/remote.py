"""
Remote Database Access

The shared copy is a PostgreSQL database reached over the network. Every
connection carries a connect timeout and a statement timeout so a dead TCP
connection cannot hang a sync cycle.

Hard deletions pushed to the remote side are also written to the
sync_tombstones table (when it is provisioned) so that other installations
can replay them on pull.
"""

import logging
import socket
from datetime import datetime
from typing import Any, Dict, List, Optional

import psycopg
from sqlalchemy import create_engine, delete, event, inspect, insert, or_, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError, SQLAlchemyError

from cloudsync.db.local import _enable_sqlite_foreign_keys
from cloudsync.db.statements import (
    build_upsert,
    fetch_all,
    fetch_row,
    fetch_timestamp,
    find_collision,
    row_values,
)
from cloudsync.models.tables import (
    SYNC_TABLE_ORDER,
    app_settings,
    get_tracked_table,
    sync_tombstones,
    utcnow,
)

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 10
STATEMENT_TIMEOUT_MS = 15000
POOL_SIZE = 5

EPOCH = datetime(1970, 1, 1)

# Query canceled (statement_timeout), admin shutdown, crash shutdown, cannot connect now
CONNECTION_SQLSTATES = frozenset({"57014", "57P01", "57P02", "57P03"})

# Substrings of driver messages that mean "could not talk to the server"
NETWORK_ERROR_MARKERS = (
    "connection refused",
    "could not connect",
    "connection reset",
    "connection timed out",
    "timeout expired",
    "statement timeout",
    "could not translate host name",
    "name or service not known",
    "temporary failure in name resolution",
    "nodename nor servname",
    "getaddrinfo",
    "network is unreachable",
    "no route to host",
    "server closed the connection unexpectedly",
    "connection terminated unexpectedly",
    "terminating connection",
    "ssl syscall error",
    "econnrefused",
    "econnreset",
    "etimedout",
    "enotfound",
)


def _has_network_marker(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in NETWORK_ERROR_MARKERS)


def _is_connection_sqlstate(error: psycopg.Error) -> bool:
    """
    Decide a psycopg error by its SQLSTATE.

    Class 08 is connection exception, 57014 the statement timeout and
    57P01-57P03 server shutdown or restart. Deadlocks, resource and program
    limits share OperationalError with these but concern one statement.
    Errors without a SQLSTATE were raised client side, before or after the
    server answered.
    """
    sqlstate = error.sqlstate
    if sqlstate is None:
        return isinstance(error, psycopg.OperationalError) or _has_network_marker(error)
    return sqlstate.startswith("08") or sqlstate in CONNECTION_SQLSTATES


def is_network_error(exc: BaseException) -> bool:
    """
    True when exc (or anything in its cause chain) looks like a connectivity
    failure rather than a problem with the data or the SQL.

    A driver error carrying a SQLSTATE settles the question on its own.
    """
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (socket.timeout, socket.gaierror, ConnectionError, TimeoutError)):
            return True
        if isinstance(current, DBAPIError):
            if current.connection_invalidated:
                return True
            if isinstance(current.orig, psycopg.Error):
                return _is_connection_sqlstate(current.orig)
        if isinstance(current, psycopg.Error):
            return _is_connection_sqlstate(current)
        message = str(current).lower()
        if any(marker in message for marker in NETWORK_ERROR_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


def normalize_remote_url(url: str) -> str:
    """Use the psycopg 3 driver for bare postgres:// and postgresql:// URLs."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://"):]
    return url


def resolve_host_address(url: str) -> Optional[str]:
    """
    Resolve the host in url to an address, IPv4 first, then IPv6.

    Some hosted PostgreSQL providers only publish AAAA records; resolving up
    front avoids clients that only try IPv4. The address is passed to libpq
    as hostaddr, so the host name is still used for TLS verification.

    Returns:
        The address, or None when the url has no host or it does not
        resolve (the driver then reports the problem itself).
    """
    try:
        parsed = make_url(url)
    except ArgumentError:
        return None
    if not parsed.host:
        return None

    for family in (socket.AF_INET, socket.AF_INET6):
        try:
            infos = socket.getaddrinfo(parsed.host, parsed.port or 5432, family=family)
        except socket.gaierror:
            continue
        if infos:
            return infos[0][4][0]
    return None


def create_remote_engine(url: str, resolve_host: bool = False,
                         statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
                         connect_timeout: int = CONNECT_TIMEOUT_SECONDS) -> Engine:
    """
    Engine for the remote database.

    PostgreSQL connections get connect/statement timeouts and UTC session
    time zone. SQLite URLs are accepted so tests can stand in a file for the
    remote side.
    """
    url = normalize_remote_url(url)
    if url.startswith("sqlite"):
        engine = create_engine(url)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    connect_args = {
        "connect_timeout": connect_timeout,
        "options": f"-c statement_timeout={statement_timeout_ms} -c timezone=UTC",
    }
    if resolve_host:
        address = resolve_host_address(url)
        if address:
            connect_args["hostaddr"] = address

    return create_engine(
        url,
        pool_size=POOL_SIZE,
        pool_pre_ping=True,
        pool_recycle=300,
        connect_args=connect_args,
    )


class RemoteDatabase:
    """
    Row-level operations against the shared copy.

    Usage:
        remote = RemoteDatabase(create_remote_engine(url), instance_id="...")
        remote.upsert("clients", row)
        rows = remote.changed_since("clients", watermark)
    """

    def __init__(self, engine: Engine, instance_id: Optional[str] = None):
        self.engine = engine
        self.instance_id = instance_id
        self._has_tombstones: Optional[bool] = None

    @property
    def has_tombstones(self) -> bool:
        if self._has_tombstones is None:
            self._has_tombstones = inspect(self.engine).has_table(sync_tombstones.name)
        return self._has_tombstones

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

    def changed_since(self, table_name: str, since: Optional[datetime]) -> List[Dict[str, Any]]:
        """Rows whose change column is strictly after since, oldest first."""
        tracked = get_tracked_table(table_name)
        table = tracked.table
        column = table.c[tracked.change_column]
        stmt = (
            select(table)
            .where(column > (since or EPOCH))
            .order_by(column.asc(), table.c[tracked.primary_key])
        )
        with self.engine.connect() as conn:
            return [dict(r) for r in conn.execute(stmt).mappings()]

    def deleted_since(self, since: Optional[datetime]) -> List[Dict[str, Any]]:
        """Tombstones written by other installations after since."""
        if not self.has_tombstones:
            return []
        stmt = select(sync_tombstones).where(sync_tombstones.c.deleted_at > (since or EPOCH))
        if self.instance_id:
            stmt = stmt.where(or_(
                sync_tombstones.c.instance_id.is_(None),
                sync_tombstones.c.instance_id != self.instance_id,
            ))
        stmt = stmt.order_by(sync_tombstones.c.id.asc())
        with self.engine.connect() as conn:
            return [dict(r) for r in conn.execute(stmt).mappings()]

    def find_collision(self, table_name: str, row: Dict[str, Any]):
        with self.engine.connect() as conn:
            return find_collision(conn, get_tracked_table(table_name), row)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, table_name: str, row: Dict[str, Any]) -> None:
        """Insert row, or update every non-key column if the id exists."""
        tracked = get_tracked_table(table_name)
        with self.engine.begin() as conn:
            conn.execute(
                build_upsert(conn, tracked.table, row, key_columns=(tracked.primary_key,))
            )

    def delete(self, table_name: str, record_id: str) -> bool:
        """Hard-delete one row and leave a tombstone for other installations."""
        tracked = get_tracked_table(table_name)
        table = tracked.table
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(table).where(table.c[tracked.primary_key] == record_id)
            )
            if self.has_tombstones:
                conn.execute(insert(sync_tombstones).values(
                    table_name=tracked.name,
                    record_id=str(record_id),
                    deleted_at=utcnow(),
                    instance_id=self.instance_id,
                ))
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def fetch_settings(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        stmt = select(app_settings).where(app_settings.c.updated_at > (since or EPOCH))
        with self.engine.connect() as conn:
            return [dict(r) for r in conn.execute(stmt.order_by(app_settings.c.key)).mappings()]

    def fetch_setting_timestamp(self, key: str) -> Optional[datetime]:
        with self.engine.connect() as conn:
            return conn.execute(
                select(app_settings.c.updated_at).where(app_settings.c.key == key)
            ).scalar_one_or_none()

    def upsert_setting(self, row: Dict[str, Any]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                build_upsert(conn, app_settings, row_values(app_settings, row),
                             key_columns=("key",))
            )

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def test_connection(self) -> Dict[str, Any]:
        """
        Check the remote database is reachable and provisioned.

        Returns:
            Dict with success flag, message and which tracked tables exist.
            Never raises.
        """
        try:
            with self.engine.connect() as conn:
                if self.engine.dialect.name == "postgresql":
                    row = conn.execute(
                        text("SELECT NOW() AS time, current_database() AS db")
                    ).one()
                    message = f'Connected to "{row.db}" at {row.time}'
                else:
                    conn.execute(text("SELECT 1"))
                    message = f"Connected to {self.engine.url.render_as_string()}"
            existing = set(inspect(self.engine).get_table_names())
            tables = {name: name in existing for name in SYNC_TABLE_ORDER}
            missing = [name for name, present in tables.items() if not present]
            return {
                "success": True,
                "message": message,
                "tables": tables,
                "missing_tables": missing,
            }
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Remote connection test failed: {e}")
            return {"success": False, "message": f"Connection failed: {e}"}

    def dispose(self) -> None:
        self.engine.dispose()
