"""
Tracked Table Registry

Declares every table that participates in replication, once, as SQLAlchemy
Core tables sharing one MetaData:

- The column list used for reads and upserts on both sides
- The foreign-key graph (parents must exist before children)
- The conflict strategy (last-modified timestamp vs. append-only)
- Natural unique keys and how a collision on them is resolved

SYNC_TABLE_ORDER is derived from the foreign keys rather than maintained by
hand, so adding a table with a new parent cannot silently break ordering.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine

from cloudsync.exceptions import UnknownTableError


def utcnow() -> datetime:
    """Current time as naive UTC (the form stored on both sides)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


metadata = MetaData()


def _uuid_pk() -> Column:
    return Column("id", String(36), primary_key=True)


def _created_at() -> Column:
    return Column("created_at", DateTime, nullable=False, default=utcnow)


def _updated_at() -> Column:
    return Column("updated_at", DateTime, nullable=False, default=utcnow)


# ============================================================================
# Tracked tables (declaration order doubles as the tie-break for sorting)
# ============================================================================

users = Table(
    "users", metadata,
    _uuid_pk(),
    Column("username", Text, nullable=False),
    Column("display_name", Text, nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(20), nullable=False, default="basic"),
    Column("is_active", Boolean, nullable=False, default=True),
    _created_at(),
    _updated_at(),
    UniqueConstraint("username", name="uq_users_username"),
)

clients = Table(
    "clients", metadata,
    _uuid_pk(),
    Column("name", Text, nullable=False),
    Column("account_holder", Text),
    Column("account_holder_id", String(36), ForeignKey("users.id")),
    Column("phone", Text),
    Column("mailing_address", Text),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("notes", Text),
    Column("default_hourly_rate", Numeric(10, 2)),
    Column("invoice_payable_to", Text),
    _created_at(),
    _updated_at(),
    UniqueConstraint("name", name="uq_clients_name"),
)

job_types = Table(
    "job_types", metadata,
    _uuid_pk(),
    Column("name", Text, nullable=False),
    Column("description", Text),
    Column("is_active", Boolean, nullable=False, default=True),
    _created_at(),
    UniqueConstraint("name", name="uq_job_types_name"),
)

rate_tiers = Table(
    "rate_tiers", metadata,
    _uuid_pk(),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("label", Text),
    Column("is_active", Boolean, nullable=False, default=True),
    _created_at(),
)

projects = Table(
    "projects", metadata,
    _uuid_pk(),
    Column("client_id", String(36), ForeignKey("clients.id"), nullable=False),
    Column("name", Text, nullable=False),
    Column("status", String(30), nullable=False, default="in_progress"),
    Column("assigned_to", Text),
    Column("note", Text),
    Column("is_active", Boolean, nullable=False, default=True),
    _created_at(),
    _updated_at(),
)

client_chat_logs = Table(
    "client_chat_logs", metadata,
    _uuid_pk(),
    Column("client_id", String(36), ForeignKey("clients.id"), nullable=False),
    Column("content", Text, nullable=False),
    _updated_at(),
    UniqueConstraint("client_id", name="uq_client_chat_logs_client"),
)

invoices = Table(
    "invoices", metadata,
    _uuid_pk(),
    Column("client_id", String(36), ForeignKey("clients.id"), nullable=False),
    Column("invoice_number", Text, nullable=False),
    Column("date_issued", Date, nullable=False),
    Column("date_due", Date),
    Column("status", String(20), nullable=False, default="draft"),
    Column("notes", Text),
    _created_at(),
    _updated_at(),
    UniqueConstraint("invoice_number", name="uq_invoices_number"),
)

time_entries = Table(
    "time_entries", metadata,
    _uuid_pk(),
    Column("client_id", String(36), ForeignKey("clients.id"), nullable=False),
    Column("tech_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("job_type_id", String(36), ForeignKey("job_types.id"), nullable=False),
    Column("rate_tier_id", String(36), ForeignKey("rate_tiers.id"), nullable=False),
    Column("date", Date, nullable=False),
    Column("hours", Numeric(6, 2), nullable=False),
    Column("notes", Text),
    Column("group_id", String(36)),
    Column("is_billed", Boolean, nullable=False, default=False),
    Column("is_paid", Boolean, nullable=False, default=False),
    Column("invoice_id", String(36), ForeignKey("invoices.id")),
    _created_at(),
    _updated_at(),
)

invoice_line_items = Table(
    "invoice_line_items", metadata,
    _uuid_pk(),
    Column("invoice_id", String(36), ForeignKey("invoices.id"), nullable=False),
    Column("time_entry_id", String(36), ForeignKey("time_entries.id")),
    Column("description", Text, nullable=False),
    Column("hours", Numeric(6, 2), nullable=False),
    Column("rate", Numeric(10, 2), nullable=False),
    _created_at(),
)

payments = Table(
    "payments", metadata,
    _uuid_pk(),
    Column("invoice_id", String(36), ForeignKey("invoices.id"), nullable=False),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("date_paid", Date, nullable=False),
    Column("method", Text),
    Column("notes", Text),
    _created_at(),
)

partner_splits = Table(
    "partner_splits", metadata,
    _uuid_pk(),
    Column("partner_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("split_percent", Numeric(5, 4), nullable=False),
    Column("effective_from", Date, nullable=False),
    Column("effective_to", Date),
    _created_at(),
)

partner_payments = Table(
    "partner_payments", metadata,
    _uuid_pk(),
    Column("from_partner_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("to_partner_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("date_paid", Date, nullable=False),
    Column("notes", Text),
    _created_at(),
)

# Text-keyed settings, synced by full scan with last-writer-wins
app_settings = Table(
    "app_settings", metadata,
    Column("key", Text, primary_key=True),
    Column("value", Text, nullable=False),
    _updated_at(),
)


# ============================================================================
# Sync bookkeeping tables
# ============================================================================

# Local only: the Change Ledger
sync_changelog = Table(
    "sync_changelog", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("table_name", Text, nullable=False),
    Column("record_id", Text, nullable=False),
    Column("operation", String(10), nullable=False),
    Column("changed_at", DateTime, nullable=False, default=utcnow),
    Column("synced", Boolean, nullable=False, default=False),
    Column("error_message", Text),
    Column("last_attempt_at", DateTime),
    Index("idx_sync_changelog_unsynced", "synced"),
)

# Remote only: hard deletions, so other installations can replay them
sync_tombstones = Table(
    "sync_tombstones", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("table_name", Text, nullable=False),
    Column("record_id", Text, nullable=False),
    Column("deleted_at", DateTime, nullable=False, default=utcnow),
    Column("instance_id", Text),
    Index("idx_sync_tombstones_deleted_at", "deleted_at"),
)


# ============================================================================
# Registry
# ============================================================================

class ConflictStrategy(str, enum.Enum):
    """How concurrent versions of one record are compared."""
    UPDATED_AT = "updated_at"    # last-writer-wins on updated_at
    APPEND_ONLY = "append_only"  # created_at only, no update conflicts


class CollisionRule(str, enum.Enum):
    """What to do when a natural unique key is held by a different id."""
    REJECT = "reject"                # record a per-record error, write nothing
    PREFER_REMOTE = "prefer_remote"  # the shared copy keeps the key


@dataclass(frozen=True)
class UniqueKey:
    columns: Tuple[str, ...]
    rule: CollisionRule = CollisionRule.REJECT


@dataclass(frozen=True)
class TrackedTable:
    """One replicated table and everything the pipelines need to know about it."""
    name: str
    table: Table
    strategy: ConflictStrategy
    unique_keys: Tuple[UniqueKey, ...] = ()
    primary_key: str = "id"
    parents: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def columns(self) -> List[str]:
        return [c.name for c in self.table.columns]

    @property
    def has_updated_at(self) -> bool:
        return self.strategy == ConflictStrategy.UPDATED_AT

    @property
    def change_column(self) -> str:
        """Column compared against the watermark when pulling."""
        return "updated_at" if self.has_updated_at else "created_at"

    @property
    def has_soft_delete(self) -> bool:
        return "is_active" in self.table.c

    def describe_key(self, key: UniqueKey) -> str:
        return f"{self.name}.{'+'.join(key.columns)}"


def _parents_of(table: Table) -> FrozenSet[str]:
    return frozenset(
        fk.column.table.name
        for fk in table.foreign_keys
        if fk.column.table.name != table.name
    )


def _track(table: Table, strategy: ConflictStrategy, *unique_keys: UniqueKey) -> TrackedTable:
    return TrackedTable(
        name=table.name,
        table=table,
        strategy=strategy,
        unique_keys=tuple(unique_keys),
        parents=_parents_of(table),
    )


_DECLARED = [
    _track(users, ConflictStrategy.UPDATED_AT, UniqueKey(("username",))),
    _track(clients, ConflictStrategy.UPDATED_AT, UniqueKey(("name",))),
    _track(job_types, ConflictStrategy.APPEND_ONLY, UniqueKey(("name",))),
    _track(rate_tiers, ConflictStrategy.APPEND_ONLY),
    _track(projects, ConflictStrategy.UPDATED_AT),
    _track(client_chat_logs, ConflictStrategy.UPDATED_AT,
           UniqueKey(("client_id",), CollisionRule.PREFER_REMOTE)),
    _track(invoices, ConflictStrategy.UPDATED_AT, UniqueKey(("invoice_number",))),
    _track(time_entries, ConflictStrategy.UPDATED_AT),
    _track(invoice_line_items, ConflictStrategy.APPEND_ONLY),
    _track(payments, ConflictStrategy.APPEND_ONLY),
    _track(partner_splits, ConflictStrategy.APPEND_ONLY),
    _track(partner_payments, ConflictStrategy.APPEND_ONLY),
]


def topological_order(declared: List[TrackedTable]) -> Tuple[str, ...]:
    """
    Sort tables parents-first.

    Among tables whose parents are all placed, the earliest declared goes
    next, so the result is stable across runs.

    Raises:
        ValueError: If the foreign-key graph has a cycle or a parent that
            is not itself tracked.
    """
    names = [t.name for t in declared]
    known = set(names)
    for t in declared:
        missing = t.parents - known
        if missing:
            raise ValueError(f"{t.name} references untracked tables: {sorted(missing)}")

    placed: List[str] = []
    remaining = list(declared)
    while remaining:
        ready = next(
            (t for t in remaining if t.parents <= set(placed)),
            None,
        )
        if ready is None:
            raise ValueError(
                f"Foreign-key cycle among: {sorted(t.name for t in remaining)}"
            )
        placed.append(ready.name)
        remaining.remove(ready)
    return tuple(placed)


SYNC_TABLE_ORDER: Tuple[str, ...] = topological_order(_DECLARED)

TRACKED_TABLES: Dict[str, TrackedTable] = {
    name: next(t for t in _DECLARED if t.name == name) for name in SYNC_TABLE_ORDER
}


def get_tracked_table(name: str) -> TrackedTable:
    try:
        return TRACKED_TABLES[name]
    except KeyError:
        raise UnknownTableError(name) from None


def is_tracked(name: str) -> bool:
    return name in TRACKED_TABLES


def dependency_index(name: str) -> int:
    return SYNC_TABLE_ORDER.index(get_tracked_table(name).name)


def upsert_order(names: Iterable[str]) -> List[str]:
    """Order table names parents-first."""
    return sorted(set(names), key=dependency_index)


def deletion_order(names: Optional[Iterable[str]] = None) -> List[str]:
    """Order table names children-first (all tracked tables by default)."""
    if names is None:
        names = SYNC_TABLE_ORDER
    return sorted(set(names), key=dependency_index, reverse=True)


# ============================================================================
# Schema helpers
# ============================================================================

def _tracked_tables() -> List[Table]:
    return [TRACKED_TABLES[name].table for name in SYNC_TABLE_ORDER] + [app_settings]


def create_local_schema(engine: Engine) -> None:
    """Create tracked tables and the Change Ledger on the local database."""
    metadata.create_all(engine, tables=_tracked_tables() + [sync_changelog])


def create_remote_schema(engine: Engine) -> None:
    """
    Create tracked tables and the tombstone table on the remote database.

    Remote provisioning is an external setup step; this is what that step
    (and the test suite) runs.
    """
    metadata.create_all(engine, tables=_tracked_tables() + [sync_tombstones])
