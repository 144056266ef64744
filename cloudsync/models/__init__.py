"""
Cloud Sync - Table Models

- TrackedTable registry: every replicated table with its conflict strategy
- sync_changelog: local Change Ledger
- sync_tombstones: remote record of hard deletions
- app_settings: text-keyed settings synced by full scan
"""

from cloudsync.models.tables import (
    metadata,
    utcnow,
    ConflictStrategy,
    CollisionRule,
    UniqueKey,
    TrackedTable,
    TRACKED_TABLES,
    SYNC_TABLE_ORDER,
    get_tracked_table,
    is_tracked,
    upsert_order,
    deletion_order,
    app_settings,
    sync_changelog,
    sync_tombstones,
    create_local_schema,
    create_remote_schema,
)

__all__ = [
    'metadata',
    'utcnow',
    # Registry
    'ConflictStrategy',
    'CollisionRule',
    'UniqueKey',
    'TrackedTable',
    'TRACKED_TABLES',
    'SYNC_TABLE_ORDER',
    'get_tracked_table',
    'is_tracked',
    'upsert_order',
    'deletion_order',
    # Bookkeeping tables
    'app_settings',
    'sync_changelog',
    'sync_tombstones',
    # Schema
    'create_local_schema',
    'create_remote_schema',
]
