"""
Replication between the local and remote databases.

Push drains the Change Ledger to the remote side, pull brings remote changes
since the watermark back, and the scheduler runs both on a timer with
exponential backoff.
"""

from .engine import SyncEngine
from .initial import InitialSync, SyncDirection
from .pull import PullPipeline
from .push import PushPipeline
from .scheduler import SyncScheduler, SyncState, SyncStatus

__all__ = [
    'SyncEngine',
    'InitialSync',
    'SyncDirection',
    'PullPipeline',
    'PushPipeline',
    'SyncScheduler',
    'SyncState',
    'SyncStatus',
]
