"""
Database access for both sides of the sync.

- ledger: Change Ledger and the Suppression Flag
- local: local repository (all captured writes go through it)
- remote: remote PostgreSQL access, timeouts, tombstones
"""

from .ledger import ChangeLedger, ChangelogEntry, Operation, suppressed
from .local import LocalRepository, create_local_engine
from .remote import RemoteDatabase, create_remote_engine, is_network_error

__all__ = [
    'ChangeLedger',
    'ChangelogEntry',
    'Operation',
    'suppressed',
    'LocalRepository',
    'create_local_engine',
    'RemoteDatabase',
    'create_remote_engine',
    'is_network_error',
]
