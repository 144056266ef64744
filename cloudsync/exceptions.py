"""
Exception hierarchy for the sync engine.

Per-record failures are never raised past the pipelines (they are collected
into result objects). The exceptions below are the ones that cross module
boundaries.
"""


class CloudSyncError(Exception):
    """Base class for all sync engine errors."""


class ConfigurationError(CloudSyncError):
    """Remote connection is missing or the config file is unusable."""


class UnknownTableError(CloudSyncError):
    """A table name that is not part of the tracked table registry."""

    def __init__(self, table_name: str):
        super().__init__(f"Table '{table_name}' is not a tracked table")
        self.table_name = table_name


class RemoteUnavailableError(CloudSyncError):
    """The remote database could not be reached (connect, DNS, timeout)."""


class SyncInProgressError(CloudSyncError):
    """A cycle was requested while another one is still running."""

    def __init__(self, message: str = "Sync is already in progress"):
        super().__init__(message)


class SyncDisabledError(CloudSyncError):
    """Sync was requested but is disabled or not configured."""

    def __init__(self, message: str = "Cloud sync is not enabled"):
        super().__init__(message)


class InvalidDirectionError(CloudSyncError):
    """Initial sync direction is not one of push, pull or merge."""

    def __init__(self, direction: str):
        super().__init__(
            f"Invalid initial sync direction '{direction}'. Use push, pull or merge"
        )
        self.direction = direction
