"""
Result objects returned by the sync pipelines.

Components report outcomes as counts plus per-record errors; only the
scheduler turns failures into state.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class SyncError:
    """A single record that failed to sync."""
    table: str
    record_id: str
    message: str

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class PushResult:
    pushed: int = 0
    skipped: int = 0
    errors: List[SyncError] = field(default_factory=list)

    def add_error(self, table: str, record_id: str, message: str) -> SyncError:
        error = SyncError(table=table, record_id=str(record_id), message=message)
        self.errors.append(error)
        return error

    def as_dict(self) -> Dict[str, Any]:
        return {
            "pushed": self.pushed,
            "skipped": self.skipped,
            "errors": [e.as_dict() for e in self.errors],
        }


@dataclass
class PullResult:
    pulled: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: List[SyncError] = field(default_factory=list)

    def add_error(self, table: str, record_id: str, message: str) -> SyncError:
        error = SyncError(table=table, record_id=str(record_id), message=message)
        self.errors.append(error)
        return error

    def as_dict(self) -> Dict[str, Any]:
        return {
            "pulled": self.pulled,
            "skipped": self.skipped,
            "deleted": self.deleted,
            "errors": [e.as_dict() for e in self.errors],
        }


@dataclass
class InitialSyncResult:
    direction: str
    pushed: int = 0
    pulled: int = 0
    errors: List[SyncError] = field(default_factory=list)
    message: str = ""

    def add_error(self, table: str, record_id: str, message: str) -> SyncError:
        error = SyncError(table=table, record_id=str(record_id), message=message)
        self.errors.append(error)
        return error

    def as_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction,
            "pushed": self.pushed,
            "pulled": self.pulled,
            "errors": [e.as_dict() for e in self.errors],
            "message": self.message,
        }


@dataclass
class CycleResult:
    """One push + pull cycle as run by the scheduler."""
    push: PushResult = field(default_factory=PushResult)
    pull: PullResult = field(default_factory=PullResult)
    watermark: Optional[Any] = None

    @property
    def error_count(self) -> int:
        return len(self.push.errors) + len(self.pull.errors)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "push": self.push.as_dict(),
            "pull": self.pull.as_dict(),
            "watermark": self.watermark.isoformat() if self.watermark else None,
        }
