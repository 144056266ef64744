"""
Sync Scheduler

Runs a push + pull cycle on a timer and tracks sync health:

    disabled -> idle <-> syncing
    syncing -> idle | offline | error

offline means the failure looked like a connectivity problem, error means
anything else. Both back off exponentially:

    interval = min(base_interval * 2 ** consecutive_failures, max_interval)

and the first success resets the interval to base. Only one cycle ever runs
at a time; a manual trigger while syncing is rejected.

Each scheduler instance owns its state, so tests can run several side by
side.
"""

import enum
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from cloudsync.config import get_max_backoff, get_sync_interval
from cloudsync.db.remote import is_network_error
from cloudsync.exceptions import RemoteUnavailableError, SyncDisabledError, SyncInProgressError
from cloudsync.logging_utils import structured_log
from cloudsync.sync.engine import SyncEngine
from cloudsync.sync.results import CycleResult, InitialSyncResult

logger = logging.getLogger(__name__)


class SyncState(str, enum.Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    SYNCING = "syncing"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass
class SyncStatus:
    state: SyncState
    pending_count: int = 0
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    current_interval: float = 0.0
    last_sync_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["last_sync_at"] = self.last_sync_at.isoformat() if self.last_sync_at else None
        return data


def compute_backoff(base_interval: float, failures: int, max_interval: float) -> float:
    """Next interval after `failures` consecutive failed cycles."""
    if failures <= 0:
        return base_interval
    return min(base_interval * (2 ** failures), max_interval)


class SyncScheduler:
    """
    Background timer around a SyncEngine.

    Usage:
        scheduler = SyncScheduler(engine)
        scheduler.start()           # first cycle runs immediately
        scheduler.get_status().as_dict()
        scheduler.trigger_sync()    # manual cycle
        scheduler.stop()
    """

    def __init__(self, engine: SyncEngine, base_interval: Optional[float] = None,
                 max_interval: Optional[float] = None):
        self.engine = engine
        self.base_interval = base_interval or get_sync_interval()
        self.max_interval = max_interval or get_max_backoff()
        self.current_interval = self.base_interval

        self.state = SyncState.DISABLED
        self.last_error: Optional[str] = None
        self.consecutive_failures = 0
        self.pending_count = 0

        # Guards the state check-and-set only, never held during a cycle
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Timer control
    # ------------------------------------------------------------------

    def start(self, interval: Optional[float] = None) -> bool:
        """
        Start the timer thread. Returns False (state disabled) when sync is
        not configured or switched off.
        """
        self.stop()

        if not self.engine.is_enabled():
            self.state = SyncState.DISABLED
            logger.info("Cloud sync is not enabled, scheduler not started")
            return False

        if interval:
            self.base_interval = interval
        self.current_interval = self.base_interval
        self.state = SyncState.IDLE
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="cloudsync-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(f"Sync scheduler started (interval: {self.base_interval}s)")
        return True

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the timer. A cycle in flight finishes first."""
        thread = self._thread
        self._stop_event.set()
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        if self.state != SyncState.DISABLED:
            self.state = SyncState.DISABLED
            logger.info("Sync scheduler stopped")

    def restart(self, interval: Optional[float] = None) -> bool:
        """Stop, drop the remote connection and start again (config changed)."""
        self.stop()
        self.engine.reset_connection()
        self.consecutive_failures = 0
        self.last_error = None
        return self.start(interval)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._tick()
            if self.state == SyncState.DISABLED:
                break
            self._stop_event.wait(self.current_interval)

    def _tick(self) -> None:
        if not self.engine.is_enabled():
            self.state = SyncState.DISABLED
            logger.info("Cloud sync disabled, halting scheduler")
            return
        try:
            self.run_cycle()
        except SyncInProgressError:
            logger.debug("Cycle already in progress, skipping tick")

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def _begin_cycle(self) -> None:
        with self._state_lock:
            if self.state == SyncState.SYNCING:
                raise SyncInProgressError()
            self.state = SyncState.SYNCING

    def run_cycle(self) -> Optional[CycleResult]:
        """
        Run one cycle and update state.

        Returns:
            The cycle result, or None if the cycle failed (see get_status()).

        Raises:
            SyncInProgressError: A cycle is already running
        """
        self._begin_cycle()
        try:
            self.pending_count = self.engine.get_pending_count()
            structured_log("INFO", "sync_cycle_started", pending_count=self.pending_count)
            result = self.engine.run_cycle()
        except Exception as e:
            # The scheduler is where pipeline failures become state
            self._record_failure(e)
            return None

        self._record_success(result)
        return result

    def _refresh_pending_count(self) -> None:
        try:
            self.pending_count = self.engine.get_pending_count()
        except SQLAlchemyError as e:
            logger.warning(f"Could not read pending change count: {e}")

    def _record_success(self, result: CycleResult) -> None:
        self.consecutive_failures = 0
        self.last_error = None
        self._refresh_pending_count()
        if self.current_interval != self.base_interval:
            logger.info(f"Sync recovered, interval back to {self.base_interval}s")
        self.current_interval = self.base_interval
        self.state = SyncState.IDLE

        structured_log(
            "INFO", "sync_cycle_completed",
            pushed=result.push.pushed,
            pulled=result.pull.pulled,
            skipped=result.push.skipped + result.pull.skipped,
            deleted=result.pull.deleted,
            errors=result.error_count,
            pending_count=self.pending_count,
        )

    def _record_failure(self, error: Exception) -> None:
        offline = isinstance(error, RemoteUnavailableError) or is_network_error(error)
        self.consecutive_failures += 1
        self.last_error = str(error)
        self.state = SyncState.OFFLINE if offline else SyncState.ERROR

        structured_log(
            "ERROR", "sync_cycle_failed",
            state=self.state.value,
            error=self.last_error,
            error_type=type(error).__name__,
            consecutive_failures=self.consecutive_failures,
        )

        next_interval = compute_backoff(
            self.base_interval, self.consecutive_failures, self.max_interval
        )
        if next_interval != self.current_interval:
            self.current_interval = next_interval
            structured_log("WARNING", "sync_backoff", interval=next_interval,
                           consecutive_failures=self.consecutive_failures)

    def trigger_sync(self) -> Optional[CycleResult]:
        """
        Run one cycle now on the calling thread.

        Raises:
            SyncDisabledError: No remote configured, or sync switched off
            SyncInProgressError: A cycle is already running
        """
        if not self.engine.is_enabled():
            raise SyncDisabledError()
        if self.state == SyncState.DISABLED:
            self.state = SyncState.IDLE
        return self.run_cycle()

    def run_initial_sync(self, direction) -> InitialSyncResult:
        """
        Run a full sync, then restart the timer if it was running. Otherwise
        the scheduler stays disabled, as after stop().

        Raises:
            SyncInProgressError: A cycle is already running
        """
        was_running = self.is_running
        self._begin_cycle()
        try:
            result = self.engine.run_initial_sync(direction)
        except Exception as e:
            self.state = SyncState.ERROR
            self.last_error = str(e)
            raise
        # Without a timer there is nothing to be idle for
        self.state = SyncState.IDLE if was_running else SyncState.DISABLED
        self.last_error = None
        self._refresh_pending_count()

        if was_running:
            self.restart()
        return result

    def get_status(self) -> SyncStatus:
        if self.state != SyncState.SYNCING:
            self._refresh_pending_count()
        return SyncStatus(
            state=self.state,
            pending_count=self.pending_count,
            last_error=self.last_error,
            consecutive_failures=self.consecutive_failures,
            current_interval=self.current_interval,
            last_sync_at=self.engine.config_store.get_watermark(),
        )
