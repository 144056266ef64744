"""
Tests for the sync scheduler state machine and backoff.
"""

import json
import logging
import threading
from unittest.mock import Mock

import pytest

from cloudsync.exceptions import RemoteUnavailableError, SyncDisabledError, SyncInProgressError
from cloudsync.sync.results import CycleResult, InitialSyncResult
from cloudsync.sync.scheduler import SyncScheduler, SyncState, compute_backoff

from conftest import client_row


def make_engine(configured=True):
    """Stand-in SyncEngine with a successful, empty cycle."""
    engine = Mock()
    engine.is_configured.return_value = configured
    engine.is_enabled.return_value = configured
    engine.get_pending_count.return_value = 0
    engine.run_cycle.return_value = CycleResult()
    engine.config_store.get_watermark.return_value = None
    return engine


class TestBackoff:

    def test_compute_backoff(self):
        """Test doubling per failure, capped at the maximum."""
        assert compute_backoff(30, 0, 300) == 30
        assert compute_backoff(30, 1, 300) == 60
        assert compute_backoff(30, 2, 300) == 120
        assert compute_backoff(30, 3, 300) == 240
        assert compute_backoff(30, 4, 300) == 300
        assert compute_backoff(30, 10, 300) == 300

    def test_three_network_failures_then_success(self):
        """Test intervals never decrease, stay capped and reset on success."""
        engine = make_engine()
        engine.run_cycle.side_effect = RemoteUnavailableError("connection refused")
        scheduler = SyncScheduler(engine, base_interval=100, max_interval=300)

        intervals = []
        for _ in range(3):
            assert scheduler.trigger_sync() is None
            intervals.append(scheduler.current_interval)

        assert intervals == [200, 300, 300]
        assert intervals == sorted(intervals)
        assert scheduler.state == SyncState.OFFLINE
        assert scheduler.consecutive_failures == 3

        engine.run_cycle.side_effect = None
        assert scheduler.trigger_sync() is not None
        assert scheduler.current_interval == 100
        assert scheduler.consecutive_failures == 0
        assert scheduler.state == SyncState.IDLE
        assert scheduler.last_error is None


class TestStates:

    def test_network_failure_is_offline(self):
        """Test connectivity failures enter offline."""
        engine = make_engine()
        engine.run_cycle.side_effect = RemoteUnavailableError("could not connect")
        scheduler = SyncScheduler(engine, base_interval=30, max_interval=300)

        scheduler.trigger_sync()

        status = scheduler.get_status()
        assert status.state == SyncState.OFFLINE
        assert status.last_error == "could not connect"
        assert status.consecutive_failures == 1

    def test_other_failure_is_error(self):
        """Test anything else enters error."""
        engine = make_engine()
        engine.run_cycle.side_effect = ValueError("bad row data")
        scheduler = SyncScheduler(engine, base_interval=30, max_interval=300)

        scheduler.trigger_sync()

        assert scheduler.state == SyncState.ERROR
        assert scheduler.current_interval == 60

    def test_trigger_while_syncing_rejected(self):
        """Test no overlapping cycles."""
        engine = make_engine()
        scheduler = SyncScheduler(engine, base_interval=30, max_interval=300)

        def nested_trigger():
            with pytest.raises(SyncInProgressError):
                scheduler.trigger_sync()
            return CycleResult()

        engine.run_cycle.side_effect = nested_trigger
        scheduler.trigger_sync()

        assert engine.run_cycle.call_count == 1
        assert scheduler.state == SyncState.IDLE

    def test_trigger_when_not_configured(self):
        """Test manual sync without configuration is refused."""
        scheduler = SyncScheduler(make_engine(configured=False), base_interval=30)
        with pytest.raises(SyncDisabledError):
            scheduler.trigger_sync()
        assert scheduler.state == SyncState.DISABLED

    def test_failure_logged_as_structured_event(self, caplog):
        """Test cycle failures emit sync_cycle_failed and sync_backoff."""
        engine = make_engine()
        engine.run_cycle.side_effect = RemoteUnavailableError("timeout expired")
        scheduler = SyncScheduler(engine, base_interval=30, max_interval=300)

        with caplog.at_level(logging.INFO, logger="cloudsync.events"):
            scheduler.trigger_sync()

        events = [json.loads(r.getMessage())["event"] for r in caplog.records
                  if r.name == "cloudsync.events"]
        assert events == ["sync_cycle_started", "sync_cycle_failed", "sync_backoff"]

    def test_instances_do_not_share_state(self):
        """Test two schedulers keep independent state."""
        failing = make_engine()
        failing.run_cycle.side_effect = ValueError("boom")
        first = SyncScheduler(failing, base_interval=30, max_interval=300)
        second = SyncScheduler(make_engine(), base_interval=30, max_interval=300)

        first.trigger_sync()
        second.trigger_sync()

        assert first.state == SyncState.ERROR
        assert second.state == SyncState.IDLE

    def test_status_as_dict(self):
        """Test the status shape exposed to callers."""
        scheduler = SyncScheduler(make_engine(), base_interval=30, max_interval=300)
        assert scheduler.get_status().as_dict() == {
            "state": "disabled",
            "pending_count": 0,
            "last_error": None,
            "consecutive_failures": 0,
            "current_interval": 30,
            "last_sync_at": None,
        }


class TestTimer:

    def test_start_not_configured(self):
        """Test the timer never starts without configuration."""
        scheduler = SyncScheduler(make_engine(configured=False), base_interval=30)
        assert scheduler.start() is False
        assert scheduler.state == SyncState.DISABLED
        assert not scheduler.is_running

    def test_first_cycle_runs_immediately(self):
        """Test start() runs a cycle without waiting for the interval."""
        engine = make_engine()
        ran = threading.Event()

        def cycle():
            ran.set()
            return CycleResult()

        engine.run_cycle.side_effect = cycle
        scheduler = SyncScheduler(engine, base_interval=3600, max_interval=3600)

        assert scheduler.start() is True
        try:
            assert ran.wait(5)
        finally:
            scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.state == SyncState.DISABLED

    def test_disabling_halts_timer(self):
        """Test the loop exits once configuration disappears."""
        engine = make_engine()
        engine.is_enabled.side_effect = [True, False]
        scheduler = SyncScheduler(engine, base_interval=0.01, max_interval=0.01)

        scheduler.start()
        scheduler._thread.join(5)

        assert not scheduler.is_running
        assert scheduler.state == SyncState.DISABLED
        engine.run_cycle.assert_not_called()

    def test_restart_resets_connection(self):
        """Test restart drops the remote connection and failure count."""
        engine = make_engine()
        scheduler = SyncScheduler(engine, base_interval=3600, max_interval=3600)
        scheduler.consecutive_failures = 2

        try:
            assert scheduler.restart() is True
        finally:
            scheduler.stop()

        engine.reset_connection.assert_called_once()
        assert scheduler.consecutive_failures == 0


class TestInitialSync:

    def test_rejected_while_syncing(self):
        """Test a full sync cannot overlap a cycle."""
        scheduler = SyncScheduler(make_engine(), base_interval=30)
        scheduler.state = SyncState.SYNCING
        with pytest.raises(SyncInProgressError):
            scheduler.run_initial_sync("merge")

    def test_without_timer_stays_disabled(self):
        """Test a one-off full sync leaves a stopped scheduler disabled."""
        engine = make_engine()
        engine.run_initial_sync.return_value = InitialSyncResult(direction="pull", pulled=3)
        scheduler = SyncScheduler(engine, base_interval=30)

        result = scheduler.run_initial_sync("pull")

        assert result.pulled == 3
        assert scheduler.state == SyncState.DISABLED
        assert not scheduler.is_running
        engine.run_initial_sync.assert_called_once_with("pull")


class TestWithRealEngine:

    def test_trigger_sync_pushes_pending_changes(self, repo, remote, sync_engine):
        """Test a full cycle through the real engine."""
        repo.insert("clients", client_row())
        scheduler = SyncScheduler(sync_engine, base_interval=30, max_interval=300)

        result = scheduler.trigger_sync()

        assert result.push.pushed == 1
        assert remote.fetch_row("clients", "client-42") is not None
        status = scheduler.get_status()
        assert status.state == SyncState.IDLE
        assert status.pending_count == 0
        assert status.last_sync_at is not None

    def test_switched_off_does_not_start(self, repo, remote, config_store, sync_engine):
        """Test enabled=False keeps the timer stopped and pushes nothing."""
        config_store.save(enabled=False)
        repo.insert("clients", client_row())
        scheduler = SyncScheduler(sync_engine, base_interval=30, max_interval=300)

        assert scheduler.start() is False

        assert scheduler.state == SyncState.DISABLED
        assert not scheduler.is_running
        assert remote.fetch_row("clients", "client-42") is None
        assert sync_engine.get_pending_count() == 1

    def test_switched_off_refuses_manual_sync(self, repo, config_store, sync_engine):
        """Test a manual cycle is refused while sync is switched off."""
        config_store.save(enabled=False)
        scheduler = SyncScheduler(sync_engine, base_interval=30, max_interval=300)

        with pytest.raises(SyncDisabledError):
            scheduler.trigger_sync()

    def test_switching_off_halts_timer(self, config_store, sync_engine):
        """Test a running timer stops on its next tick once sync is switched off."""
        scheduler = SyncScheduler(sync_engine, base_interval=0.01, max_interval=0.01)
        assert scheduler.start() is True
        config_store.save(enabled=False)

        scheduler._thread.join(5)

        assert not scheduler.is_running
        assert scheduler.state == SyncState.DISABLED

    def test_second_cycle_is_noop(self, repo, sync_engine):
        """Test idempotence of a full cycle."""
        repo.insert("clients", client_row())
        sync_engine.run_cycle()

        result = sync_engine.run_cycle()

        assert result.push.pushed == 0
        assert result.pull.pulled == 0
