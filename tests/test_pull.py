"""
Tests for the pull pipeline.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from cloudsync.config import ConfigStore
from cloudsync.exceptions import RemoteUnavailableError
from cloudsync.sync.pull import PullPipeline
from cloudsync.sync.push import PushPipeline

from conftest import T0, client_row, later, time_entry_row


@pytest.fixture
def pipeline(repo, remote, config_store):
    return PullPipeline(repo, remote, config_store)


class TestPull:

    def test_pulls_new_remote_rows_parents_first(self, repo, remote, pipeline, seed_reference_both):
        """Test a new remote client and its time entry land locally."""
        remote.upsert("clients", client_row())
        remote.upsert("time_entries", time_entry_row("te-1", "client-42"))

        result = pipeline.run()

        assert result.errors == []
        assert result.pulled >= 2
        assert repo.fetch_row("time_entries", "te-1")["client_id"] == "client-42"

    def test_watermark_advanced(self, pipeline, config_store):
        """Test a clean run moves the watermark forward."""
        assert config_store.get_watermark() is None
        pipeline.run()
        first = config_store.get_watermark()
        assert first is not None

        pipeline.run()
        assert config_store.get_watermark() >= first

    def test_only_rows_after_watermark(self, repo, remote, pipeline, config_store):
        """Test rows changed before the watermark are not queried again."""
        remote.upsert("clients", client_row(updated_at=T0))
        config_store.save(last_sync_at=later(10))

        result = pipeline.run()

        assert result.pulled == 0
        assert repo.fetch_row("clients", "client-42") is None

    def test_local_newer_is_skipped(self, repo, remote, pipeline):
        """Test a pending local edit is not overwritten."""
        remote.upsert("clients", client_row(phone="remote", updated_at=T0))
        repo.apply_remote_row("clients", client_row(phone="old", updated_at=T0 - timedelta(seconds=5)))
        repo.update("clients", "client-42", {"phone": "local", "updated_at": later(1)})

        result = pipeline.run()

        assert result.skipped == 1
        assert repo.fetch_row("clients", "client-42")["phone"] == "local"

    def test_tie_applies_remote(self, repo, remote, pipeline):
        """Test equal timestamps take the remote version."""
        remote.upsert("clients", client_row(phone="remote"))
        repo.apply_remote_row("clients", client_row(phone="local"))

        result = pipeline.run()

        assert result.pulled == 1
        assert repo.fetch_row("clients", "client-42")["phone"] == "remote"

    def test_identical_rows_not_counted(self, repo, remote, pipeline):
        """Test a row already present locally is skipped, not rewritten."""
        remote.upsert("clients", client_row())
        repo.apply_remote_row("clients", client_row())

        result = pipeline.run()

        assert result.pulled == 0
        assert result.skipped == 1

    def test_prefer_remote_collision_replaces_local_row(self, repo, remote, pipeline):
        """Test the remote chat log wins the per-client key."""
        remote.upsert("clients", client_row())
        repo.apply_remote_row("clients", client_row())
        repo.insert("client_chat_logs", {"id": "chat-local", "client_id": "client-42",
                                         "content": "local"})
        remote.upsert("client_chat_logs", {"id": "chat-remote", "client_id": "client-42",
                                           "content": "remote", "updated_at": T0})

        result = pipeline.run()

        assert result.errors == []
        assert repo.fetch_row("client_chat_logs", "chat-local") is None
        assert repo.fetch_row("client_chat_logs", "chat-remote")["content"] == "remote"

    def test_rejected_collision_is_record_error(self, repo, remote, pipeline):
        """Test a remote client whose name is taken locally by another id."""
        repo.insert("clients", client_row("local-acme", "Acme Corp"))
        remote.upsert("clients", client_row("client-42", "Acme Corp"))

        result = pipeline.run()

        assert len(result.errors) == 1
        assert result.errors[0].record_id == "client-42"
        assert repo.fetch_row("clients", "client-42") is None

    def test_no_config_returns_zero_counts(self, repo, remote, tmp_path):
        """Test an unconfigured installation pulls nothing."""
        store = ConfigStore(tmp_path / "missing.json")
        result = PullPipeline(repo, remote, store).run()
        assert result.as_dict() == {"pulled": 0, "skipped": 0, "deleted": 0, "errors": []}
        assert store.get_watermark() is None


class TestLoopFreedom:

    def test_pull_creates_no_ledger_entries(self, repo, remote, ledger, pipeline, seed_reference_both):
        """Test remote-applied writes are not captured."""
        remote.upsert("clients", client_row())
        remote.upsert("time_entries", time_entry_row("te-1", "client-42"))

        pipeline.run()

        assert ledger.get_pending_count() == 0

    def test_pull_then_push_pushes_nothing(self, repo, remote, ledger, pipeline):
        """Test a pull followed by a push sends zero records."""
        remote.upsert("clients", client_row())
        pipeline.run()

        result = PushPipeline(repo, remote, ledger).run()

        assert result.pushed == 0
        assert result.skipped == 0

    def test_second_pull_is_noop(self, repo, remote, pipeline):
        """Test re-running the pull with no remote writes changes nothing."""
        remote.upsert("clients", client_row(updated_at=later(-60)))
        pipeline.run()

        result = pipeline.run()

        assert result.pulled == 0
        assert result.deleted == 0


class TestDeletions:

    def test_remote_delete_from_other_instance_applied(self, repo, remote, other_remote, ledger,
                                                       pipeline, seed_reference_both):
        """Test tombstones written by another installation delete local rows."""
        remote.upsert("clients", client_row())
        remote.upsert("time_entries", time_entry_row("te-1", "client-42"))
        repo.apply_remote_row("clients", client_row())
        repo.apply_remote_row("time_entries", time_entry_row("te-1", "client-42"))

        other_remote.delete("time_entries", "te-1")
        other_remote.delete("clients", "client-42")

        result = pipeline.run()

        assert result.deleted == 2
        assert repo.fetch_row("time_entries", "te-1") is None
        assert repo.fetch_row("clients", "client-42") is None
        assert ledger.get_pending_count() == 0

    def test_own_tombstones_ignored(self, repo, remote, pipeline):
        """Test this installation's own deletes are not replayed."""
        remote.upsert("clients", client_row())
        remote.delete("clients", "client-42")
        repo.apply_remote_row("clients", client_row())

        result = pipeline.run()

        assert result.deleted == 0
        assert repo.fetch_row("clients", "client-42") is not None


class TestFailures:

    def test_pipeline_failure_keeps_watermark(self, remote, pipeline, config_store):
        """Test a lost connection does not advance the watermark."""
        config_store.save(last_sync_at=T0)
        failure = OperationalError("SELECT", {}, Exception("could not connect to server"))

        with patch.object(remote, "changed_since", side_effect=failure):
            with pytest.raises(RemoteUnavailableError):
                pipeline.run()

        assert config_store.get_watermark() == T0

    def test_non_network_failure_propagates(self, remote, pipeline, config_store):
        """Test other pipeline-level errors propagate unchanged."""
        config_store.save(last_sync_at=T0)
        failure = OperationalError("SELECT", {}, Exception("no such table: clients"))

        with patch.object(remote, "changed_since", side_effect=failure):
            with pytest.raises(OperationalError):
                pipeline.run()

        assert config_store.get_watermark() == T0

    def test_record_error_does_not_block_watermark(self, repo, remote, pipeline, config_store):
        """Test per-record errors still let the watermark advance."""
        repo.insert("clients", client_row("local-acme", "Acme Corp"))
        remote.upsert("clients", client_row("client-42", "Acme Corp"))

        result = pipeline.run()

        assert result.errors
        assert config_store.get_watermark() is not None


class TestSettings:

    def test_pull_settings(self, repo, remote, pipeline):
        """Test remote settings are applied locally."""
        remote.upsert_setting({"key": "company_name", "value": "Acme Repairs", "updated_at": T0})

        result = pipeline.run()

        assert result.pulled == 1
        assert repo.get_setting("company_name") == "Acme Repairs"

    def test_newer_local_setting_kept(self, repo, remote, pipeline):
        """Test a newer local setting is not overwritten."""
        repo.set_setting("company_name", "Local")
        remote.upsert_setting({"key": "company_name", "value": "Remote", "updated_at": T0})

        pipeline.run()

        assert repo.get_setting("company_name") == "Local"

    def test_identical_setting_counted_as_skipped(self, repo, remote, pipeline):
        """Test a setting already holding the remote value is skipped, not pulled."""
        repo.apply_remote_setting({"key": "company_name", "value": "Acme Repairs",
                                   "updated_at": T0 - timedelta(seconds=1)})
        remote.upsert_setting({"key": "company_name", "value": "Acme Repairs", "updated_at": T0})

        result = pipeline.run()

        assert result.pulled == 0
        assert result.skipped == 1
