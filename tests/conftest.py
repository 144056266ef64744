"""
Pytest fixtures for cloud sync tests.

Provides:
- Local and remote databases as SQLite files in tmp_path (foreign keys on)
- A config store pointing at the remote file
- Repository, remote access and engine fixtures
- Helpers to seed parent rows
"""

import os
import sys
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

# Add the project directory to the Python path
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_dir not in sys.path:
    sys.path.insert(0, project_dir)

from cloudsync.config import ConfigStore
from cloudsync.db.ledger import ChangeLedger
from cloudsync.db.local import LocalRepository, create_local_engine
from cloudsync.db.remote import RemoteDatabase, create_remote_engine
from cloudsync.models import create_local_schema, create_remote_schema
from cloudsync.sync.engine import SyncEngine

INSTANCE_ID = "test-instance-0001"

# Fixed base time so tests control timestamp ordering
T0 = datetime(2024, 3, 1, 12, 0, 0)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def local_url(tmp_path):
    return f"sqlite:///{tmp_path / 'local.db'}"


@pytest.fixture
def remote_url(tmp_path):
    return f"sqlite:///{tmp_path / 'remote.db'}"


@pytest.fixture
def local_engine(local_url):
    engine = create_local_engine(local_url)
    create_local_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def remote_engine(remote_url):
    engine = create_remote_engine(remote_url)
    create_remote_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def config_store(tmp_path, remote_url):
    """Config store with sync enabled against the remote file."""
    store = ConfigStore(tmp_path / "cloud-sync-config.json")
    store.save(database_url=remote_url, enabled=True, instance_id=INSTANCE_ID)
    return store


@pytest.fixture
def ledger(local_engine):
    return ChangeLedger(local_engine)


@pytest.fixture
def repo(local_engine, ledger):
    return LocalRepository(local_engine, ledger)


@pytest.fixture
def remote(remote_engine):
    return RemoteDatabase(remote_engine, instance_id=INSTANCE_ID)


@pytest.fixture
def other_remote(remote_engine):
    """The same remote database as seen by another installation."""
    return RemoteDatabase(remote_engine, instance_id="other-instance-0002")


@pytest.fixture
def sync_engine(local_engine, config_store, remote):
    return SyncEngine(local_engine, config_store, remote=remote, resolve_host=False)


# ============================================================================
# Sample Data Fixtures
# ============================================================================

def user_row(user_id="user-1", username="tech", **overrides):
    row = {
        "id": user_id,
        "username": username,
        "display_name": username.title(),
        "password_hash": "x",
        "role": "admin",
        "is_active": True,
        "created_at": T0,
        "updated_at": T0,
    }
    row.update(overrides)
    return row


def client_row(client_id="client-42", name="Acme Corp", **overrides):
    row = {
        "id": client_id,
        "name": name,
        "phone": "555-0100",
        "is_active": True,
        "default_hourly_rate": Decimal("85.00"),
        "created_at": T0,
        "updated_at": T0,
    }
    row.update(overrides)
    return row


def time_entry_row(entry_id, client_id, tech_id="user-1", **overrides):
    row = {
        "id": entry_id,
        "client_id": client_id,
        "tech_id": tech_id,
        "job_type_id": "job-1",
        "rate_tier_id": "tier-1",
        "date": date(2024, 3, 1),
        "hours": Decimal("1.50"),
        "is_billed": False,
        "is_paid": False,
        "created_at": T0,
        "updated_at": T0,
    }
    row.update(overrides)
    return row


REFERENCE_ROWS = [
    ("users", user_row()),
    ("job_types", {"id": "job-1", "name": "Repair", "is_active": True, "created_at": T0}),
    ("rate_tiers", {"id": "tier-1", "amount": Decimal("85.00"), "label": "Standard",
                    "is_active": True, "created_at": T0}),
]


@pytest.fixture
def seed_reference_both(repo, remote):
    """
    Same users/job_types/rate_tiers rows on both sides, ledger left empty.
    """
    for table_name, row in REFERENCE_ROWS:
        repo.apply_remote_row(table_name, row)
        remote.upsert(table_name, row)


@pytest.fixture
def seed_reference_local(repo):
    """Reference rows created locally through the repository (captured)."""
    for table_name, row in REFERENCE_ROWS:
        repo.insert(table_name, row)


def later(seconds):
    return T0 + timedelta(seconds=seconds)
