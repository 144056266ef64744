"""
Cloud Sync Configuration

Connection settings and the sync watermark live in a JSON file outside the
database, so they survive a reset of the local database.

Environment Variables:
    CLOUDSYNC_DATA_DIR: Directory holding the config file (default: "data")
    CLOUDSYNC_LOCAL_DATABASE_URL: Local database URL
        (default: "sqlite:///<data dir>/local.db")
    CLOUDSYNC_SYNC_INTERVAL: Base sync interval in seconds (default: 30)
    CLOUDSYNC_MAX_BACKOFF: Maximum backoff interval in seconds (default: 300)
"""

import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel

load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "cloud-sync-config.json"

DEFAULT_SYNC_INTERVAL = 30.0   # seconds
DEFAULT_MAX_BACKOFF = 300.0    # 5 minutes


def get_data_dir() -> Path:
    return Path(os.environ.get("CLOUDSYNC_DATA_DIR", "data"))


def get_local_database_url() -> str:
    default = f"sqlite:///{get_data_dir() / 'local.db'}"
    return os.environ.get("CLOUDSYNC_LOCAL_DATABASE_URL", default)


def get_sync_interval() -> float:
    return float(os.environ.get("CLOUDSYNC_SYNC_INTERVAL", DEFAULT_SYNC_INTERVAL))


def get_max_backoff() -> float:
    return float(os.environ.get("CLOUDSYNC_MAX_BACKOFF", DEFAULT_MAX_BACKOFF))


def mask_key(key: str) -> str:
    """Mask a secret for display (first 8 and last 4 characters)."""
    if not key or len(key) < 16:
        return "***" if key else ""
    return f"{key[:8]}...{key[-4:]}"


class SyncConfig(BaseModel):
    """
    Persisted sync settings.

    Stored with camelCase keys (databaseUrl, lastSyncAt, ...); attribute
    names are snake_case.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    enabled: bool = False
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_key: str = ""
    database_url: str = ""
    last_sync_at: Optional[datetime] = None
    instance_id: str = ""

    @field_validator("last_sync_at")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @property
    def is_configured(self) -> bool:
        return bool(self.database_url)

    def masked(self) -> dict:
        """Config as a dict safe to show to users."""
        data = self.model_dump(by_alias=True, mode="json")
        data["supabaseAnonKey"] = mask_key(self.supabase_anon_key)
        data["supabaseServiceKey"] = mask_key(self.supabase_service_key)
        data["databaseUrl"] = _mask_url_password(self.database_url)
        return data


def _mask_url_password(url: str) -> str:
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    credentials, host = rest.rsplit("@", 1)
    if ":" in credentials:
        user = credentials.split(":", 1)[0]
        return f"{scheme}://{user}:***@{host}"
    return url


class ConfigStore:
    """
    Reads and writes the sync config file.

    Usage:
        store = ConfigStore()              # <data dir>/cloud-sync-config.json
        store.save(database_url="postgresql+psycopg://...", enabled=True)
        config = store.load()
        store.advance_watermark(utcnow())
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_data_dir() / CONFIG_FILENAME
        self._lock = threading.RLock()

    def load(self) -> Optional[SyncConfig]:
        """Return the stored config, or None if missing or unreadable."""
        with self._lock:
            if not self.path.exists():
                return None
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                return SyncConfig.model_validate(raw)
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Unreadable sync config at {self.path}: {e}")
                return None

    def save(self, **changes) -> SyncConfig:
        """
        Merge changes into the stored config and write it back.

        An instance id is generated on first save.
        """
        with self._lock:
            current = self.load() or SyncConfig()
            merged = current.model_copy(update=changes)
            merged = SyncConfig.model_validate(merged.model_dump())
            if not merged.instance_id:
                merged.instance_id = str(uuid.uuid4())

            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            tmp_path.write_text(
                json.dumps(merged.model_dump(by_alias=True, mode="json"), indent=2),
                encoding="utf-8",
            )
            os.replace(tmp_path, self.path)
            return merged

    def is_enabled(self) -> bool:
        config = self.load()
        return config is not None and config.enabled and config.is_configured

    def get_instance_id(self) -> str:
        config = self.load()
        if config and config.instance_id:
            return config.instance_id
        return self.save().instance_id

    def get_watermark(self) -> Optional[datetime]:
        config = self.load()
        return config.last_sync_at if config else None

    def advance_watermark(self, timestamp: datetime) -> datetime:
        """
        Move the watermark forward to timestamp.

        Never moves it backwards; returns the watermark now stored.
        """
        with self._lock:
            current = self.get_watermark()
            if current is not None and timestamp <= current:
                return current
            return self.save(last_sync_at=timestamp).last_sync_at
