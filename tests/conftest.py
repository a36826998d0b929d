# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from taskkeep.storage.backends import MemoryStorage
from taskkeep.storage.batch_writer import BatchWriter
from taskkeep.storage.record_store import RecordStore

from .fakes import FixedClock


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with create_app() and the commands.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="taskkeep-test",
        log_level="DEBUG",
        # Paths (tmp per test run)
        data_dir=tmp_path,
        storage_path=tmp_path / "storage.sqlite3",
        volatile_storage=True,
        storage_quota_bytes=5 * 1024 * 1024,
        # Batch writer
        batch_delay_ms=10,
        max_batch_size=10,
        durable_threshold=100,
        # Quota
        retention_days=30,
        quota_max_attempts=3,
        # Sync (disabled)
        sync_url="",
        sync_max_retries=3,
        sync_base_delay_ms=0,
        sync_timeout_seconds=5.0,
        probe_interval_seconds=30.0,
    )


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture()
def writer(storage: MemoryStorage) -> BatchWriter:
    return BatchWriter(storage, batch_delay=0.01)


@pytest.fixture()
def store(writer: BatchWriter, clock: FixedClock) -> RecordStore:
    return RecordStore(writer, clock=clock)
