# tests/test_quota.py

from __future__ import annotations

import json

import pytest

from taskkeep.core.errors import StorageError
from taskkeep.storage.backends import MemoryStorage
from taskkeep.storage.batch_writer import BatchWriter
from taskkeep.storage.quota import QuotaManager

from .fakes import FixedClock, TightStorage, task_dict


def _manager(writer: BatchWriter, clock: FixedClock, **kwargs) -> QuotaManager:
    return QuotaManager(writer, records_key="todos", pending_sync_key="pendingSync", clock=clock, **kwargs)


def _envelope(*records: dict) -> dict:
    return {"records": list(records), "schemaVersion": "2.0.0", "lastSyncTimestamp": None}


def test_old_completed_records_are_trimmed_and_save_succeeds() -> None:
    clock = FixedClock()
    old = task_dict("old", "o" * 300, completed=True, created=clock.now.replace(year=2025, month=12, day=1))
    recent_done = task_dict("recent", "done yesterday", completed=True, created=clock.now)
    fresh = task_dict("new", "buy milk", created=clock.now)

    full = _envelope(old, recent_done, fresh)
    trimmed = _envelope(recent_done, fresh)
    storage = TightStorage(max_value_len=len(json.dumps(trimmed, ensure_ascii=False)))
    writer = BatchWriter(storage)

    outcome = _manager(writer, clock).recover("todos", full)

    assert outcome.trimmed_records == 1
    assert outcome.attempts == 2
    stored = json.loads(storage.get_item("todos") or "null")
    assert [r["id"] for r in stored["records"]] == ["recent", "new"]


def test_auxiliary_keys_are_purged_but_allow_list_is_kept() -> None:
    clock = FixedClock()
    value = _envelope(task_dict("a", "keep me", created=clock.now))
    value_len = len(json.dumps(value, ensure_ascii=False))

    theme = ("theme", '"dark"')
    pending = ("pendingSync", "[]")
    cache = ("cache", "z" * 100)
    fixed = sum(len(k) + len(v) for k, v in (theme, pending))
    storage = MemoryStorage(quota_bytes=len("todos") + value_len + fixed + 50)
    for k, v in (theme, pending, cache):
        storage.set_item(k, v)
    writer = BatchWriter(storage)

    outcome = _manager(writer, clock).recover("todos", value)

    assert outcome.removed_keys == ["cache"]
    assert outcome.trimmed_records == 0
    assert storage.get_item("cache") is None
    assert storage.get_item("theme") == '"dark"'
    assert storage.get_item("pendingSync") == "[]"
    assert json.loads(storage.get_item("todos") or "null") == value


def test_nothing_to_clean_raises_recoverable_storage_error() -> None:
    clock = FixedClock()
    storage = TightStorage(max_value_len=10)
    writer = BatchWriter(storage)

    with pytest.raises(StorageError) as ei:
        _manager(writer, clock).recover("todos", _envelope(task_dict("a", "text", created=clock.now)))

    assert ei.value.recoverable is True
    assert "kept in memory" in ei.value.message
    assert storage.get_item("todos") is None


def test_exhaustion_after_trimming_reports_removed_tasks() -> None:
    clock = FixedClock()
    old = task_dict("old", "o" * 50, completed=True, created=clock.now.replace(year=2025, month=1, day=1))
    big = task_dict("big", "b" * 400, created=clock.now)
    storage = TightStorage(max_value_len=100)
    writer = BatchWriter(storage)

    with pytest.raises(StorageError) as ei:
        _manager(writer, clock, max_attempts=3).recover("todos", _envelope(old, big))

    assert ei.value.recoverable is True
    assert "old completed tasks have been removed" in ei.value.message


def test_trim_respects_retention_window() -> None:
    clock = FixedClock()
    writer = BatchWriter(MemoryStorage())
    manager = _manager(writer, clock, retention_days=30)

    young = task_dict("young", "t", completed=True, created=clock.now.replace(day=1).replace(month=2))
    value, n = manager.trim_old_completed(_envelope(young))

    assert n == 0
    assert value["records"] == [young]
