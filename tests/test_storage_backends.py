# tests/test_storage_backends.py

from __future__ import annotations

from pathlib import Path

import pytest

from taskkeep.core.errors import QuotaExceededError
from taskkeep.storage.backends import MemoryStorage, SQLiteStorage, is_available, open_storage


def test_memory_storage_quota_counts_other_keys() -> None:
    s = MemoryStorage(quota_bytes=12)
    s.set_item("a", "12345")  # 6
    s.set_item("a", "1234567890")  # overwrite: 11, still fits

    with pytest.raises(QuotaExceededError):
        s.set_item("b", "12")  # 11 + 3 > 12

    assert s.get_item("b") is None
    assert s.usage().used == 11
    assert s.usage().available == 1


def test_sqlite_storage_roundtrip_and_persistence(tmp_path: Path) -> None:
    db = tmp_path / "kv.sqlite3"
    s = SQLiteStorage(db)
    assert s.persistent is True

    s.set_item("todos", '{"records": []}')
    s.set_item("theme", '"dark"')
    s.set_item("theme", '"light"')
    assert s.get_item("theme") == '"light"'
    assert s.keys() == ["theme", "todos"]

    again = SQLiteStorage(db)
    assert again.get_item("todos") == '{"records": []}'

    again.remove_item("theme")
    assert again.get_item("theme") is None
    assert again.usage().used == len("todos") + len('{"records": []}')


def test_sqlite_storage_enforces_quota(tmp_path: Path) -> None:
    s = SQLiteStorage(tmp_path / "kv.sqlite3", quota_bytes=20)
    s.set_item("k", "x" * 10)
    with pytest.raises(QuotaExceededError):
        s.set_item("other", "y" * 10)
    assert s.get_item("other") is None


def test_open_storage_selects_backend_once(tmp_path: Path) -> None:
    assert open_storage(tmp_path / "kv.sqlite3").persistent is True
    assert open_storage(tmp_path / "kv.sqlite3", volatile=True).persistent is False
    assert open_storage(None).persistent is False


def test_open_storage_falls_back_to_memory(tmp_path: Path) -> None:
    # A directory cannot be opened as a database file.
    s = open_storage(tmp_path)
    assert isinstance(s, MemoryStorage)
    assert is_available(s)
