# tests/test_config.py

from __future__ import annotations

from pathlib import Path

import pytest

from taskkeep.config import Settings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DATA_DIR", "STORAGE_PATH", "SYNC_URL", "BATCH_DELAY_MS", "VOLATILE_STORAGE"):
        monkeypatch.delenv(f"TASKKEEP_{name}", raising=False)

    s = Settings.from_env()

    assert s.data_dir == Path(".local/taskkeep")
    assert s.storage_path == Path(".local/taskkeep/storage.sqlite3")
    assert s.volatile_storage is False
    assert s.batch_delay_ms == 100
    assert s.sync_url == ""


def test_env_overrides_and_invalid_values(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKKEEP_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("TASKKEEP_SYNC_URL", " https://backup.test/api ")
    monkeypatch.setenv("TASKKEEP_SYNC_BASE_DELAY_MS", "250")
    monkeypatch.setenv("TASKKEEP_MAX_BATCH_SIZE", "zero")
    monkeypatch.setenv("TASKKEEP_QUOTA_MAX_ATTEMPTS", "-1")
    monkeypatch.setenv("TASKKEEP_VOLATILE_STORAGE", "yes")

    s = Settings.from_env()

    assert s.storage_path == tmp_path / "storage.sqlite3"
    assert s.sync_url == "https://backup.test/api"
    assert s.sync_base_delay_ms == 250
    assert s.max_batch_size == 10
    assert s.quota_max_attempts == 3
    assert s.volatile_storage is True
