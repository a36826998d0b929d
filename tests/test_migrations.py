# tests/test_migrations.py

from __future__ import annotations

from taskkeep.core.models import CURRENT_SCHEMA_VERSION
from taskkeep.storage.migrations import DEFAULT_STEPS, MigrationContext, MigrationEngine, version_key

from .fakes import FixedClock


def _ids(prefix: str = "gen"):
    counter = iter(range(1, 1000))
    return lambda: f"{prefix}-{next(counter)}"


def test_legacy_09_envelope_is_mapped_to_current_schema() -> None:
    saved: list[dict] = []
    engine = MigrationEngine(clock=FixedClock())
    data = {"items": [{"_id": "x", "title": "T", "done": True}], "version": "0.9.0"}

    assert engine.needs_migration(data)
    result = engine.migrate(data, persist=saved.append)

    assert result.success
    assert result.from_version == "0.9.0"
    assert result.data["schemaVersion"] == CURRENT_SCHEMA_VERSION
    assert len(result.data["records"]) == 1
    rec = result.data["records"][0]
    assert (rec["id"], rec["text"], rec["completed"]) == ("x", "T", True)
    assert "version" not in result.data and "items" not in result.data
    assert saved == [result.data]


def test_missing_ids_are_synthesized_and_unmappable_items_dropped() -> None:
    engine = MigrationEngine(clock=FixedClock(), id_factory=_ids())
    data = {
        "todos": [
            {"description": "  walk\nthe dog "},
            {"done": True},
            "garbage",
            {"id": "keep", "text": "ok", "finished": True, "createdAt": 1_700_000_000_000},
        ],
        "version": "0.5",
    }

    result = engine.migrate(data)

    assert result.migrated_count == 2
    assert result.dropped_count == 2
    first, second = result.data["records"]
    assert first["id"] == "gen-1"
    assert first["text"] == "walk the dog"
    assert first["completed"] is False
    assert second["completed"] is True
    assert second["createdAt"] == "2023-11-14T22:13:20Z"


def test_v1_envelope_keeps_last_sync() -> None:
    engine = MigrationEngine(clock=FixedClock())
    rec = {"id": "a", "text": "t", "completed": False, "createdAt": "2025-01-01T00:00:00Z", "updatedAt": "2025-01-01T00:00:00Z"}
    data = {"todos": [rec], "version": "1.0.0", "lastSync": "2025-02-01T00:00:00Z"}

    result = engine.migrate(data)

    assert result.data == {
        "records": [rec],
        "schemaVersion": CURRENT_SCHEMA_VERSION,
        "lastSyncTimestamp": "2025-02-01T00:00:00Z",
    }


def test_steps_are_idempotent() -> None:
    v2 = DEFAULT_STEPS[-1]
    once = v2.apply({"todos": [{"id": "a"}], "version": "1.0.0"}, MigrationContext())
    twice = v2.apply(once, MigrationContext())
    assert once == twice


def test_persist_failure_is_logged_not_raised() -> None:
    def boom(_data: dict) -> None:
        raise OSError("disk full")

    engine = MigrationEngine(clock=FixedClock())
    result = engine.migrate({"items": [{"title": "T"}], "version": "0.1"}, persist=boom)

    assert result.migrated_count == 1
    assert result.data["schemaVersion"] == CURRENT_SCHEMA_VERSION


def test_current_or_unversioned_data_needs_no_migration() -> None:
    engine = MigrationEngine()
    assert not engine.needs_migration({"records": [], "schemaVersion": CURRENT_SCHEMA_VERSION})
    assert not engine.needs_migration({"records": []})
    assert not engine.needs_migration(None)


def test_version_key_ordering() -> None:
    assert version_key("0.9.0") < version_key("1.0.0") < version_key("1.10.0") < version_key("2.0.0")
    assert version_key(None) == (0,)
