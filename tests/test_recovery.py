# tests/test_recovery.py

from __future__ import annotations

from taskkeep.core.models import CURRENT_SCHEMA_VERSION
from taskkeep.storage.recovery import RecoveryEngine

from .fakes import FixedClock, task_dict


def _engine(clock: FixedClock | None = None) -> RecoveryEngine:
    counter = iter(range(1, 1000))
    return RecoveryEngine(clock=clock or FixedClock(), id_factory=lambda: f"new-{next(counter)}")


def test_malformed_payload_becomes_empty_store() -> None:
    engine = _engine()
    data = engine.decode('{"records": [')
    assert data is None

    result = engine.load(data)
    assert result.envelope.records == []
    assert result.envelope.schema_version == CURRENT_SCHEMA_VERSION
    assert result.repaired is False


def test_valid_envelope_is_returned_without_persisting() -> None:
    clock = FixedClock()
    saved: list[dict] = []
    data = {
        "records": [task_dict("a", "one", created=clock.now)],
        "schemaVersion": CURRENT_SCHEMA_VERSION,
        "lastSyncTimestamp": "2026-02-01T00:00:00Z",
    }

    result = _engine(clock).load(data, persist=saved.append)

    assert not result.repaired
    assert saved == []
    assert result.envelope.records[0].text == "one"
    assert result.envelope.last_sync_timestamp == "2026-02-01T00:00:00Z"


def test_partial_salvage_keeps_well_formed_records() -> None:
    clock = FixedClock()
    saved: list[dict] = []
    good = task_dict("a", "good", created=clock.now)
    data = {
        "records": [
            good,
            {"text": "no id yet"},
            {"id": "b", "text": 5},
            "junk",
            {"id": 7, "text": "numeric id"},
            {"id": "c", "text": "   "},
            dict(good, text="duplicate"),
        ],
    }

    result = _engine(clock).load(data, persist=saved.append)

    assert result.repaired
    assert result.salvaged == 3
    assert result.discarded == 4
    texts = [t.text for t in result.envelope.records]
    assert texts == ["good", "no id yet", "duplicate"]
    ids = [t.id for t in result.envelope.records]
    assert ids == ["a", "new-1", "new-2"]

    missing_ts = result.envelope.records[1]
    assert missing_ts.created_at == clock.now
    assert missing_ts.completed is False

    assert len(saved) == 1
    assert saved[0]["schemaVersion"] == CURRENT_SCHEMA_VERSION
    assert len(saved[0]["records"]) == 3


def test_updated_before_created_is_clamped() -> None:
    clock = FixedClock()
    rec = task_dict("a", "t", created=clock.now, updated=clock.now.replace(year=2020))
    result = _engine(clock).load({"records": [rec], "schemaVersion": CURRENT_SCHEMA_VERSION})

    assert result.repaired
    task = result.envelope.records[0]
    assert task.updated_at == task.created_at


def test_bare_list_and_wrong_shapes_never_raise() -> None:
    clock = FixedClock()
    engine = _engine(clock)

    assert len(engine.load([task_dict("a", "t", created=clock.now)]).envelope.records) == 1
    assert engine.load({"records": "nope", "schemaVersion": 3}).envelope.records == []
    assert engine.load(42).envelope.records == []
