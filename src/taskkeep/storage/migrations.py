# src/taskkeep/storage/migrations.py

"""
Envelope schema migrations.

Historical formats:
- 0.x    {items|todos: [{_id|id, title|text|description, done|completed|finished, ...}], version}
- 1.0.0  {todos: [...], version: "1.0.0", lastSync}
- 2.0.0  {records: [...], schemaVersion: "2.0.0", lastSyncTimestamp}   (current)

Steps are ordered by target version and each one is idempotent: re-applying a step to
data that already has its output shape yields the same data. Every step whose target is
newer than the detected version (and not newer than the current version) runs in order.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..core.models import (
    CURRENT_SCHEMA_VERSION,
    format_timestamp,
    new_record_id,
    parse_timestamp,
    utc_now,
)
from ..core.validation import sanitize_text

logger = logging.getLogger(__name__)

_VERSION_PART = re.compile(r"\d+")


def version_key(version: str | None) -> tuple[int, ...]:
    """'1.10.2' -> (1, 10, 2). Unparseable versions sort before everything."""
    if not version:
        return (0,)
    parts = [int(p) for p in _VERSION_PART.findall(str(version))[:3]]
    return tuple(parts) if parts else (0,)


@dataclass(slots=True)
class MigrationContext:
    clock: Callable[[], datetime] = utc_now
    id_factory: Callable[[], str] = new_record_id
    dropped: int = 0


@dataclass(frozen=True, slots=True)
class MigrationStep:
    target: str
    apply: Callable[[dict[str, Any], MigrationContext], dict[str, Any]]
    description: str = ""


@dataclass(slots=True)
class MigrationResult:
    success: bool
    from_version: str | None
    to_version: str
    migrated_count: int
    dropped_count: int
    data: dict[str, Any]
    errors: list[str] = field(default_factory=list)


def _first_str(item: dict[str, Any], *names: str) -> str | None:
    for n in names:
        v = item.get(n)
        if isinstance(v, str) and v.strip():
            return v
    return None


def _v0_to_v1(data: dict[str, Any], ctx: MigrationContext) -> dict[str, Any]:
    """Legacy field names -> text/completed/id; unmappable items are dropped."""
    old_items = data.get("items")
    if not isinstance(old_items, list):
        old_items = data.get("todos")
    if not isinstance(old_items, list):
        old_items = []

    now = format_timestamp(ctx.clock())
    todos: list[dict[str, Any]] = []
    for item in old_items:
        if not isinstance(item, dict):
            ctx.dropped += 1
            continue

        raw_text = _first_str(item, "text", "title", "description")
        text = sanitize_text(raw_text) if raw_text else ""
        if not text:
            ctx.dropped += 1
            continue

        record_id = _first_str(item, "id", "_id") or ctx.id_factory()
        created = parse_timestamp(item.get("createdAt"))
        updated = parse_timestamp(item.get("updatedAt") or item.get("modifiedAt"))

        todos.append(
            {
                "id": record_id,
                "text": text,
                "completed": bool(item.get("completed") or item.get("done") or item.get("finished")),
                "createdAt": format_timestamp(created) if created else now,
                "updatedAt": format_timestamp(updated) if updated else now,
            }
        )

    return {
        "todos": todos,
        "version": "1.0.0",
        "lastSync": data.get("lastSync") or now,
    }


def _v1_to_v2(data: dict[str, Any], ctx: MigrationContext) -> dict[str, Any]:
    """todos/version/lastSync -> records/schemaVersion/lastSyncTimestamp."""
    records = data.get("todos")
    if not isinstance(records, list):
        records = data.get("records")
    if not isinstance(records, list):
        records = []

    kept = [r for r in records if isinstance(r, dict)]
    ctx.dropped += len(records) - len(kept)

    last_sync = data.get("lastSyncTimestamp") or data.get("lastSync")
    return {
        "records": kept,
        "schemaVersion": "2.0.0",
        "lastSyncTimestamp": last_sync if isinstance(last_sync, str) else None,
    }


DEFAULT_STEPS: tuple[MigrationStep, ...] = (
    MigrationStep("1.0.0", _v0_to_v1, "legacy field names"),
    MigrationStep("2.0.0", _v1_to_v2, "records/schemaVersion envelope"),
)


class MigrationEngine:
    def __init__(
        self,
        *,
        steps: tuple[MigrationStep, ...] = DEFAULT_STEPS,
        current_version: str = CURRENT_SCHEMA_VERSION,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = new_record_id,
    ) -> None:
        self._steps = tuple(sorted(steps, key=lambda s: version_key(s.target)))
        self._current = current_version
        self._clock = clock
        self._id_factory = id_factory

    @property
    def current_version(self) -> str:
        return self._current

    @staticmethod
    def detect_version(data: Any) -> str | None:
        if not isinstance(data, dict):
            return None
        for name in ("schemaVersion", "version"):
            v = data.get(name)
            if isinstance(v, str) and v.strip():
                return v.strip()
        return None

    def needs_migration(self, data: Any) -> bool:
        version = self.detect_version(data)
        return version is not None and version != self._current

    def migrate(
        self,
        data: dict[str, Any],
        persist: Callable[[dict[str, Any]], None] | None = None,
    ) -> MigrationResult:
        """
        Upgrade `data` to the current schema version and persist it.

        Never raises: a failing step is logged and skipped, a failing persist is logged
        and the in-memory result is returned anyway.
        """
        from_version = self.detect_version(data)
        logger.info("Migrating envelope from version %s to %s", from_version, self._current)

        ctx = MigrationContext(clock=self._clock, id_factory=self._id_factory)
        errors: list[str] = []
        migrated: dict[str, Any] = dict(data)
        at = version_key(from_version)
        limit = version_key(self._current)

        for step in self._steps:
            target = version_key(step.target)
            if target <= at or target > limit:
                continue
            try:
                migrated = step.apply(migrated, ctx)
            except Exception as e:
                logger.exception("Migration step to %s failed", step.target)
                errors.append(f"{step.target}: {e}")
            at = target

        migrated.pop("version", None)
        migrated.pop("todos", None)
        migrated.pop("lastSync", None)
        migrated["schemaVersion"] = self._current
        if not isinstance(migrated.get("records"), list):
            migrated["records"] = []
        migrated.setdefault("lastSyncTimestamp", None)

        if persist is not None:
            try:
                persist(migrated)
                logger.info("Migration completed: %d record(s)", len(migrated["records"]))
            except Exception:
                logger.exception("Failed to save migrated data")

        if ctx.dropped:
            logger.warning("Migration dropped %d unmappable record(s)", ctx.dropped)

        return MigrationResult(
            success=not errors,
            from_version=from_version,
            to_version=self._current,
            migrated_count=len(migrated["records"]),
            dropped_count=ctx.dropped,
            data=migrated,
            errors=errors,
        )
