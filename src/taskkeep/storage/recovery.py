# src/taskkeep/storage/recovery.py

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..core.errors import ValidationError
from ..core.models import (
    CURRENT_SCHEMA_VERSION,
    Envelope,
    Task,
    new_record_id,
    parse_timestamp,
    utc_now,
)
from ..core.validation import sanitize_text, validate_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecoveryResult:
    envelope: Envelope
    repaired: bool
    salvaged: int
    discarded: int


class RecoveryEngine:
    """
    Structural validation and salvage of a loaded envelope.

    - unparseable payload         -> empty envelope (nothing persisted)
    - valid envelope              -> returned as-is
    - invalid shape / bad records -> keep the well-formed records, synthesize missing ids,
                                     default missing timestamps to now, persist the result

    Never raises.
    """

    def __init__(
        self,
        *,
        current_version: str = CURRENT_SCHEMA_VERSION,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = new_record_id,
    ) -> None:
        self._current = current_version
        self._clock = clock
        self._id_factory = id_factory

    def decode(self, text: str | None) -> Any:
        """Parse a raw payload; malformed JSON is treated as an empty store (None)."""
        if text is None or not text.strip():
            return None
        try:
            return json.loads(text)
        except (ValueError, TypeError):
            logger.warning("Stored envelope is not valid JSON (%d chars); starting empty", len(text))
            return None

    # ---- validation ----

    @staticmethod
    def is_valid_record(rec: Any) -> bool:
        if not isinstance(rec, dict):
            return False
        rid = rec.get("id")
        if not isinstance(rid, str) or not rid:
            return False
        try:
            validate_text(rec.get("text"))
        except ValidationError:
            return False
        if not isinstance(rec.get("completed"), bool):
            return False
        created = parse_timestamp(rec.get("createdAt"))
        updated = parse_timestamp(rec.get("updatedAt"))
        return created is not None and updated is not None and updated >= created

    def is_valid(self, data: Any) -> bool:
        if not isinstance(data, dict):
            return False
        records = data.get("records")
        version = data.get("schemaVersion")
        if not isinstance(records, list) or not isinstance(version, str) or not version:
            return False

        seen: set[str] = set()
        for rec in records:
            if not self.is_valid_record(rec):
                return False
            if rec["id"] in seen:
                return False
            seen.add(rec["id"])
        return True

    # ---- load / salvage ----

    def load(self, data: Any, persist: Callable[[dict[str, Any]], None] | None = None) -> RecoveryResult:
        if data is None:
            return RecoveryResult(Envelope(schema_version=self._current), False, 0, 0)

        if self.is_valid(data):
            envelope = Envelope(
                records=[Task.from_dict(r) for r in data["records"]],
                schema_version=data["schemaVersion"],
                last_sync_timestamp=self._last_sync(data),
            )
            return RecoveryResult(envelope, False, len(envelope.records), 0)

        return self.salvage(data, persist)

    def salvage(self, data: Any, persist: Callable[[dict[str, Any]], None] | None = None) -> RecoveryResult:
        logger.warning("Invalid storage state detected, attempting recovery")

        if isinstance(data, dict):
            raw_records = data.get("records")
        elif isinstance(data, list):
            raw_records = data
        else:
            raw_records = None
        if not isinstance(raw_records, list):
            raw_records = []

        tasks: list[Task] = []
        seen: set[str] = set()
        for rec in raw_records:
            task = self._salvage_record(rec)
            if task is None:
                continue
            if task.id in seen:
                logger.info("Recovery: duplicate id %s re-keyed", task.id)
                task.id = self._id_factory()
            seen.add(task.id)
            tasks.append(task)

        envelope = Envelope(
            records=tasks,
            schema_version=self._current,
            last_sync_timestamp=self._last_sync(data),
        )
        discarded = len(raw_records) - len(tasks)

        if persist is not None:
            try:
                persist(envelope.to_dict())
            except Exception:
                logger.exception("Failed to save recovered data")

        logger.info("Recovered %d todo(s) from corrupted data, discarded %d", len(tasks), discarded)
        return RecoveryResult(envelope, True, len(tasks), discarded)

    def _salvage_record(self, rec: Any) -> Task | None:
        if not isinstance(rec, dict):
            return None

        raw_text = rec.get("text")
        if not isinstance(raw_text, str):
            return None
        text = sanitize_text(raw_text)
        if not text:
            return None

        rid = rec.get("id")
        if rid is None or rid == "":
            rid = self._id_factory()
        elif not isinstance(rid, str):
            return None

        completed = rec.get("completed", False)
        if not isinstance(completed, bool):
            return None

        now = self._clock()
        created = parse_timestamp(rec.get("createdAt")) or now
        updated = parse_timestamp(rec.get("updatedAt")) or now
        return Task(
            id=rid,
            text=text,
            completed=completed,
            created_at=created,
            updated_at=max(created, updated),
        )

    @staticmethod
    def _last_sync(data: Any) -> str | None:
        if isinstance(data, dict):
            v = data.get("lastSyncTimestamp")
            if isinstance(v, str):
                return v
        return None
