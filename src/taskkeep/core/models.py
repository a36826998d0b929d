# src/taskkeep/core/models.py

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

CURRENT_SCHEMA_VERSION = "2.0.0"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_record_id() -> str:
    return str(uuid.uuid4())


def format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(raw: Any) -> datetime | None:
    """
    Best-effort timestamp parsing for stored/legacy data.

    Accepts:
    - datetime objects (naive ones are treated as UTC)
    - ISO-8601 strings (a trailing 'Z' is allowed)
    - epoch numbers: milliseconds when > 1e11, otherwise seconds

    Returns None when the value cannot be interpreted.
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)

    if isinstance(raw, (int, float)):
        seconds = float(raw) / 1000.0 if abs(raw) > 1e11 else float(raw)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(raw, str):
        s = raw.strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(s)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return None


class TaskStatus(StrEnum):
    """Filter status: 'pending' means not completed."""

    PENDING = "pending"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, raw: str | None) -> TaskStatus | None:
        if not raw:
            return None
        s = raw.strip().lower()
        if s in ("done", "completed", "complete"):
            return cls.COMPLETED
        if s in ("open", "pending", "todo", "active"):
            return cls.PENDING
        return None


@dataclass(slots=True)
class Task:
    id: str
    text: str
    completed: bool
    created_at: datetime
    updated_at: datetime

    # Transient: the latest write for this record has not been flushed yet.
    pending: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "completed": self.completed,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Strict constructor for already-validated dicts (see storage.recovery for salvage)."""
        created = parse_timestamp(data["createdAt"])
        updated = parse_timestamp(data["updatedAt"])
        if created is None or updated is None:
            raise ValueError("invalid timestamps")
        return cls(
            id=str(data["id"]),
            text=str(data["text"]),
            completed=bool(data["completed"]),
            created_at=created,
            updated_at=max(updated, created),
        )


@dataclass(slots=True)
class Envelope:
    records: list[Task] = field(default_factory=list)
    schema_version: str = CURRENT_SCHEMA_VERSION
    last_sync_timestamp: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "records": [t.to_dict() for t in self.records],
            "schemaVersion": self.schema_version,
            "lastSyncTimestamp": self.last_sync_timestamp,
        }

    def find(self, record_id: str) -> int:
        for i, t in enumerate(self.records):
            if t.id == record_id:
                return i
        return -1


@dataclass(frozen=True, slots=True)
class TaskFilters:
    status: TaskStatus | None = None
    search_text: str | None = None


class SyncAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(slots=True)
class SyncOperation:
    """A deferred per-record sync operation, unique by (id, action) in the queue."""

    id: str
    action: SyncAction
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple[str, SyncAction]:
        return (self.id, self.action)


@dataclass(frozen=True, slots=True)
class StorageMetrics:
    total: int
    completed: int
    pending: int
    oldest: datetime | None
    newest: datetime | None
    average_text_length: float


@dataclass(frozen=True, slots=True)
class StorageUsage:
    used: int
    quota: int | None

    @property
    def available(self) -> int | None:
        if self.quota is None:
            return None
        return max(0, self.quota - self.used)
