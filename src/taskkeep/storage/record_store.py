# src/taskkeep/storage/record_store.py

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from ..core.errors import NotFoundError, QuotaExceededError, StorageError, ValidationError
from ..core.models import (
    CURRENT_SCHEMA_VERSION,
    Envelope,
    StorageMetrics,
    StorageUsage,
    Task,
    TaskFilters,
    TaskStatus,
    format_timestamp,
    new_record_id,
    utc_now,
)
from ..core.validation import clean_text, validate_batch
from .batch_writer import BatchWriter, WriteFailure
from .migrations import MigrationEngine
from .quota import QuotaManager
from .recovery import RecoveryEngine

logger = logging.getLogger(__name__)

DEFAULT_RECORDS_KEY = "todos"
DEFAULT_PENDING_SYNC_KEY = "pendingSync"
DEFAULT_DURABLE_THRESHOLD = 100


@dataclass(frozen=True, slots=True)
class StorageInfo:
    persistent: bool
    record_count: int
    usage: StorageUsage | None


class RecordStore:
    """
    Task CRUD over a single persisted envelope.

    - The envelope is loaded lazily (migration, then recovery) and cached in memory.
    - Every mutation rewrites the whole envelope through the BatchWriter.
    - Quota failures reported by the writer go through the QuotaManager; if cleanup
      does not help, the StorageError is raised from the next persist (or flush())
      and handed to `on_storage_error`.

    The store never touches the pending-sync key; that slot belongs to the
    Sync Coordinator.
    """

    def __init__(
        self,
        writer: BatchWriter,
        *,
        key: str = DEFAULT_RECORDS_KEY,
        pending_sync_key: str = DEFAULT_PENDING_SYNC_KEY,
        quota: QuotaManager | None = None,
        migrations: MigrationEngine | None = None,
        recovery: RecoveryEngine | None = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = new_record_id,
        durable_threshold: int = DEFAULT_DURABLE_THRESHOLD,
        on_storage_error: Callable[[StorageError], None] | None = None,
    ) -> None:
        self._writer = writer
        self._key = key
        self._clock = clock
        self._id_factory = id_factory
        self._durable_threshold = int(durable_threshold)
        self._on_storage_error = on_storage_error

        self._quota = quota or QuotaManager(
            writer, records_key=key, pending_sync_key=pending_sync_key, clock=clock
        )
        self._migrations = migrations or MigrationEngine(clock=clock, id_factory=id_factory)
        self._recovery = recovery or RecoveryEngine(
            current_version=self._migrations.current_version, clock=clock, id_factory=id_factory
        )

        self._envelope: Envelope | None = None
        self._unconfirmed: set[str] = set()
        self._write_error: StorageError | None = None

        self._unsubscribe = [
            writer.errors.subscribe(self._on_write_failure),
            writer.flushed.subscribe(self._on_flushed),
        ]

    # ---- load ----

    async def load(self) -> Envelope:
        """(Re)load the envelope from storage: decode -> migrate -> validate/salvage."""
        try:
            text = self._writer.get_text(self._key)
        except Exception as e:
            raise StorageError(f"Failed to read todos: {e}") from e

        data = self._recovery.decode(text)
        if self._migrations.needs_migration(data):
            data = self._migrations.migrate(data, persist=self._persist_now).data

        result = self._recovery.load(data, persist=self._persist_now)
        self._envelope = result.envelope
        logger.debug(
            "Envelope loaded: %d record(s), repaired=%s", len(result.envelope.records), result.repaired
        )
        return self._envelope

    async def _ensure_loaded(self) -> Envelope:
        if self._envelope is None:
            return await self.load()
        return self._envelope

    # ---- CRUD ----

    async def create(self, text: str) -> Task:
        clean = clean_text(text)
        env = await self._ensure_loaded()

        now = self._clock()
        task = Task(id=self._new_id(env), text=clean, completed=False, created_at=now, updated_at=now)
        env.records.append(task)
        self._unconfirmed.add(task.id)
        logger.debug("Todo created id=%s", task.id)

        await self._persist()
        return self._view(task)

    async def create_many(self, texts: Sequence[str]) -> list[Task]:
        """All-or-nothing: one invalid text rejects the whole batch."""
        cleaned = validate_batch(texts)
        env = await self._ensure_loaded()

        now = self._clock()
        created: list[Task] = []
        for clean in cleaned:
            task = Task(id=self._new_id(env), text=clean, completed=False, created_at=now, updated_at=now)
            env.records.append(task)
            self._unconfirmed.add(task.id)
            created.append(task)
        logger.debug("Created %d todo(s) in one batch", len(created))

        await self._persist()
        return [self._view(t) for t in created]

    async def read(
        self,
        filters: TaskFilters | None = None,
        *,
        status: TaskStatus | str | None = None,
        search_text: str | None = None,
    ) -> list[Task]:
        """All records newest first, optionally filtered by status and text substring."""
        if filters is not None:
            status = status or filters.status
            search_text = search_text or filters.search_text
        if isinstance(status, str) and not isinstance(status, TaskStatus):
            status = TaskStatus.parse(status)

        env = await self._ensure_loaded()
        tasks = list(env.records)

        if status == TaskStatus.COMPLETED:
            tasks = [t for t in tasks if t.completed]
        elif status == TaskStatus.PENDING:
            tasks = [t for t in tasks if not t.completed]

        if search_text:
            needle = search_text.casefold()
            tasks = [t for t in tasks if needle in t.text.casefold()]

        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return [self._view(t) for t in tasks]

    async def get(self, record_id: str) -> Task:
        env = await self._ensure_loaded()
        i = env.find(record_id)
        if i < 0:
            raise NotFoundError(record_id)
        return self._view(env.records[i])

    async def update(
        self,
        record_id: str,
        *,
        text: str | None = None,
        completed: bool | None = None,
    ) -> Task:
        env = await self._ensure_loaded()
        i = env.find(record_id)
        if i < 0:
            raise NotFoundError(record_id)

        clean = clean_text(text) if text is not None else None
        if completed is not None and not isinstance(completed, bool):
            raise ValidationError("completed must be a boolean", field="completed")

        task = env.records[i]
        if clean is not None:
            task.text = clean
        if completed is not None:
            task.completed = completed
        task.updated_at = max(self._clock(), task.created_at)
        self._unconfirmed.add(task.id)

        await self._persist()
        return self._view(task)

    async def toggle(self, record_id: str) -> Task:
        current = await self.get(record_id)
        return await self.update(record_id, completed=not current.completed)

    async def delete(self, record_id: str) -> None:
        env = await self._ensure_loaded()
        i = env.find(record_id)
        if i < 0:
            raise NotFoundError(record_id)

        del env.records[i]
        self._unconfirmed.discard(record_id)
        logger.debug("Todo deleted id=%s", record_id)
        await self._persist()

    async def clear_all(self) -> None:
        env = await self._ensure_loaded()
        env.records.clear()
        self._unconfirmed.clear()
        await self._persist(durable=True)
        logger.info("All todos cleared")

    # ---- persistence ----

    async def flush(self) -> None:
        """Make the current envelope durable now; raises the StorageError if that fails."""
        if self._write_error is not None and self._envelope is not None:
            await self._persist(durable=True)
            return
        await self._writer.force_flush()
        self._raise_write_error()

    async def retry_save(self) -> None:
        if self._envelope is not None:
            await self._persist(durable=True)

    def mark_synced(self, timestamp: datetime | str | None = None) -> None:
        """Record a successful backup time in the envelope (batched, never raises)."""
        if self._envelope is None:
            return
        if timestamp is None:
            timestamp = self._clock()
        if isinstance(timestamp, datetime):
            timestamp = format_timestamp(timestamp)
        self._envelope.last_sync_timestamp = timestamp
        self._writer.set(self._key, self._envelope.to_dict())

    async def _persist(self, *, durable: bool = False) -> None:
        env = self._envelope
        if env is None:
            return
        env.schema_version = CURRENT_SCHEMA_VERSION
        self._writer.set(self._key, env.to_dict())

        # A previous flush failed: retry right away instead of reporting a stale error.
        if durable or self._write_error is not None or len(env.records) > self._durable_threshold:
            self._write_error = None
            await self._writer.force_flush()
        self._raise_write_error()

    def _persist_now(self, data: dict[str, Any]) -> None:
        try:
            self._writer.write_now(self._key, data)
        except QuotaExceededError:
            self._quota.recover(self._key, data)

    def _raise_write_error(self) -> None:
        if self._write_error is not None:
            raise self._write_error

    def _on_write_failure(self, failure: WriteFailure) -> None:
        if failure.key != self._key or failure.value is None:
            return

        if not isinstance(failure.error, QuotaExceededError):
            self._fail(StorageError(f"Failed to save todos: {failure.error}", recoverable=False))
            return

        try:
            outcome = self._quota.recover(failure.key, failure.value)
        except StorageError as e:
            self._fail(StorageError(e.message, recoverable=True, retry_action=self.retry_save))
            return
        except Exception as e:
            self._fail(StorageError(f"Failed to save todos: {e}", recoverable=False))
            return

        if outcome.trimmed_records and self._envelope is not None:
            removed = _record_ids(failure.value) - _record_ids(outcome.value)
            self._envelope.records = [t for t in self._envelope.records if t.id not in removed]
            logger.info("Dropped %d expired completed todo(s) to fit storage quota", len(removed))

    def _on_flushed(self, key: str) -> None:
        if key == self._key:
            self._unconfirmed.clear()
            self._write_error = None

    def _fail(self, error: StorageError) -> None:
        logger.error("Saving todos failed: %s (recoverable=%s)", error.message, error.recoverable)
        self._write_error = error
        if self._on_storage_error is not None:
            try:
                self._on_storage_error(error)
            except Exception:
                logger.exception("on_storage_error callback failed")

    # ---- info ----

    async def metrics(self) -> StorageMetrics:
        env = await self._ensure_loaded()
        records = env.records
        completed = sum(1 for t in records if t.completed)
        created = [t.created_at for t in records]
        return StorageMetrics(
            total=len(records),
            completed=completed,
            pending=len(records) - completed,
            oldest=min(created) if created else None,
            newest=max(created) if created else None,
            average_text_length=(sum(len(t.text) for t in records) / len(records)) if records else 0.0,
        )

    async def storage_info(self) -> StorageInfo:
        env = await self._ensure_loaded()
        try:
            usage: StorageUsage | None = self._writer.storage_info()
        except Exception:
            logger.debug("Storage usage unavailable", exc_info=True)
            usage = None
        return StorageInfo(
            persistent=bool(getattr(self._writer.storage, "persistent", False)),
            record_count=len(env.records),
            usage=usage,
        )

    def dispose(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    # ---- helpers ----

    def _new_id(self, env: Envelope) -> str:
        rid = self._id_factory()
        while env.find(rid) >= 0:
            rid = self._id_factory()
        return rid

    def _view(self, task: Task) -> Task:
        return replace(task, pending=task.id in self._unconfirmed)


def _record_ids(value: Any) -> set[str]:
    if not isinstance(value, dict) or not isinstance(value.get("records"), list):
        return set()
    return {r["id"] for r in value["records"] if isinstance(r, dict) and isinstance(r.get("id"), str)}
