# src/taskkeep/storage/batch_writer.py

"""
Batch writer.

Coalesces rapid writes to the key-value store into time-boxed flushes:
- set() records the value in a pending map (last write per key wins) and arms a
  single timer for `batch_delay` seconds; the timer is not re-armed by later writes,
  so a steady stream of writes cannot postpone a flush forever.
- reaching `max_batch_size` distinct keys flushes immediately.
- get() reads pending values first (read-your-writes), then the store.

This is the only component that writes to the store. Values are JSON-serialized at
flush time. A failure writing one key is reported via the `errors` signal and does
not prevent writing the others.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..core.models import StorageUsage
from ..core.ports import KeyValueStorage, LifecycleSource
from ..core.signals import LifecycleEvent, Signal

logger = logging.getLogger(__name__)

DEFAULT_BATCH_DELAY = 0.1
DEFAULT_MAX_BATCH_SIZE = 10


@dataclass(frozen=True, slots=True)
class WriteFailure:
    key: str
    value: Any
    error: Exception


class BatchWriter:
    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        on_error: Callable[[WriteFailure], None] | None = None,
    ) -> None:
        self._storage = storage
        self._batch_delay = max(0.0, float(batch_delay))
        self._max_batch_size = max(1, int(max_batch_size))
        self._pending: dict[str, Any] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._unsubscribe: list[Callable[[], None]] = []
        self._disposed = False

        self.errors: Signal[WriteFailure] = Signal()
        self.flushed: Signal[str] = Signal()
        if on_error is not None:
            self.errors.subscribe(on_error)

    @property
    def storage(self) -> KeyValueStorage:
        return self._storage

    # ---- writes ----

    def set(self, key: str, value: Any) -> None:
        self._pending[key] = value

        if len(self._pending) >= self._max_batch_size:
            self.flush()
            return

        self._schedule()

    def flush(self) -> dict[str, Exception]:
        """
        Write every pending entry now.

        The pending map is snapshotted and cleared first, so writes issued by error
        listeners during the flush belong to the next window.
        Returns the failures keyed by storage key.
        """
        self._cancel_timer()
        if not self._pending:
            return {}

        writes = list(self._pending.items())
        self._pending.clear()

        failures: dict[str, Exception] = {}
        for key, value in writes:
            try:
                self._write(key, value)
            except Exception as e:
                failures[key] = e
                self._report(key, value, e)
            else:
                self.flushed.emit(key)

        logger.debug("Flushed %d key(s), %d failed", len(writes), len(failures))
        return failures

    async def force_flush(self) -> dict[str, Exception]:
        """Drain pending writes immediately (before unload or for large record sets)."""
        return self.flush()

    def write_now(self, key: str, value: Any) -> None:
        """
        Write one key immediately, bypassing the batch window.

        Any pending value for the key is dropped (this value supersedes it).
        Errors propagate to the caller instead of the `errors` signal.
        """
        self._pending.pop(key, None)
        self._write(key, value)
        self.flushed.emit(key)

    def remove(self, key: str) -> None:
        self._pending.pop(key, None)
        try:
            self._storage.remove_item(key)
        except Exception as e:
            self._report(key, None, e)

    # ---- reads ----

    def get(self, key: str) -> Any:
        if key in self._pending:
            return self._pending[key]

        try:
            raw = self._storage.get_item(key)
            return None if raw is None else json.loads(raw)
        except Exception as e:
            self._report(key, None, e)
            return None

    def get_text(self, key: str) -> str | None:
        """Raw serialized value (pending or stored) without decoding it."""
        if key in self._pending:
            return json.dumps(self._pending[key], ensure_ascii=False)
        return self._storage.get_item(key)

    def has_pending(self, key: str) -> bool:
        return key in self._pending

    def pending_count(self) -> int:
        return len(self._pending)

    def has_pending_writes(self) -> bool:
        return bool(self._pending)

    def storage_info(self) -> StorageUsage:
        return self._storage.usage()

    # ---- lifecycle ----

    def attach_lifecycle(self, source: LifecycleSource) -> None:
        self._unsubscribe.append(source.subscribe(self._on_lifecycle))

    def _on_lifecycle(self, event: str) -> None:
        if event in (LifecycleEvent.SUSPEND, LifecycleEvent.HIDDEN):
            if self.has_pending_writes():
                self.flush()
        elif event == LifecycleEvent.UNLOAD:
            self.flush()

    def dispose(self) -> None:
        """Flush what is buffered, cancel the timer and drop lifecycle subscriptions."""
        if self._disposed:
            return
        self._disposed = True
        self.flush()
        self._cancel_timer()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    # ---- internals ----

    def _write(self, key: str, value: Any) -> None:
        self._storage.set_item(key, json.dumps(value, ensure_ascii=False))

    def _schedule(self) -> None:
        if self._timer is not None:
            return
        if self._disposed:
            self.flush()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop to time the batch window: write through.
            self.flush()
            return
        self._timer = loop.call_later(self._batch_delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _report(self, key: str, value: Any, error: Exception) -> None:
        logger.warning("Storage operation failed key=%s: %r", key, error)
        self.errors.emit(WriteFailure(key=key, value=value, error=error))
