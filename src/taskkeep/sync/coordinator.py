# src/taskkeep/sync/coordinator.py

"""
Sync coordinator.

Pushes the record set to the remote backup with retry/backoff and keeps an offline
queue. State machine:

    IDLE -> SYNCING -> success ............................. -> IDLE
                    -> transient failure -> WAITING -> SYNCING (until retries run out)
                    -> exhausted / rejected / cancelled ..... -> IDLE

Failure policy per attempt:
- transport error or 5xx  -> retry after base_delay * 2**(attempt-1)
- 429                     -> retry after Retry-After (seconds or HTTP-date) if given
- any other non-2xx       -> fail at once, non-retryable
- cancel event set        -> fail at once with "Sync cancelled", non-retryable

Before a retryable NetworkError leaves this module the records are written to the
durable pending-sync slot. If that write fails even after quota cleanup, a
StorageError is raised instead. The coordinator owns that slot; the task envelope is
only read (records are passed in by the caller).

Every offline sync_now also keeps its snapshot in memory; a successful backup
supersedes all of them.
"""

from __future__ import annotations

import asyncio
import email.utils
import logging
import math
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

import httpx

from ..core.errors import NetworkError, QuotaExceededError, StorageError
from ..core.models import SyncAction, SyncOperation, Task, format_timestamp, utc_now
from ..core.ports import BackupClient, ConnectivitySource
from ..core.signals import Signal
from ..storage.batch_writer import BatchWriter
from ..storage.quota import QuotaManager
from ..storage.record_store import DEFAULT_PENDING_SYNC_KEY

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0

Sleep = Callable[[float], Awaitable[Any]]


class SyncState(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    WAITING = "waiting"


@dataclass(frozen=True, slots=True)
class SyncStatus:
    state: SyncState
    online: bool
    pending_count: int
    last_success: str | None


def parse_retry_after(raw: str | None, now: datetime) -> float | None:
    """Retry-After as seconds; accepts delta-seconds or an HTTP-date."""
    if raw is None:
        return None
    s = raw.strip()
    if not s:
        return None
    try:
        seconds = float(s)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else None

    try:
        when = email.utils.parsedate_to_datetime(s)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _serialize(records: Iterable[Task | dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for r in records:
        out.append(r.to_dict() if isinstance(r, Task) else dict(r))
    return out


def _cancelled() -> NetworkError:
    return NetworkError("Sync cancelled", retryable=False)


class SyncCoordinator:
    def __init__(
        self,
        writer: BatchWriter,
        client: BackupClient | None,
        connectivity: ConnectivitySource,
        *,
        pending_sync_key: str = DEFAULT_PENDING_SYNC_KEY,
        quota: QuotaManager | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._writer = writer
        self._client = client
        self._pending_key = pending_sync_key
        self._quota = quota
        self._max_retries = max(1, int(max_retries))
        self._base_delay = max(0.0, float(base_delay))
        self._clock = clock
        self._sleep = sleep

        self._online = connectivity.is_online()
        self._queue: list[SyncOperation] = []
        # Record snapshots handed to sync_now while offline, oldest first.
        self._deferred: list[list[dict[str, Any]]] = []
        self._state = SyncState.IDLE
        self._is_syncing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._last_success: str | None = None

        self.status: Signal[SyncStatus] = Signal()
        self.synced: Signal[str] = Signal()
        self._unsubscribe: Callable[[], None] | None = connectivity.subscribe(self._on_connectivity)

    # ---- public API ----

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing or not self._idle.is_set()

    def is_network_online(self) -> bool:
        return self._online and self._client is not None

    def pending_sync_count(self) -> int:
        return len(self._queue) + len(self._deferred) + (1 if self._load_pending() is not None else 0)

    def queued_operations(self) -> list[SyncOperation]:
        return list(self._queue)

    async def sync_now(
        self,
        records: Iterable[Task | dict[str, Any]],
        *,
        max_retries: int | None = None,
        base_delay: float | None = None,
        cancel: asyncio.Event | None = None,
        on_retry: Callable[[int], None] | None = None,
    ) -> None:
        payload = _serialize(records)

        if not self.is_network_online():
            self._deferred.append(payload)
            try:
                await self._save_pending(payload)
            finally:
                self._notify()
            raise NetworkError("Offline. Changes will sync when connection is restored.", retryable=True)

        retries = self._max_retries if max_retries is None else max(1, int(max_retries))
        delay = self._base_delay if base_delay is None else max(0.0, float(base_delay))
        await self._exclusive(lambda: self._perform_sync(payload, retries, delay, cancel, on_retry))

    async def retry_pending_sync(self) -> None:
        """Manual trigger: push the pending slot once, then drain queued operations."""
        if not self.is_network_online():
            raise NetworkError("Cannot sync while offline", retryable=False)

        pending = self._next_snapshot()
        if pending is not None:
            await self._exclusive(lambda: self._perform_sync(pending, 1, self._base_delay, None, None))
        if self._queue:
            await self.drain()

    def queue_operation(
        self,
        record_id: str,
        action: SyncAction | str,
        data: dict[str, Any] | None = None,
    ) -> SyncOperation:
        """
        Defer a per-record operation. An earlier entry with the same (id, action)
        is replaced and the new one goes to the back of the queue.
        """
        op = SyncOperation(id=record_id, action=SyncAction(action), data=dict(data or {}))
        self._queue = [o for o in self._queue if o.key != op.key]
        self._queue.append(op)
        logger.debug("Queued %s for %s (%d queued)", op.action.value, op.id, len(self._queue))
        self._notify()

        if self.is_network_online() and not self.is_syncing:
            self._spawn(self.drain())
        return op

    def clear_queue(self) -> None:
        self._queue.clear()
        self._deferred.clear()
        self._writer.remove(self._pending_key)
        self._notify()
        logger.info("Sync queue cleared")

    async def drain(self) -> None:
        """Flush the pending slot, then queued operations grouped by action (FIFO)."""
        if self._is_syncing or not self.is_network_online():
            return
        self._is_syncing = True
        try:
            await self._exclusive(self._drain_locked)
        finally:
            self._is_syncing = False
            self._notify()

    async def join(self) -> None:
        """Wait for background drains started by connectivity changes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def aclose(self) -> None:
        self.dispose()
        if self._client is not None:
            await self._client.aclose()

    # ---- connectivity ----

    def _on_connectivity(self, online: bool) -> None:
        was_online = self._online
        self._online = bool(online)
        self._notify()
        if self._online and not was_online:
            logger.info("Back online: draining pending sync (%d)", self.pending_sync_count())
            self._spawn(self.drain())

    def _spawn(self, coro: Awaitable[Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; background drain skipped")
            close = getattr(coro, "close", None)
            if callable(close):
                close()
            return
        task = loop.create_task(coro)  # type: ignore[arg-type]
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background sync failed: %r", exc)

    # ---- core loop ----

    async def _exclusive(self, factory: Callable[[], Awaitable[None]]) -> None:
        # One network sync in flight at a time; later callers wait their turn.
        while not self._idle.is_set():
            await self._idle.wait()
        self._idle.clear()
        try:
            await factory()
        finally:
            self._idle.set()

    async def _perform_sync(
        self,
        payload: list[dict[str, Any]],
        max_retries: int,
        base_delay: float,
        cancel: asyncio.Event | None,
        on_retry: Callable[[int], None] | None,
    ) -> None:
        assert self._client is not None
        body = {"records": payload, "timestamp": format_timestamp(self._clock())}
        last_error: NetworkError | None = None

        try:
            for attempt in range(1, max_retries + 1):
                self._check_cancel(cancel)
                self._set_state(SyncState.SYNCING)
                delay = base_delay * (2 ** (attempt - 1))

                try:
                    response = await self._with_cancel(self._client.post_backup(body), cancel)
                except httpx.TransportError as e:
                    last_error = NetworkError(f"Network error: {e}", retryable=True)
                else:
                    code = response.status_code
                    if 200 <= code < 300:
                        await self._on_success()
                        return
                    if code == 429:
                        retry_after = parse_retry_after(response.headers.get("Retry-After"), self._clock())
                        if retry_after is not None:
                            delay = retry_after
                        last_error = NetworkError("Too many requests", retryable=True, status_code=code)
                    elif code >= 500:
                        last_error = NetworkError(f"Server error: {code}", retryable=True, status_code=code)
                    else:
                        logger.warning("Backup rejected with HTTP %s; not retrying", code)
                        raise NetworkError(
                            f"Sync failed: {code} {response.reason_phrase}".strip(),
                            retryable=False,
                            status_code=code,
                        )

                logger.info("Sync attempt %d/%d failed: %s", attempt, max_retries, last_error)
                if attempt < max_retries:
                    if on_retry is not None:
                        on_retry(attempt)
                    self._set_state(SyncState.WAITING)
                    await self._wait(delay, cancel)

            await self._save_pending(payload)
            message = last_error.message if last_error else "Unable to sync. Changes saved locally."
            raise NetworkError(
                message,
                retryable=True,
                status_code=last_error.status_code if last_error else None,
            )
        finally:
            self._set_state(SyncState.IDLE)

    async def _drain_locked(self) -> None:
        pending = self._next_snapshot()
        if pending is not None:
            try:
                await self._perform_sync(pending, self._max_retries, self._base_delay, None, None)
            except (NetworkError, StorageError) as e:
                logger.warning("Pending backup sync failed: %s", e)
                if not self.is_network_online():
                    return

        if not self._queue or self._client is None:
            return

        batch, self._queue = self._queue, []
        groups: dict[SyncAction, list[SyncOperation]] = {}
        for op in batch:
            groups.setdefault(op.action, []).append(op)

        unsent: list[SyncOperation] = []
        for action, ops in groups.items():
            if unsent or not self.is_network_online():
                unsent.extend(ops)
                continue
            unsent.extend(await self._push_group(action, ops))

        if unsent:
            logger.info("Re-queued %d sync operation(s)", len(unsent))
            self._queue = unsent + self._queue
        else:
            logger.info("Synced %d queued operation(s)", len(batch))

    async def _push_group(self, action: SyncAction, ops: list[SyncOperation]) -> list[SyncOperation]:
        """Push ops one by one; returns the ones not sent because of a transient failure."""
        assert self._client is not None
        for i, op in enumerate(ops):
            if not self.is_network_online():
                return ops[i:]
            try:
                response = await self._client.push_operation(action.value, op.id, op.data)
            except httpx.TransportError as e:
                logger.warning("Failed to %s %s: %r", action.value, op.id, e)
                return ops[i:]

            code = response.status_code
            if code == 429 or code >= 500:
                logger.warning("Failed to %s %s: HTTP %s", action.value, op.id, code)
                return ops[i:]
            if not 200 <= code < 300:
                logger.error("Server rejected %s %s with HTTP %s; dropping", action.value, op.id, code)
        return []

    # ---- helpers ----

    async def _on_success(self) -> None:
        # A backup replaces the whole remote set, so older snapshots are superseded.
        self._deferred.clear()
        self._writer.remove(self._pending_key)
        stamp = format_timestamp(self._clock())
        self._last_success = stamp
        logger.info("Backup sync succeeded at %s", stamp)
        self.synced.emit(stamp)
        self._notify()

    async def _with_cancel(self, request: Awaitable[httpx.Response], cancel: asyncio.Event | None) -> httpx.Response:
        if cancel is None:
            return await request

        req_task = asyncio.ensure_future(request)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({req_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not req_task.done():
                req_task.cancel()
        if req_task in done:
            return req_task.result()
        await asyncio.gather(req_task, return_exceptions=True)
        raise _cancelled()

    async def _wait(self, delay: float, cancel: asyncio.Event | None) -> None:
        if cancel is None:
            await self._sleep(delay)
            return

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (sleeper, waiter):
                if not t.done():
                    t.cancel()
        self._check_cancel(cancel)

    @staticmethod
    def _check_cancel(cancel: asyncio.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise _cancelled()

    async def _save_pending(self, payload: list[dict[str, Any]]) -> None:
        """
        Write the durable pending-sync slot, or raise StorageError.

        Quota failures get the same cleanup-then-retry treatment as the records key.
        """
        self._writer.set(self._pending_key, payload)
        failures = await self._writer.force_flush()
        error = failures.get(self._pending_key)
        if error is None:
            logger.info("Saved %d record(s) for later sync", len(payload))
            return

        if isinstance(error, QuotaExceededError) and self._quota is not None:
            try:
                self._quota.recover(self._pending_key, payload)
            except StorageError as e:
                logger.error("Could not persist pending sync data: %s", e.message)
                raise
            logger.info("Saved %d record(s) for later sync after quota cleanup", len(payload))
            return

        logger.error("Could not persist pending sync data: %r", error)
        raise StorageError(
            f"Failed to save changes for later sync: {error}", recoverable=isinstance(error, QuotaExceededError)
        ) from error

    def _next_snapshot(self) -> list[dict[str, Any]] | None:
        """The durable slot, or the newest offline snapshot if the slot could not be written."""
        pending = self._load_pending()
        if pending is None and self._deferred:
            return self._deferred[-1]
        return pending

    def _load_pending(self) -> list[dict[str, Any]] | None:
        value = self._writer.get(self._pending_key)
        if value is None:
            return None
        if not isinstance(value, list):
            logger.warning("Pending sync slot has unexpected shape (%s); ignoring", type(value).__name__)
            return None
        return value

    def _set_state(self, state: SyncState) -> None:
        if state != self._state:
            self._state = state
            self._notify()

    def _notify(self) -> None:
        if not self.status.listener_count:
            return
        self.status.emit(
            SyncStatus(
                state=self._state,
                online=self.is_network_online(),
                pending_count=self.pending_sync_count(),
                last_success=self._last_success,
            )
        )
