# src/taskkeep/core/state.py

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any

from ..storage.batch_writer import BatchWriter
from ..storage.record_store import RecordStore
from ..sync.connectivity import HttpReachabilityProbe
from ..sync.coordinator import SyncCoordinator
from .ports import KeyValueStorage
from .signals import ConnectivitySignal, LifecycleEvent, LifecycleSignal

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Environment:
    """Host capabilities injected into the core (instead of ambient globals)."""

    storage: KeyValueStorage
    connectivity: ConnectivitySignal = field(default_factory=ConnectivitySignal)
    lifecycle: LifecycleSignal = field(default_factory=LifecycleSignal)


@dataclass
class AppContext:
    # Store Settings on the context for easy access from commands.
    settings: Any

    env: Environment
    writer: BatchWriter
    store: RecordStore
    sync: SyncCoordinator

    probe: HttpReachabilityProbe | None = None
    probe_task: asyncio.Task[None] | None = None
    unsubscribe: list[Any] = field(default_factory=list)

    @property
    def sync_enabled(self) -> bool:
        return bool(getattr(self.settings, "sync_url", ""))

    def start_probe(self) -> None:
        if self.probe is None or self.probe_task is not None:
            return
        self.probe_task = asyncio.get_running_loop().create_task(self.probe.run())

    async def dispose(self) -> None:
        """Flush everything and release resources. Safe to call twice."""
        if self.probe is not None:
            self.probe.stop()
        if self.probe_task is not None:
            self.probe_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.probe_task
            self.probe_task = None

        for unsubscribe in self.unsubscribe:
            unsubscribe()
        self.unsubscribe.clear()

        self.env.lifecycle.notify(LifecycleEvent.UNLOAD)
        try:
            await self.store.flush()
        except Exception:
            logger.exception("Final flush failed")

        self.store.dispose()
        self.writer.dispose()
        await self.sync.aclose()
        logger.debug("AppContext disposed")
