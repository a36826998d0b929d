# src/taskkeep/sync/connectivity.py

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from ..core.signals import ConnectivitySignal

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL = 30.0


class Pingable(Protocol):
    async def ping(self) -> bool: ...


class HttpReachabilityProbe:
    """
    Periodically pings the backup endpoint and drives a ConnectivitySignal.

    The signal only emits on transitions, so steady state costs one request per
    interval and nothing else. Stop it with stop() or by cancelling the run() task.
    """

    def __init__(
        self,
        client: Pingable,
        connectivity: ConnectivitySignal,
        *,
        interval: float = DEFAULT_PROBE_INTERVAL,
    ) -> None:
        self._client = client
        self._connectivity = connectivity
        self._interval = max(0.1, float(interval))
        self._stop = asyncio.Event()

    async def probe_once(self) -> bool:
        try:
            online = await self._client.ping()
        except Exception:
            logger.debug("Reachability probe failed", exc_info=True)
            online = False
        self._connectivity.set_online(online)
        return online

    async def run(self) -> None:
        logger.info("Reachability probe started (interval=%.1fs)", self._interval)
        while not self._stop.is_set():
            await self.probe_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Reachability probe stopped")

    def stop(self) -> None:
        self._stop.set()
