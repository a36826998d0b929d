# src/taskkeep/core/signals.py

"""
In-process event sources that stand in for the host environment
(connectivity changes, app suspend/unload).

Listeners are plain callables invoked synchronously in subscription order.
A failing listener is logged and does not stop the others.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Signal(Generic[T]):
    def __init__(self) -> None:
        self._listeners: list[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Signal listener failed: %r", listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class ConnectivitySignal(Signal[bool]):
    """Online/offline state; emits only on actual transitions."""

    def __init__(self, online: bool = True) -> None:
        super().__init__()
        self._online = bool(online)

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        self.emit(online)


class LifecycleEvent(StrEnum):
    SUSPEND = "suspend"
    HIDDEN = "hidden"
    UNLOAD = "unload"


class LifecycleSignal(Signal[str]):
    def notify(self, event: LifecycleEvent) -> None:
        logger.debug("Lifecycle event: %s", event.value)
        self.emit(event.value)
