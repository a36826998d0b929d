# src/taskkeep/core/ports.py

"""
Ports (interfaces) used by the core.

The storage and sync layers depend on Protocols instead of concrete implementations.
This keeps the key-value backend, the connectivity source and the backup transport
swappable, and lets tests inject fakes.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

import httpx

from .models import StorageUsage

Unsubscribe = Callable[[], None]


class KeyValueStorage(Protocol):
    """
    String key -> string value store (localStorage-like).

    set_item raises QuotaExceededError when the value does not fit.
    """

    persistent: bool

    def get_item(self, key: str) -> str | None: ...
    def set_item(self, key: str, value: str) -> None: ...
    def remove_item(self, key: str) -> None: ...
    def keys(self) -> list[str]: ...
    def usage(self) -> StorageUsage: ...


class ConnectivitySource(Protocol):
    def is_online(self) -> bool: ...
    def subscribe(self, listener: Callable[[bool], None]) -> Unsubscribe: ...


class LifecycleSource(Protocol):
    """Application lifecycle events: 'suspend', 'hidden', 'unload'."""

    def subscribe(self, listener: Callable[[str], None]) -> Unsubscribe: ...


class BackupClient(Protocol):
    """
    Remote backup endpoint.

    Methods return the raw httpx.Response; status interpretation (retry, rate limit,
    permanent rejection) belongs to the Sync Coordinator. Transport failures raise
    httpx.TransportError.
    """

    async def post_backup(self, body: dict[str, Any]) -> httpx.Response: ...

    async def push_operation(
        self, action: str, record_id: str, data: dict[str, Any]
    ) -> httpx.Response: ...

    async def aclose(self) -> None: ...
