# src/taskkeep/sync/client.py

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


def make_timeout(total_s: float, connect_s: float = 5.0) -> httpx.Timeout:
    connect_s = min(connect_s, total_s)
    return httpx.Timeout(total_s, connect=connect_s)


class HttpBackupClient:
    """
    httpx-based client for the remote backup endpoint.

    Routes (relative to base_url):
    - POST   todos/backup     full snapshot {records, timestamp}
    - POST   todos            queued create
    - PUT    todos/{id}       queued update
    - DELETE todos/{id}       queued delete

    Responses are returned as-is; only transport failures raise (httpx.TransportError).
    Automatic retries are left to the Sync Coordinator.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        base = (base_url or "").strip()
        if not base:
            raise RuntimeError("Backup URL is not set. Set TASKKEEP_SYNC_URL in your .env.")
        self._base_url = base.rstrip("/") + "/"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=make_timeout(timeout_s))

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        return self._base_url + path.lstrip("/")

    async def post_backup(self, body: dict[str, Any]) -> httpx.Response:
        return await self._client.post(self._url("todos/backup"), json=body)

    async def push_operation(self, action: str, record_id: str, data: dict[str, Any]) -> httpx.Response:
        if action == "create":
            return await self._client.post(self._url("todos"), json=data)
        if action == "update":
            return await self._client.put(self._url(f"todos/{record_id}"), json=data)
        if action == "delete":
            return await self._client.delete(self._url(f"todos/{record_id}"))
        raise ValueError(f"Unknown sync action: {action}")

    async def ping(self) -> bool:
        """Cheap reachability check: any HTTP answer counts as reachable."""
        try:
            await self._client.head(self._base_url)
            return True
        except httpx.TransportError:
            return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
