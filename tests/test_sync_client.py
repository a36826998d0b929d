# tests/test_sync_client.py

from __future__ import annotations

import json

import httpx
import pytest

from taskkeep.core.signals import ConnectivitySignal
from taskkeep.sync.client import HttpBackupClient, make_timeout
from taskkeep.sync.connectivity import HttpReachabilityProbe

from .fakes import FakeBackupServer


def test_empty_base_url_is_rejected() -> None:
    with pytest.raises(RuntimeError):
        HttpBackupClient("  ")


def test_connect_timeout_never_exceeds_total() -> None:
    t = make_timeout(2.0)
    assert t.connect == 2.0
    assert t.read == 2.0


@pytest.mark.asyncio
async def test_operations_map_to_routes() -> None:
    server = FakeBackupServer()
    async with server.client() as http:
        client = HttpBackupClient("https://backup.test/api/", client=http)

        await client.post_backup({"records": [], "timestamp": "t"})
        await client.push_operation("create", "a", {"id": "a", "text": "A"})
        await client.push_operation("update", "a", {"id": "a", "text": "B"})
        await client.push_operation("delete", "a", {})
        with pytest.raises(ValueError):
            await client.push_operation("archive", "a", {})

        await client.aclose()
        assert not http.is_closed

    assert server.calls == [
        ("POST", "/api/todos/backup"),
        ("POST", "/api/todos"),
        ("PUT", "/api/todos/a"),
        ("DELETE", "/api/todos/a"),
    ]
    assert json.loads(server.requests[2].content) == {"id": "a", "text": "B"}


@pytest.mark.asyncio
async def test_ping_and_probe_drive_connectivity() -> None:
    server = FakeBackupServer([httpx.ConnectError("down"), 503])
    connectivity = ConnectivitySignal(online=True)
    changes: list[bool] = []
    connectivity.subscribe(changes.append)

    async with server.client() as http:
        probe = HttpReachabilityProbe(HttpBackupClient("https://backup.test", client=http), connectivity)

        assert await probe.probe_once() is False
        assert connectivity.is_online() is False

        # Any HTTP answer (even 503) means the host is reachable.
        assert await probe.probe_once() is True

    assert changes == [False, True]
    assert [r.method for r in server.requests] == ["HEAD", "HEAD"]
