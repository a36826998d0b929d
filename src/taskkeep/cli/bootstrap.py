# src/taskkeep/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- selects the storage backend and wires writer, store and sync coordinator into AppContext,
- connects the coordinator's success signal to the store's lastSyncTimestamp.
"""

from __future__ import annotations

import logging

import httpx

from ..config import get_settings
from ..core.ports import KeyValueStorage
from ..core.signals import ConnectivitySignal, LifecycleSignal
from ..core.state import AppContext, Environment
from ..storage.backends import open_storage
from ..storage.batch_writer import BatchWriter
from ..storage.quota import QuotaManager
from ..storage.record_store import DEFAULT_PENDING_SYNC_KEY, DEFAULT_RECORDS_KEY, RecordStore
from ..sync.client import HttpBackupClient
from ..sync.connectivity import HttpReachabilityProbe
from ..sync.coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.storage_path.parent.mkdir(parents=True, exist_ok=True)


def create_app(
    *,
    settings=None,
    storage: KeyValueStorage | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AppContext:
    """
    Build an AppContext from the provided settings.

    storage and http_client are injectable for tests; by default the backend is chosen
    by open_storage() and HttpBackupClient owns its own httpx client.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    if storage is None:
        if not settings.volatile_storage:
            _ensure_local_dirs(settings)
        storage = open_storage(
            settings.storage_path,
            quota_bytes=settings.storage_quota_bytes,
            volatile=settings.volatile_storage,
        )

    client: HttpBackupClient | None = None
    if settings.sync_url:
        client = HttpBackupClient(
            settings.sync_url,
            timeout_s=settings.sync_timeout_seconds,
            client=http_client,
        )

    # Without a backup endpoint the coordinator behaves as permanently offline.
    env = Environment(
        storage=storage,
        connectivity=ConnectivitySignal(online=client is not None),
        lifecycle=LifecycleSignal(),
    )

    writer = BatchWriter(
        storage,
        batch_delay=settings.batch_delay_ms / 1000.0,
        max_batch_size=settings.max_batch_size,
    )
    writer.attach_lifecycle(env.lifecycle)

    quota = QuotaManager(
        writer,
        records_key=DEFAULT_RECORDS_KEY,
        pending_sync_key=DEFAULT_PENDING_SYNC_KEY,
        retention_days=settings.retention_days,
        max_attempts=settings.quota_max_attempts,
    )
    store = RecordStore(writer, quota=quota, durable_threshold=settings.durable_threshold)

    sync = SyncCoordinator(
        writer,
        client,
        env.connectivity,
        quota=quota,
        max_retries=settings.sync_max_retries,
        base_delay=settings.sync_base_delay_ms / 1000.0,
    )

    ctx = AppContext(settings=settings, env=env, writer=writer, store=store, sync=sync)
    ctx.unsubscribe.append(sync.synced.subscribe(store.mark_synced))

    if client is not None:
        ctx.probe = HttpReachabilityProbe(
            client, env.connectivity, interval=settings.probe_interval_seconds
        )

    logger.info(
        "App ready: storage=%s sync=%s",
        "persistent" if storage.persistent else "volatile",
        client.base_url if client is not None else "disabled",
    )
    return ctx
