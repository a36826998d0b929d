# src/taskkeep/storage/backends.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from pathlib import Path

from ..core.errors import QuotaExceededError, StorageError
from ..core.models import StorageUsage
from ..core.ports import KeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024
_PROBE_KEY = "__taskkeep_probe__"


def _entry_size(key: str, value: str) -> int:
    return len(key) + len(value)


class MemoryStorage:
    """
    Volatile key-value store.

    Used for tests and as the fallback when the persistent backend is unavailable.
    quota_bytes mimics a size-constrained client store (None = unlimited).
    """

    persistent = False

    def __init__(self, quota_bytes: int | None = None) -> None:
        self._data: dict[str, str] = {}
        self._quota = quota_bytes

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self._quota is not None:
            used = sum(_entry_size(k, v) for k, v in self._data.items() if k != key)
            if used + _entry_size(key, value) > self._quota:
                raise QuotaExceededError(f"Storage quota exceeded writing {key!r}")
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def usage(self) -> StorageUsage:
        used = sum(_entry_size(k, v) for k, v in self._data.items())
        return StorageUsage(used=used, quota=self._quota)


class SQLiteStorage:
    """
    SQLite-backed key-value store.

    Schema: a single `kv` table (key TEXT PRIMARY KEY, value TEXT, updated_at REAL).
    The quota is enforced on the sum of key+value lengths, like a browser store.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    persistent = True

    def __init__(self, db_path: str | Path, quota_bytes: int | None = DEFAULT_QUOTA_BYTES) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._quota = quota_bytes
        self._ensure_schema()
        logger.info("SQLiteStorage ready db=%s quota=%s", self._db_path, quota_bytes)

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(Exception):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    # ---- KeyValueStorage ----

    def get_item(self, key: str) -> str | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            return None if row is None else str(row[0])
        finally:
            conn.close()

    def set_item(self, key: str, value: str) -> None:
        conn = self._get_conn()
        try:
            if self._quota is not None:
                (used,) = conn.execute(
                    "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM kv WHERE key != ?",
                    (key,),
                ).fetchone()
                if int(used) + _entry_size(key, value) > self._quota:
                    raise QuotaExceededError(f"Storage quota exceeded writing {key!r}")
            conn.execute(
                """
                INSERT INTO kv(key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, time.time()),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write {key!r}: {e}") from e
        finally:
            conn.close()

    def remove_item(self, key: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def keys(self) -> list[str]:
        conn = self._get_conn()
        try:
            return [str(r[0]) for r in conn.execute("SELECT key FROM kv ORDER BY key").fetchall()]
        finally:
            conn.close()

    def usage(self) -> StorageUsage:
        conn = self._get_conn()
        try:
            (used,) = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM kv"
            ).fetchone()
            return StorageUsage(used=int(used), quota=self._quota)
        finally:
            conn.close()


def is_available(storage: KeyValueStorage) -> bool:
    """Round-trip a probe key to check the backend actually accepts writes."""
    try:
        storage.set_item(_PROBE_KEY, "test")
        storage.remove_item(_PROBE_KEY)
        return True
    except Exception:
        logger.debug("Storage probe failed", exc_info=True)
        return False


def open_storage(
    db_path: str | Path | None,
    *,
    quota_bytes: int | None = DEFAULT_QUOTA_BYTES,
    volatile: bool = False,
) -> KeyValueStorage:
    """
    Select the storage backend once, at construction time.

    Persistent SQLite is preferred; if it cannot be opened or does not accept writes,
    fall back to the volatile in-memory backend (data lives for this process only).
    """
    if volatile or db_path is None:
        logger.info("Using volatile in-memory storage")
        return MemoryStorage(quota_bytes)

    try:
        storage: KeyValueStorage = SQLiteStorage(db_path, quota_bytes)
    except Exception:
        logger.warning("Persistent storage unavailable at %s; using in-memory storage", db_path, exc_info=True)
        return MemoryStorage(quota_bytes)

    if not is_available(storage):
        logger.warning("Persistent storage at %s rejected a probe write; using in-memory storage", db_path)
        return MemoryStorage(quota_bytes)
    return storage
