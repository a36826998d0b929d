# src/taskkeep/storage/quota.py

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..core.errors import QuotaExceededError, StorageError
from ..core.models import parse_timestamp, utc_now
from .batch_writer import BatchWriter

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_KEEP_KEYS = ("theme", "preferences")


@dataclass(frozen=True, slots=True)
class QuotaOutcome:
    value: Any
    attempts: int
    trimmed_records: int = 0
    removed_keys: list[str] = field(default_factory=list)


class QuotaManager:
    """
    Cleanup-then-retry policy for quota-exceeded saves.

    The failed save counts as attempt 1. Before each further attempt (up to
    max_attempts in total):
    1. drop completed records created before the retention cutoff (records key only);
    2. if there were none, remove every key outside the allow-list
       (records key, pending-sync key, keep_keys).
    When nothing is left to clean, or attempts run out, a recoverable StorageError
    is raised. The previously stored value stays in place.
    """

    def __init__(
        self,
        writer: BatchWriter,
        *,
        records_key: str,
        pending_sync_key: str,
        keep_keys: Iterable[str] = DEFAULT_KEEP_KEYS,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._writer = writer
        self._records_key = records_key
        self._pending_sync_key = pending_sync_key
        self._keep = {records_key, pending_sync_key, *keep_keys}
        self._retention = timedelta(days=float(retention_days))
        self._max_attempts = max(1, int(max_attempts))
        self._clock = clock

    def recover(self, key: str, value: Any) -> QuotaOutcome:
        attempts = 1
        trimmed = 0
        removed: list[str] = []

        while attempts < self._max_attempts:
            n = 0
            if key == self._records_key:
                value, n = self.trim_old_completed(value)

            if n:
                trimmed += n
                logger.info("Quota cleanup: removed %d old completed todo(s)", n)
            else:
                purged = self.purge_auxiliary_keys()
                if not purged:
                    logger.warning("Quota cleanup: nothing left to remove for key=%s", key)
                    break
                removed.extend(purged)
                logger.info("Quota cleanup: removed %d auxiliary key(s): %s", len(purged), purged)

            attempts += 1
            try:
                self._writer.write_now(key, value)
            except QuotaExceededError:
                logger.warning("Save of %s still over quota after cleanup (attempt %d)", key, attempts)
                continue

            logger.info("Save of %s succeeded after quota cleanup (attempt %d)", key, attempts)
            return QuotaOutcome(value=value, attempts=attempts, trimmed_records=trimmed, removed_keys=removed)

        if trimmed:
            message = "Storage quota exceeded. Some old completed tasks have been removed."
        else:
            message = "Storage quota exceeded. Your latest changes are kept in memory only."
        raise StorageError(message, recoverable=True)

    def trim_old_completed(self, value: Any) -> tuple[Any, int]:
        """Return (envelope without expired completed records, number removed)."""
        if not isinstance(value, dict) or not isinstance(value.get("records"), list):
            return value, 0

        cutoff = self._clock() - self._retention
        kept: list[Any] = []
        for rec in value["records"]:
            if isinstance(rec, dict) and rec.get("completed") is True:
                created = parse_timestamp(rec.get("createdAt"))
                if created is not None and created < cutoff:
                    continue
            kept.append(rec)

        removed = len(value["records"]) - len(kept)
        if not removed:
            return value, 0
        return {**value, "records": kept}, removed

    def purge_auxiliary_keys(self) -> list[str]:
        storage = self._writer.storage
        purged: list[str] = []
        for k in storage.keys():
            if k in self._keep:
                continue
            self._writer.remove(k)
            purged.append(k)
        return purged
