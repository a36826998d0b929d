# src/taskkeep/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- Nothing is required at import time: every key has a default.
- Invalid numeric values fall back to the default instead of failing startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TASKKEEP"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    storage_path: Path
    volatile_storage: bool
    storage_quota_bytes: int

    # ---- Batch writer ----
    batch_delay_ms: int
    max_batch_size: int
    durable_threshold: int

    # ---- Quota cleanup ----
    retention_days: int
    quota_max_attempts: int

    # ---- Remote backup ----
    sync_url: str
    sync_max_retries: int
    sync_base_delay_ms: int
    sync_timeout_seconds: float
    probe_interval_seconds: float

    @staticmethod
    def from_env() -> "Settings":
        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskkeep"))

        return Settings(
            app_name=_env(_k("APP_NAME"), "taskkeep").strip() or "taskkeep",
            log_level=_env(_k("LOG_LEVEL"), "INFO"),
            data_dir=data_dir,
            storage_path=_env_path(_k("STORAGE_PATH"), data_dir / "storage.sqlite3"),
            volatile_storage=_env_bool(_k("VOLATILE_STORAGE"), False),
            storage_quota_bytes=_env_int(_k("STORAGE_QUOTA_BYTES"), 5 * 1024 * 1024, minimum=1),
            batch_delay_ms=_env_int(_k("BATCH_DELAY_MS"), 100, minimum=0),
            max_batch_size=_env_int(_k("MAX_BATCH_SIZE"), 10, minimum=1),
            durable_threshold=_env_int(_k("DURABLE_THRESHOLD"), 100, minimum=1),
            retention_days=_env_int(_k("RETENTION_DAYS"), 30, minimum=0),
            quota_max_attempts=_env_int(_k("QUOTA_MAX_ATTEMPTS"), 3, minimum=1),
            sync_url=_env(_k("SYNC_URL"), "").strip(),
            sync_max_retries=_env_int(_k("SYNC_MAX_RETRIES"), 3, minimum=1),
            sync_base_delay_ms=_env_int(_k("SYNC_BASE_DELAY_MS"), 1000, minimum=0),
            sync_timeout_seconds=_env_float(_k("SYNC_TIMEOUT_SECONDS"), 10.0, minimum=0.1),
            probe_interval_seconds=_env_float(_k("PROBE_INTERVAL_SECONDS"), 30.0, minimum=0.1),
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    """Load .env (if present) and build Settings once per process."""
    global _SETTINGS
    if _SETTINGS is None:
        load_dotenv(override=False)
        _SETTINGS = Settings.from_env()
    return _SETTINGS
