"""Progress snapshots and activity logs for externally visible jobs."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepstoneConfig, load_config
from .activity import ActivityLog, InMemoryActivityLog
from .merge import merge_snapshot, merge_sources
from .models import (
    TERMINAL_PROGRESS_STATUSES,
    ActivityKind,
    ActivityRecord,
    ActivityStatus,
    ActivityUpdate,
    ProgressSnapshot,
    ProgressStatus,
    ProgressUpdate,
    Source,
)
from .reporter import ProgressReporter
from .sqlite import SQLiteActivityLog, SQLiteProgressStore
from .store import InMemoryProgressStore, ProgressStore

_store_instance: ProgressStore | None = None
_activity_instance: ActivityLog | None = None


def _backend(backend: Optional[str], config: StepstoneConfig) -> str:
    return (
        backend or os.getenv("STEPSTONE_PROGRESS_BACKEND") or config.progress.backend
    ).lower()


def get_progress_store(
    backend: Optional[str] = None, config: Optional[StepstoneConfig] = None
) -> ProgressStore:
    """Factory function to get the configured progress store."""

    global _store_instance
    if _store_instance is not None and backend is None and config is None:
        return _store_instance

    config = config or load_config()
    backend = _backend(backend, config)
    if backend == "inmemory":
        _store_instance = InMemoryProgressStore()
    elif backend == "sqlite":
        _store_instance = SQLiteProgressStore(config.progress.sqlite_path)
    elif backend == "redis":
        from .redis import RedisProgressStore

        redis_conf = config.progress.redis
        _store_instance = RedisProgressStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            prefix=redis_conf.prefix,
        )
    else:
        raise ValueError(f"Unsupported progress backend: {backend}")
    return _store_instance


def get_activity_log(
    backend: Optional[str] = None, config: Optional[StepstoneConfig] = None
) -> ActivityLog:
    """Factory function to get the configured activity log."""

    global _activity_instance
    if _activity_instance is not None and backend is None and config is None:
        return _activity_instance

    config = config or load_config()
    backend = _backend(backend, config)
    if backend == "inmemory":
        _activity_instance = InMemoryActivityLog()
    elif backend == "sqlite":
        _activity_instance = SQLiteActivityLog(config.progress.sqlite_path)
    elif backend == "redis":
        from .redis import RedisActivityLog

        redis_conf = config.progress.redis
        _activity_instance = RedisActivityLog(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            prefix=redis_conf.prefix,
        )
    else:
        raise ValueError(f"Unsupported progress backend: {backend}")
    return _activity_instance


__all__ = [
    "TERMINAL_PROGRESS_STATUSES",
    "ActivityKind",
    "ActivityLog",
    "ActivityRecord",
    "ActivityStatus",
    "ActivityUpdate",
    "InMemoryActivityLog",
    "InMemoryProgressStore",
    "ProgressReporter",
    "ProgressSnapshot",
    "ProgressStatus",
    "ProgressStore",
    "ProgressUpdate",
    "SQLiteActivityLog",
    "SQLiteProgressStore",
    "Source",
    "get_activity_log",
    "get_progress_store",
    "merge_snapshot",
    "merge_sources",
]
