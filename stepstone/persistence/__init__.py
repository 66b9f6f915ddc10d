"""Persistence layer for stepstone runs and checkpoints."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepstoneConfig, load_config
from .inmemory import InMemoryRunRepository
from .models import TERMINAL_RUN_STATUSES, RunStatus, StepRecord, WorkflowRun
from .repository import RunRepository
from .sqlite import SQLiteRunRepository

_repository_instance: RunRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepstoneConfig] = None
) -> RunRepository:
    """Factory function to obtain a run repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``STEPSTONE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("STEPSTONE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryRunRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteRunRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresRunRepository

        _repository_instance = PostgresRunRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "RunStatus",
    "StepRecord",
    "TERMINAL_RUN_STATUSES",
    "WorkflowRun",
    "RunRepository",
    "InMemoryRunRepository",
    "SQLiteRunRepository",
    "get_repository",
]
