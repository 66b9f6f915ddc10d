"""Progress store interface and in-memory backend."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Mapping, Protocol

from .merge import coerce_update, merge_snapshot
from .models import ProgressSnapshot, ProgressUpdate, utcnow

logger = logging.getLogger(__name__)


class ProgressStore(Protocol):
    """Keyed store of progress snapshots with merge-on-write updates."""

    async def create(
        self, job_id: str, snapshot: ProgressSnapshot | None = None, **fields: Any
    ) -> ProgressSnapshot:
        """Start (or restart) tracking ``job_id`` with a fresh snapshot."""

    async def update(
        self,
        job_id: str,
        update: ProgressUpdate | Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> ProgressSnapshot:
        """Merge a partial update atomically and return the stored snapshot."""

    async def read(self, job_id: str) -> ProgressSnapshot | None:
        """Return the current snapshot or ``None`` for an unknown job."""


def initial_snapshot(
    job_id: str, snapshot: ProgressSnapshot | None, fields: Mapping[str, Any]
) -> ProgressSnapshot:
    if snapshot is not None:
        return snapshot.model_copy(update={"job_id": job_id, **fields}, deep=True)
    return ProgressSnapshot(job_id=job_id, **fields)


class InMemoryProgressStore(ProgressStore):
    """Hold snapshots in a dict, serialising writers per job id."""

    def __init__(self) -> None:
        self._snapshots: Dict[str, ProgressSnapshot] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create(
        self, job_id: str, snapshot: ProgressSnapshot | None = None, **fields: Any
    ) -> ProgressSnapshot:
        created = initial_snapshot(job_id, snapshot, fields)
        async with self._locks[job_id]:
            self._snapshots[job_id] = created
        return created.model_copy(deep=True)

    async def update(
        self,
        job_id: str,
        update: ProgressUpdate | Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> ProgressSnapshot:
        partial = coerce_update(update, fields)
        async with self._locks[job_id]:
            existing = self._snapshots.get(job_id) or ProgressSnapshot(job_id=job_id)
            merged = merge_snapshot(existing, partial, updated_at=utcnow())
            if merged is existing:
                logger.debug(f"Ignoring update for finished job {job_id}")
            else:
                self._snapshots[job_id] = merged
        return merged.model_copy(deep=True)

    async def read(self, job_id: str) -> ProgressSnapshot | None:
        snapshot = self._snapshots.get(job_id)
        return snapshot.model_copy(deep=True) if snapshot else None
