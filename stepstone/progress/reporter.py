"""Job-bound helper used by step bodies to report progress."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .activity import ActivityLog
from .models import (
    ActivityKind,
    ActivityRecord,
    ActivityStatus,
    ProgressSnapshot,
)
from .store import ProgressStore


class ProgressReporter:
    """Bundle a job id with its progress store and activity log.

    Snapshot writes go through the store's merge so any number of concurrent
    workers may call :meth:`update`. Activities are rows owned by whoever
    created them; keep the returned id and update only your own rows.
    """

    def __init__(
        self, job_id: str, store: ProgressStore, activity_log: ActivityLog | None = None
    ) -> None:
        self.job_id = job_id
        self.store = store
        self.activity_log = activity_log

    async def update(self, **fields: Any) -> ProgressSnapshot:
        return await self.store.update(self.job_id, **fields)

    async def snapshot(self) -> ProgressSnapshot | None:
        return await self.store.read(self.job_id)

    async def add_activity(
        self,
        kind: ActivityKind,
        label: str,
        status: ActivityStatus = "in_progress",
        favicon: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        if self.activity_log is None:
            raise RuntimeError("No activity log configured for this job")
        return await self.activity_log.create_activity(
            self.job_id, kind, status, label, favicon=favicon, metadata=metadata
        )

    async def update_activity(self, activity_id: str, **fields: Any) -> ActivityRecord:
        if self.activity_log is None:
            raise RuntimeError("No activity log configured for this job")
        return await self.activity_log.update_activity(activity_id, **fields)

    async def activities(self) -> list[ActivityRecord]:
        if self.activity_log is None:
            return []
        return await self.activity_log.list_activities(self.job_id)
