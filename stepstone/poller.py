"""Polling reader for job progress, as a UI would consume it."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

from .progress import ActivityLog, ActivityRecord, ProgressSnapshot, ProgressStore

logger = logging.getLogger(__name__)


@dataclass
class ProgressView:
    """One poll result: the snapshot plus the job's activities in order."""

    snapshot: Optional[ProgressSnapshot]
    activities: List[ActivityRecord] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.snapshot is not None and self.snapshot.is_terminal


class ProgressPoller:
    """Read a job's snapshot and activities on a fixed interval."""

    def __init__(
        self,
        store: ProgressStore,
        activity_log: ActivityLog | None = None,
        interval: float = 1.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.store = store
        self.activity_log = activity_log
        self.interval = interval

    async def read(self, job_id: str) -> ProgressView:
        snapshot = await self.store.read(job_id)
        activities = (
            await self.activity_log.list_activities(job_id)
            if self.activity_log is not None
            else []
        )
        return ProgressView(snapshot=snapshot, activities=activities)

    async def poll(self, job_id: str) -> AsyncIterator[ProgressView]:
        """Yield a view every ``interval`` seconds until the job is terminal.

        The terminal view is yielded before the iterator stops. An unknown job
        yields views with ``snapshot=None`` until it appears.
        """
        while True:
            view = await self.read(job_id)
            yield view
            if view.is_terminal:
                logger.debug(f"Job {job_id} reached {view.snapshot.status}")
                return
            await asyncio.sleep(self.interval)

    async def wait(self, job_id: str, timeout: float | None = None) -> ProgressView:
        """Poll until the job is terminal and return the final view."""

        async def _last() -> ProgressView:
            view = None
            async for view in self.poll(job_id):
                pass
            return view

        return await asyncio.wait_for(_last(), timeout=timeout)
