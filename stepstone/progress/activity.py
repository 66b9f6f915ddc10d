"""Activity log interface and in-memory backend.

Each worker creates its own rows and is the only writer of them, so concurrent
workers never contend on a shared record. Observers rebuild the full list for
a job on every read.
"""

from __future__ import annotations

import itertools
from typing import Any, Dict, Mapping, Optional, Protocol

from .models import (
    ActivityKind,
    ActivityRecord,
    ActivityStatus,
    ActivityUpdate,
)


class ActivityLog(Protocol):
    async def create_activity(
        self,
        job_id: str,
        kind: ActivityKind,
        status: ActivityStatus,
        label: str,
        favicon: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append a row and return its id."""

    async def update_activity(
        self,
        activity_id: str,
        update: ActivityUpdate | Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> ActivityRecord:
        """Apply the given fields to an existing row. Raises ``KeyError``."""

    async def list_activities(self, job_id: str) -> list[ActivityRecord]:
        """Return every row for ``job_id`` in creation order."""

    async def delete_activities(self, job_id: str) -> int:
        """Remove every row for ``job_id`` and return how many were removed."""


def coerce_activity_update(
    update: ActivityUpdate | Mapping[str, Any] | None, fields: Mapping[str, Any]
) -> ActivityUpdate:
    if isinstance(update, ActivityUpdate):
        base = update.model_dump(exclude_unset=True)
    else:
        base = dict(update or {})
    return ActivityUpdate.model_validate({**base, **fields})


class InMemoryActivityLog(ActivityLog):
    def __init__(self) -> None:
        self._rows: Dict[str, ActivityRecord] = {}
        self._sequence = itertools.count(1)

    async def create_activity(
        self,
        job_id: str,
        kind: ActivityKind,
        status: ActivityStatus,
        label: str,
        favicon: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        sequence = next(self._sequence)
        record = ActivityRecord(
            id=str(sequence),
            job_id=job_id,
            kind=kind,
            status=status,
            label=label,
            favicon=favicon,
            metadata=metadata,
            sequence=sequence,
        )
        self._rows[record.id] = record
        return record.id

    async def update_activity(
        self,
        activity_id: str,
        update: ActivityUpdate | Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> ActivityRecord:
        changes = coerce_activity_update(update, fields).model_dump(exclude_none=True)
        record = self._rows.get(activity_id)
        if record is None:
            raise KeyError(activity_id)
        record = record.model_copy(update=changes)
        self._rows[activity_id] = record
        return record.model_copy(deep=True)

    async def list_activities(self, job_id: str) -> list[ActivityRecord]:
        rows = [r for r in self._rows.values() if r.job_id == job_id]
        rows.sort(key=lambda r: (r.created_at, r.sequence))
        return [r.model_copy(deep=True) for r in rows]

    async def delete_activities(self, job_id: str) -> int:
        ids = [key for key, row in self._rows.items() if row.job_id == job_id]
        for key in ids:
            del self._rows[key]
        return len(ids)
