"""Redis backends for progress snapshots and activity rows."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from .activity import ActivityLog, coerce_activity_update
from .merge import coerce_update, merge_snapshot
from .models import (
    ActivityKind,
    ActivityRecord,
    ActivityStatus,
    ActivityUpdate,
    ProgressSnapshot,
    ProgressUpdate,
    utcnow,
)
from .store import ProgressStore, initial_snapshot

logger = logging.getLogger(__name__)


class _RedisBase:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "stepstone",
        client: Optional[redis.Redis] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[redis.Redis] = client

    async def connect(self) -> redis.Redis:
        """Connect to Redis on first use."""
        if self._redis is None:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
            await self._redis.ping()
        return self._redis

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None


class RedisProgressStore(_RedisBase, ProgressStore):
    """Snapshots stored as JSON strings, updated with optimistic locking.

    ``update`` watches the key, merges, and writes inside ``MULTI``; if another
    writer touched the key in between, ``EXEC`` fails and the merge is redone
    against the newer value.
    """

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}:progress:{job_id}"

    async def create(
        self, job_id: str, snapshot: ProgressSnapshot | None = None, **fields: Any
    ) -> ProgressSnapshot:
        client = await self.connect()
        created = initial_snapshot(job_id, snapshot, fields)
        await client.set(self._key(job_id), created.model_dump_json())
        return created

    async def update(
        self,
        job_id: str,
        update: ProgressUpdate | Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> ProgressSnapshot:
        partial = coerce_update(update, fields)
        client = await self.connect()
        key = self._key(job_id)
        async with client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    existing = (
                        ProgressSnapshot.model_validate_json(raw)
                        if raw
                        else ProgressSnapshot(job_id=job_id)
                    )
                    merged = merge_snapshot(existing, partial, updated_at=utcnow())
                    if merged is existing:
                        await pipe.unwatch()
                        logger.debug(f"Ignoring update for finished job {job_id}")
                        return existing
                    pipe.multi()
                    pipe.set(key, merged.model_dump_json())
                    await pipe.execute()
                    return merged
                except WatchError:
                    logger.debug(f"Concurrent write on {key}, retrying merge")
                    continue

    async def read(self, job_id: str) -> ProgressSnapshot | None:
        client = await self.connect()
        raw = await client.get(self._key(job_id))
        return ProgressSnapshot.model_validate_json(raw) if raw else None


class RedisActivityLog(_RedisBase, ActivityLog):
    """A hash per activity plus a per-job sorted set scored by creation order."""

    def _row_key(self, activity_id: str) -> str:
        return f"{self.prefix}:activity:{activity_id}"

    def _index_key(self, job_id: str) -> str:
        return f"{self.prefix}:activities:{job_id}"

    @staticmethod
    def _to_record(activity_id: str, data: Dict[str, str]) -> ActivityRecord:
        return ActivityRecord(
            id=activity_id,
            job_id=data["job_id"],
            kind=data["kind"],
            status=data["status"],
            label=data["label"],
            favicon=data.get("favicon") or None,
            metadata=json.loads(data["metadata"]) if data.get("metadata") else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            sequence=int(activity_id),
        )

    async def create_activity(
        self,
        job_id: str,
        kind: ActivityKind,
        status: ActivityStatus,
        label: str,
        favicon: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        client = await self.connect()
        sequence = await client.incr(f"{self.prefix}:activity:seq")
        activity_id = str(sequence)
        row = {
            "job_id": job_id,
            "kind": kind,
            "status": status,
            "label": label,
            "favicon": favicon or "",
            "metadata": json.dumps(metadata) if metadata is not None else "",
            "created_at": utcnow().isoformat(),
        }
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self._row_key(activity_id), mapping=row)
            pipe.zadd(self._index_key(job_id), {activity_id: sequence})
            await pipe.execute()
        return activity_id

    async def update_activity(
        self,
        activity_id: str,
        update: ActivityUpdate | Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> ActivityRecord:
        changes = coerce_activity_update(update, fields).model_dump(exclude_none=True)
        if "metadata" in changes:
            changes["metadata"] = json.dumps(changes["metadata"])
        client = await self.connect()
        key = self._row_key(activity_id)
        if not await client.exists(key):
            raise KeyError(activity_id)
        if changes:
            await client.hset(key, mapping=changes)
        return self._to_record(activity_id, await client.hgetall(key))

    async def list_activities(self, job_id: str) -> list[ActivityRecord]:
        client = await self.connect()
        ids = await client.zrange(self._index_key(job_id), 0, -1)
        if not ids:
            return []
        async with client.pipeline(transaction=False) as pipe:
            for activity_id in ids:
                pipe.hgetall(self._row_key(activity_id))
            rows = await pipe.execute()
        return [
            self._to_record(activity_id, data)
            for activity_id, data in zip(ids, rows)
            if data
        ]

    async def delete_activities(self, job_id: str) -> int:
        client = await self.connect()
        index = self._index_key(job_id)
        ids = await client.zrange(index, 0, -1)
        if not ids:
            return 0
        await client.delete(*(self._row_key(i) for i in ids), index)
        return len(ids)
