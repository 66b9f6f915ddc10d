"""SQLite backends for progress snapshots and activity rows."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

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


class _SQLiteBase:
    """Shared connection handling.

    The connection runs in autocommit mode so read-modify-write sequences can
    open their own ``BEGIN IMMEDIATE`` transaction, which takes the database
    write lock before reading and therefore serialises writers across
    processes as well as threads.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=30
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        raise NotImplementedError

    def _execute(self, query: str, *params: Any) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(query, params)

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class SQLiteProgressStore(_SQLiteBase, ProgressStore):
    """Persist snapshots as JSON documents keyed by job id."""

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS progress_snapshots (
                job_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

    def _write(self, snapshot: ProgressSnapshot) -> None:
        self._conn.execute(
            """
            INSERT INTO progress_snapshots (job_id, status, data, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                status = excluded.status,
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (
                snapshot.job_id,
                snapshot.status,
                snapshot.model_dump_json(),
                snapshot.updated_at.isoformat(),
            ),
        )

    def _create_sync(self, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            self._write(snapshot)

    def _update_sync(self, job_id: str, update: ProgressUpdate) -> ProgressSnapshot:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT data FROM progress_snapshots WHERE job_id = ?", (job_id,)
                ).fetchone()
                existing = (
                    ProgressSnapshot.model_validate_json(row["data"])
                    if row
                    else ProgressSnapshot(job_id=job_id)
                )
                merged = merge_snapshot(existing, update, updated_at=utcnow())
                if merged is existing:
                    logger.debug(f"Ignoring update for finished job {job_id}")
                else:
                    self._write(merged)
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
        return merged

    async def create(
        self, job_id: str, snapshot: ProgressSnapshot | None = None, **fields: Any
    ) -> ProgressSnapshot:
        created = initial_snapshot(job_id, snapshot, fields)
        await asyncio.to_thread(self._create_sync, created)
        return created

    async def update(
        self,
        job_id: str,
        update: ProgressUpdate | Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> ProgressSnapshot:
        partial = coerce_update(update, fields)
        return await asyncio.to_thread(self._update_sync, job_id, partial)

    async def read(self, job_id: str) -> ProgressSnapshot | None:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM progress_snapshots WHERE job_id = ?",
            job_id,
        )
        return ProgressSnapshot.model_validate_json(rows[0]["data"]) if rows else None


class SQLiteActivityLog(_SQLiteBase, ActivityLog):
    """One table row per activity, ordered by creation."""

    _COLUMNS = "id, job_id, kind, status, label, favicon, metadata, created_at"

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS activities (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                label TEXT NOT NULL,
                favicon TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_activities_job ON activities (job_id)"
        )

    @staticmethod
    def _row_id(activity_id: str) -> int:
        try:
            return int(activity_id)
        except ValueError:
            raise KeyError(activity_id) from None

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ActivityRecord:
        return ActivityRecord(
            id=str(row["id"]),
            job_id=row["job_id"],
            kind=row["kind"],
            status=row["status"],
            label=row["label"],
            favicon=row["favicon"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            sequence=row["id"],
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
        cur = await asyncio.to_thread(
            self._execute,
            "INSERT INTO activities (job_id, kind, status, label, favicon, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            job_id,
            kind,
            status,
            label,
            favicon,
            json.dumps(metadata) if metadata is not None else None,
            utcnow().isoformat(),
        )
        return str(cur.lastrowid)

    async def update_activity(
        self,
        activity_id: str,
        update: ActivityUpdate | Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> ActivityRecord:
        changes = coerce_activity_update(update, fields).model_dump(exclude_none=True)
        if "metadata" in changes:
            changes["metadata"] = json.dumps(changes["metadata"])
        if changes:
            assignments = ", ".join(f"{column} = ?" for column in changes)
            cur = await asyncio.to_thread(
                self._execute,
                f"UPDATE activities SET {assignments} WHERE id = ?",
                *changes.values(),
                self._row_id(activity_id),
            )
            if cur.rowcount == 0:
                raise KeyError(activity_id)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {self._COLUMNS} FROM activities WHERE id = ?",
            self._row_id(activity_id),
        )
        if not rows:
            raise KeyError(activity_id)
        return self._row_to_record(rows[0])

    async def list_activities(self, job_id: str) -> list[ActivityRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {self._COLUMNS} FROM activities WHERE job_id = ? ORDER BY created_at, id",
            job_id,
        )
        return [self._row_to_record(r) for r in rows]

    async def delete_activities(self, job_id: str) -> int:
        cur = await asyncio.to_thread(
            self._execute, "DELETE FROM activities WHERE job_id = ?", job_id
        )
        return cur.rowcount
