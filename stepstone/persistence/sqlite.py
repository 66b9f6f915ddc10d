"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from .models import RunStatus, StepRecord, WorkflowRun, utcnow
from .repository import RunRepository

_RUN_COLUMNS = (
    "run_id, workflow_name, input, status, output, error, job_id, "
    "cancel_requested, started_at, timeout_at, finished_at"
)


class SQLiteRunRepository(RunRepository):
    """Persist runs and checkpoints using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                input TEXT NOT NULL,
                status TEXT NOT NULL,
                output TEXT,
                error TEXT,
                job_id TEXT,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                timeout_at TEXT NOT NULL,
                finished_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                result TEXT,
                attempts INTEGER NOT NULL DEFAULT 1,
                completed_at TEXT NOT NULL,
                UNIQUE (run_id, step_name)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> WorkflowRun:
        return WorkflowRun(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            input=json.loads(row["input"]),
            status=row["status"],
            output=json.loads(row["output"]) if row["output"] is not None else None,
            error=row["error"],
            job_id=row["job_id"],
            cancel_requested=bool(row["cancel_requested"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            timeout_at=datetime.fromisoformat(row["timeout_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
        )

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> StepRecord:
        return StepRecord(
            run_id=row["run_id"],
            step_name=row["step_name"],
            result=json.loads(row["result"]) if row["result"] is not None else None,
            attempts=row["attempts"],
            completed_at=datetime.fromisoformat(row["completed_at"]),
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            run.run_id,
            run.workflow_name,
            json.dumps(run.input),
            run.status,
            json.dumps(run.output) if run.output is not None else None,
            run.error,
            run.job_id,
            int(run.cancel_requested),
            run.started_at.isoformat(),
            run.timeout_at.isoformat(),
            run.finished_at.isoformat() if run.finished_at else None,
        )
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE run_id = ?",
            run_id,
        )
        return self._row_to_run(row) if row else None

    async def list_runs(self, status: RunStatus | None = None) -> list[WorkflowRun]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs ORDER BY started_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE status = ? ORDER BY started_at",
                status,
            )
        return [self._row_to_run(r) for r in rows]

    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        output: Any = None,
        error: str | None = None,
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_runs
            SET status = ?, output = ?, error = ?, finished_at = ?
            WHERE run_id = ? AND status = 'running'
            """,
            status,
            json.dumps(output) if status == "completed" and output is not None else None,
            error,
            utcnow().isoformat(),
            run_id,
        )
        return updated == 1

    async def request_cancel(self, run_id: str) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_runs SET cancel_requested = 1 WHERE run_id = ? AND status = 'running'",
            run_id,
        )
        return updated == 1

    async def is_cancel_requested(self, run_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT cancel_requested FROM workflow_runs WHERE run_id = ?",
            run_id,
        )
        return bool(row and row["cancel_requested"])

    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT run_id, step_name, result, attempts, completed_at FROM step_records WHERE run_id = ? AND step_name = ?",
            run_id,
            step_name,
        )
        return self._row_to_step(row) if row else None

    async def save_step(self, record: StepRecord) -> StepRecord:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO step_records (run_id, step_name, result, attempts, completed_at) VALUES (?, ?, ?, ?, ?)",
            record.run_id,
            record.step_name,
            json.dumps(record.result),
            record.attempts,
            record.completed_at.isoformat(),
        )
        stored = await self.get_step(record.run_id, record.step_name)
        return stored or record

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT run_id, step_name, result, attempts, completed_at FROM step_records WHERE run_id = ? ORDER BY id",
            run_id,
        )
        return [self._row_to_step(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
