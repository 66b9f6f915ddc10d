"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

from .models import RunStatus, StepRecord, WorkflowRun, utcnow
from .repository import RunRepository

_RUN_COLUMNS = (
    "run_id, workflow_name, input, status, output, error, job_id, "
    "cancel_requested, started_at, timeout_at, finished_at"
)


def _loads(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


class PostgresRunRepository(RunRepository):
    """Persist runs and checkpoints using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                input JSONB NOT NULL,
                status TEXT NOT NULL,
                output JSONB,
                error TEXT,
                job_id TEXT,
                cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                started_at TIMESTAMPTZ NOT NULL,
                timeout_at TIMESTAMPTZ NOT NULL,
                finished_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                result JSONB,
                attempts INTEGER NOT NULL DEFAULT 1,
                completed_at TIMESTAMPTZ NOT NULL,
                UNIQUE (run_id, step_name)
            )
            """
        )

    @staticmethod
    def _row_to_run(row: asyncpg.Record) -> WorkflowRun:
        return WorkflowRun(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            input=_loads(row["input"]),
            status=row["status"],
            output=_loads(row["output"]),
            error=row["error"],
            job_id=row["job_id"],
            cancel_requested=row["cancel_requested"],
            started_at=row["started_at"],
            timeout_at=row["timeout_at"],
            finished_at=row["finished_at"],
        )

    @staticmethod
    def _row_to_step(row: asyncpg.Record) -> StepRecord:
        return StepRecord(
            run_id=row["run_id"],
            step_name=row["step_name"],
            result=_loads(row["result"]),
            attempts=row["attempts"],
            completed_at=row["completed_at"],
        )

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
                run.run_id,
                run.workflow_name,
                json.dumps(run.input),
                run.status,
                json.dumps(run.output) if run.output is not None else None,
                run.error,
                run.job_id,
                run.cancel_requested,
                run.started_at,
                run.timeout_at,
                run.finished_at,
            )
        finally:
            await conn.close()
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE run_id = $1",
                run_id,
            )
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def list_runs(self, status: RunStatus | None = None) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM workflow_runs ORDER BY started_at"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE status = $1 ORDER BY started_at",
                    status,
                )
        finally:
            await conn.close()
        return [self._row_to_run(r) for r in rows]

    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        output: Any = None,
        error: str | None = None,
    ) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE workflow_runs
                SET status = $1, output = $2, error = $3, finished_at = $4
                WHERE run_id = $5 AND status = 'running'
                """,
                status,
                json.dumps(output) if status == "completed" and output is not None else None,
                error,
                utcnow(),
                run_id,
            )
        finally:
            await conn.close()
        return result == "UPDATE 1"

    async def request_cancel(self, run_id: str) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflow_runs SET cancel_requested = TRUE WHERE run_id = $1 AND status = 'running'",
                run_id,
            )
        finally:
            await conn.close()
        return result == "UPDATE 1"

    async def is_cancel_requested(self, run_id: str) -> bool:
        conn = await self._connect()
        try:
            value = await conn.fetchval(
                "SELECT cancel_requested FROM workflow_runs WHERE run_id = $1",
                run_id,
            )
        finally:
            await conn.close()
        return bool(value)

    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT run_id, step_name, result, attempts, completed_at FROM step_records WHERE run_id = $1 AND step_name = $2",
                run_id,
                step_name,
            )
        finally:
            await conn.close()
        return self._row_to_step(row) if row else None

    async def save_step(self, record: StepRecord) -> StepRecord:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_records (run_id, step_name, result, attempts, completed_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (run_id, step_name) DO NOTHING
                """,
                record.run_id,
                record.step_name,
                json.dumps(record.result),
                record.attempts,
                record.completed_at,
            )
            row = await conn.fetchrow(
                "SELECT run_id, step_name, result, attempts, completed_at FROM step_records WHERE run_id = $1 AND step_name = $2",
                record.run_id,
                record.step_name,
            )
        finally:
            await conn.close()
        return self._row_to_step(row) if row else record

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT run_id, step_name, result, attempts, completed_at FROM step_records WHERE run_id = $1 ORDER BY id",
                run_id,
            )
        finally:
            await conn.close()
        return [self._row_to_step(r) for r in rows]
