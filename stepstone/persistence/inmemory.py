"""In-memory implementation of the run repository."""

from __future__ import annotations

from typing import Any, Dict

from .models import RunStatus, StepRecord, WorkflowRun, utcnow
from .repository import RunRepository


class InMemoryRunRepository(RunRepository):
    """Store runs and checkpoints in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored objects are copies so callers
    cannot mutate persisted state by accident.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._steps: Dict[str, Dict[str, StepRecord]] = {}

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        if run.run_id in self._runs:
            raise ValueError(f"Run {run.run_id} already exists")
        self._runs[run.run_id] = run.model_copy(deep=True)
        self._steps[run.run_id] = {}
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, status: RunStatus | None = None) -> list[WorkflowRun]:
        runs = sorted(self._runs.values(), key=lambda r: r.started_at)
        return [
            r.model_copy(deep=True)
            for r in runs
            if status is None or r.status == status
        ]

    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        output: Any = None,
        error: str | None = None,
    ) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.is_terminal:
            return False
        run.status = status
        run.output = output if status == "completed" else None
        run.error = error
        run.finished_at = utcnow()
        return True

    async def request_cancel(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.is_terminal:
            return False
        run.cancel_requested = True
        return True

    async def is_cancel_requested(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        return bool(run and run.cancel_requested)

    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        record = self._steps.get(run_id, {}).get(step_name)
        return record.model_copy(deep=True) if record else None

    async def save_step(self, record: StepRecord) -> StepRecord:
        steps = self._steps.setdefault(record.run_id, {})
        existing = steps.get(record.step_name)
        if existing is None:
            existing = steps[record.step_name] = record.model_copy(deep=True)
        return existing.model_copy(deep=True)

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        return [r.model_copy(deep=True) for r in self._steps.get(run_id, {}).values()]
