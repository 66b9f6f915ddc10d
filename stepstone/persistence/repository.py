"""Repository abstraction for workflow run persistence."""

from __future__ import annotations

from typing import Any, Protocol

from .models import RunStatus, StepRecord, WorkflowRun


class RunRepository(Protocol):
    """Protocol for run and checkpoint persistence backends."""

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """Persist a new run in ``running`` state."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def list_runs(self, status: RunStatus | None = None) -> list[WorkflowRun]:
        """Return persisted runs, oldest first, optionally filtered by status."""

    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        output: Any = None,
        error: str | None = None,
    ) -> bool:
        """Move a running run to a terminal state.

        Returns ``False`` without writing when the run is unknown or already
        terminal, so the first terminal transition wins.
        """

    async def request_cancel(self, run_id: str) -> bool:
        """Flag a running run for cancellation. ``False`` if not running."""

    async def is_cancel_requested(self, run_id: str) -> bool:
        """Return whether a cancellation request is pending for the run."""

    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        """Return the checkpoint for ``step_name`` if it completed."""

    async def save_step(self, record: StepRecord) -> StepRecord:
        """Persist a checkpoint if none exists and return the stored one."""

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        """Return the run's checkpoints in completion order."""
