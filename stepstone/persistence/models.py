"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

RunStatus = Literal["running", "completed", "failed", "timedout", "cancelled"]

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset(
    {"completed", "failed", "timedout", "cancelled"}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepRecord(BaseModel):
    """Checkpoint of one completed step. Written once, never mutated."""

    run_id: str
    step_name: str
    result: Any = None
    attempts: int = 1
    completed_at: datetime = Field(default_factory=utcnow)


class WorkflowRun(BaseModel):
    """One durable execution of a workflow."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = "running"
    output: Optional[Any] = None
    error: Optional[str] = None
    job_id: Optional[str] = None
    cancel_requested: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    timeout_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES
