"""Pydantic models for progress snapshots and activity rows."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

ProgressStatus = Literal["in_progress", "done", "errored", "cancelled"]
ActivityKind = Literal["search", "fetch", "compose", "think", "queued", "extract"]
ActivityStatus = Literal["pending", "in_progress", "done", "error"]

TERMINAL_PROGRESS_STATUSES: frozenset[str] = frozenset({"done", "errored", "cancelled"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Source(BaseModel):
    """A page or document that contributed to a job's result."""

    url: str
    title: str = ""
    favicon: Optional[str] = None


class ProgressSnapshot(BaseModel):
    """Latest externally visible state of a job."""

    job_id: str
    status: ProgressStatus = "in_progress"
    progress: int = Field(default=0, ge=0, le=100)
    title: Optional[str] = None
    topic: Optional[str] = None
    sources: List[Source] = Field(default_factory=list)
    result: Optional[Any] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PROGRESS_STATUSES


class ProgressUpdate(BaseModel):
    """Partial snapshot; ``None`` means "keep what is stored"."""

    status: Optional[ProgressStatus] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    title: Optional[str] = None
    topic: Optional[str] = None
    sources: Optional[List[Source]] = None
    result: Optional[Any] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ActivityRecord(BaseModel):
    """One fine-grained unit of visible work, owned by a single worker."""

    id: str
    job_id: str
    kind: ActivityKind
    status: ActivityStatus = "pending"
    label: str
    favicon: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    sequence: int = 0


class ActivityUpdate(BaseModel):
    status: Optional[ActivityStatus] = None
    label: Optional[str] = None
    favicon: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
