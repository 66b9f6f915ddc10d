"""FastAPI app factory exposing progress and run state over HTTP.

Endpoints are thin wrappers over the stores; a UI polls ``/api/jobs/{id}``
and ``/api/jobs/{id}/activities`` while a workflow runs.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException

from . import __version__
from .persistence import RunRepository
from .progress import ActivityLog, ActivityRecord, ProgressSnapshot, ProgressStore
from .workflow import WorkflowRunner

logger = logging.getLogger(__name__)


def create_app(
    progress_store: ProgressStore,
    activity_log: ActivityLog,
    repository: Optional[RunRepository] = None,
    runner: Optional[WorkflowRunner] = None,
) -> FastAPI:
    if repository is None and runner is not None:
        repository = runner.repository

    app = FastAPI(
        title="stepstone",
        version=__version__,
        description="Read-only view of workflow runs and job progress.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
    )
    app.state.progress_store = progress_store
    app.state.activity_log = activity_log
    app.state.repository = repository

    def _repository() -> RunRepository:
        if repository is None:
            raise HTTPException(status_code=501, detail="No run repository configured")
        return repository

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/jobs/{job_id}", response_model=ProgressSnapshot)
    async def get_job(job_id: str) -> ProgressSnapshot:
        snapshot = await progress_store.read(job_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return snapshot

    @app.get("/api/jobs/{job_id}/activities", response_model=list[ActivityRecord])
    async def list_job_activities(job_id: str) -> list[ActivityRecord]:
        return await activity_log.list_activities(job_id)

    @app.get("/api/runs/{run_id}")
    async def get_run(run_id: str) -> dict[str, Any]:
        repo = _repository()
        run = await repo.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        steps = await repo.list_steps(run_id)
        payload = run.model_dump(mode="json")
        payload["steps"] = [record.step_name for record in steps]
        return payload

    @app.post("/api/runs/{run_id}/cancel")
    async def cancel_run(run_id: str) -> dict[str, Any]:
        repo = _repository()
        run = await repo.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        if run.is_terminal:
            raise HTTPException(
                status_code=409, detail=f"Run is already {run.status}"
            )
        if runner is not None:
            requested = await runner.cancel(run_id)
        else:
            requested = await repo.request_cancel(run_id)
        if not requested:
            raise HTTPException(status_code=409, detail="Run is no longer running")
        logger.info(f"Cancellation requested over HTTP for run {run_id}")
        return {"run_id": run_id, "cancel_requested": True}

    return app
