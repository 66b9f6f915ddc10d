"""Workflow declaration and the runner that drives handlers to completion."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from .config import StepstoneConfig, load_config
from .exceptions import NoResultsError, RunCancelled, UnknownWorkflowError
from .persistence import RunRepository, RunStatus, WorkflowRun, get_repository
from .persistence.models import utcnow
from .progress import ActivityLog, ProgressReporter, ProgressStore
from .step import StepExecutor

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT", bound=BaseModel)

NO_RESULTS_MESSAGE = "No results were found."
ERROR_MESSAGE = "The workflow encountered an error."
TIMEOUT_MESSAGE = "The workflow timed out."
CANCELLED_MESSAGE = "The workflow was cancelled."


def describe_outcome(status: RunStatus, error: BaseException | None = None) -> str | None:
    """Return the short message shown to users for a finished run."""
    if status == "cancelled":
        return CANCELLED_MESSAGE
    if status == "timedout":
        return TIMEOUT_MESSAGE
    if status == "failed":
        if isinstance(error, NoResultsError):
            return NO_RESULTS_MESSAGE
        return ERROR_MESSAGE
    return None


@dataclass
class WorkflowContext(Generic[InputT]):
    """Everything a handler gets to drive one run."""

    run: WorkflowRun
    input: InputT
    step: StepExecutor
    progress: Optional[ProgressReporter] = None


Handler = Callable[[WorkflowContext], Awaitable[Any]]


class Workflow(Generic[InputT]):
    """A named handler with typed input and output contracts.

    ``job_id`` links runs to a progress job. Pass the name of an input field
    or a callable taking the validated input.
    """

    def __init__(
        self,
        name: str,
        input_model: Type[InputT],
        handler: Handler,
        output_model: Optional[Type[BaseModel]] = None,
        timeout: Union[float, timedelta, None] = None,
        job_id: Union[str, Callable[[InputT], Optional[str]], None] = None,
    ) -> None:
        if not name:
            raise ValueError("Workflow name must be a non-empty string")
        self.name = name
        self.input_model = input_model
        self.output_model = output_model
        self.handler = handler
        if isinstance(timeout, timedelta):
            timeout = timeout.total_seconds()
        if timeout is not None and timeout <= 0:
            raise ValueError("Workflow timeout must be positive")
        self.timeout = timeout
        self.job_id = job_id

    def __repr__(self) -> str:
        return f"Workflow(name={self.name!r})"

    def validate_input(self, data: Any) -> InputT:
        return self.input_model.model_validate(data)

    def validate_output(self, value: Any) -> Any:
        if self.output_model is None:
            return to_jsonable_python(value)
        return self.output_model.model_validate(value).model_dump(mode="json")

    def resolve_job_id(self, data: InputT) -> Optional[str]:
        if self.job_id is None:
            return None
        if callable(self.job_id):
            return self.job_id(data)
        value = getattr(data, self.job_id)
        return str(value) if value is not None else None

    def timeout_seconds(self, config: StepstoneConfig) -> float:
        return self.timeout or config.engine.default_timeout_seconds


class WorkflowHandle:
    """Caller's view of a run started or resumed by a runner.

    The attributes read through to the run object the runner mutates, so
    they reflect progress made in this process. Use :meth:`refresh` to pick up
    changes made elsewhere.
    """

    def __init__(
        self,
        runner: "WorkflowRunner",
        run: WorkflowRun,
        task: Optional[asyncio.Task] = None,
    ) -> None:
        self._runner = runner
        self._run = run
        self.task = task

    @property
    def id(self) -> str:
        return self._run.run_id

    @property
    def run(self) -> WorkflowRun:
        return self._run

    @property
    def status(self) -> RunStatus:
        return self._run.status

    @property
    def input(self) -> Dict[str, Any]:
        return self._run.input

    @property
    def output(self) -> Any:
        return self._run.output

    @property
    def error(self) -> Optional[str]:
        return self._run.error

    async def refresh(self) -> WorkflowRun:
        stored = await self._runner.repository.get_run(self.id)
        if stored is not None:
            _copy_run(stored, self._run)
        return self._run

    async def result(self) -> WorkflowRun:
        """Wait for the run to reach a terminal state in this process."""
        if self.task is not None:
            await self.task
        return self._run

    async def cancel(self) -> bool:
        return await self._runner.cancel(self.id)


def _copy_run(source: WorkflowRun, target: WorkflowRun) -> None:
    for field in WorkflowRun.model_fields:
        setattr(target, field, getattr(source, field))


class WorkflowRunner:
    """Start, resume and cancel workflow runs.

    Each run executes as an asyncio task. The handler is replayed from the
    top on resume; completed steps return their checkpoints instead of
    executing again.
    """

    def __init__(
        self,
        repository: RunRepository | None = None,
        progress_store: ProgressStore | None = None,
        activity_log: ActivityLog | None = None,
        config: StepstoneConfig | None = None,
        clear_activities_on_cancel: bool = False,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.progress_store = progress_store
        self.activity_log = activity_log
        self.clear_activities_on_cancel = clear_activities_on_cancel
        self._workflows: Dict[str, Workflow] = {}
        self._executors: Dict[str, StepExecutor] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    def register(self, workflow: Workflow) -> Workflow:
        existing = self._workflows.get(workflow.name)
        if existing is not None and existing is not workflow:
            logger.warning(f"Replacing registered workflow {workflow.name}")
        self._workflows[workflow.name] = workflow
        return workflow

    def get_workflow(self, name: str) -> Workflow:
        try:
            return self._workflows[name]
        except KeyError:
            raise UnknownWorkflowError(name) from None

    @property
    def workflows(self) -> list[str]:
        return sorted(self._workflows)

    # ------------------------------------------------------------------
    async def start(
        self, workflow: Workflow, data: Any, *, run_id: Optional[str] = None
    ) -> WorkflowHandle:
        """Validate ``data`` and launch a new run of ``workflow``."""
        self.register(workflow)
        validated = workflow.validate_input(data)

        now = utcnow()
        run = WorkflowRun(
            workflow_name=workflow.name,
            input=validated.model_dump(mode="json"),
            job_id=workflow.resolve_job_id(validated),
            started_at=now,
            timeout_at=now + timedelta(seconds=workflow.timeout_seconds(self.config)),
        )
        if run_id is not None:
            run.run_id = run_id
        await self.repository.create_run(run)
        logger.info(f"Started run {run.run_id} of workflow {workflow.name}")

        if run.job_id and self.progress_store is not None:
            await self.progress_store.create(
                run.job_id, metadata={"run_id": run.run_id}
            )

        return self._launch(workflow, run, validated)

    async def run(self, workflow: Workflow, data: Any) -> WorkflowRun:
        handle = await self.start(workflow, data)
        return await handle.result()

    async def resume(self, run_id: str) -> WorkflowHandle:
        """Continue a run from its checkpoints."""
        if run_id in self._tasks:
            raise RuntimeError(f"Run {run_id} is already executing")
        run = await self.repository.get_run(run_id)
        if run is None:
            raise KeyError(run_id)
        if run.is_terminal:
            return WorkflowHandle(self, run)

        workflow = self.get_workflow(run.workflow_name)
        validated = workflow.validate_input(run.input)
        logger.info(f"Resuming run {run_id} of workflow {workflow.name}")
        return self._launch(workflow, run, validated)

    async def resume_pending(self) -> list[WorkflowHandle]:
        """Resume every unfinished run whose workflow is registered here."""
        handles = []
        for run in await self.repository.list_runs(status="running"):
            if run.run_id in self._tasks:
                continue
            if run.workflow_name not in self._workflows:
                logger.warning(
                    f"Skipping run {run.run_id}: workflow {run.workflow_name} "
                    "is not registered"
                )
                continue
            handles.append(await self.resume(run.run_id))
        return handles

    async def cancel(self, run_id: str) -> bool:
        """Request cancellation; honoured before the run's next step."""
        requested = await self.repository.request_cancel(run_id)
        executor = self._executors.get(run_id)
        if requested and executor is not None:
            executor.request_cancel()
        if requested:
            logger.info(f"Cancellation requested for run {run_id}")
        return requested

    # ------------------------------------------------------------------
    def _launch(
        self, workflow: Workflow, run: WorkflowRun, validated: BaseModel
    ) -> WorkflowHandle:
        executor = StepExecutor(run, self.repository, self.config.engine)
        self._executors[run.run_id] = executor
        task = asyncio.create_task(
            self._execute(workflow, run, validated, executor),
            name=f"stepstone-run-{run.run_id}",
        )
        self._tasks[run.run_id] = task
        return WorkflowHandle(self, run, task)

    def _reporter(self, run: WorkflowRun) -> Optional[ProgressReporter]:
        if not run.job_id or self.progress_store is None:
            return None
        return ProgressReporter(run.job_id, self.progress_store, self.activity_log)

    async def _execute(
        self,
        workflow: Workflow,
        run: WorkflowRun,
        validated: BaseModel,
        executor: StepExecutor,
    ) -> WorkflowRun:
        try:
            remaining = (run.timeout_at - utcnow()).total_seconds()
            if remaining <= 0:
                logger.warning(f"Run {run.run_id} passed its deadline before resuming")
                await self._finish(run, "timedout", error="Deadline exceeded")
                return run

            ctx = WorkflowContext(
                run=run, input=validated, step=executor, progress=self._reporter(run)
            )
            handler_task = asyncio.ensure_future(workflow.handler(ctx))
            try:
                done, _ = await asyncio.wait({handler_task}, timeout=remaining)
            except asyncio.CancelledError:
                handler_task.cancel()
                raise

            if not done:
                executor.close()
                handler_task.cancel()
                await asyncio.gather(handler_task, return_exceptions=True)
                logger.warning(f"Run {run.run_id} timed out after {remaining:.1f}s")
                await self._finish(
                    run, "timedout", error=f"Deadline exceeded at {run.timeout_at}"
                )
                return run

            if handler_task.cancelled():
                # Cancelled from inside the handler, not by this runner task.
                if executor.cancel_observed:
                    await self._finish(run, "cancelled")
                else:
                    logger.error(f"Run {run.run_id} failed: handler was cancelled")
                    await self._finish(
                        run, "failed", error="Workflow handler was cancelled"
                    )
                return run

            try:
                value = handler_task.result()
                output = workflow.validate_output(value)
            except RunCancelled:
                await self._finish(run, "cancelled")
            except Exception as exc:
                if executor.cancel_observed:
                    await self._finish(run, "cancelled")
                else:
                    logger.error(f"Run {run.run_id} failed: {exc}")
                    await self._finish(run, "failed", error=str(exc), exc=exc)
            else:
                if executor.cancel_observed:
                    await self._finish(run, "cancelled")
                else:
                    await self._finish(run, "completed", output=output)
            return run
        finally:
            executor.close()
            self._executors.pop(run.run_id, None)
            self._tasks.pop(run.run_id, None)

    async def _finish(
        self,
        run: WorkflowRun,
        status: RunStatus,
        output: Any = None,
        error: Optional[str] = None,
        exc: BaseException | None = None,
    ) -> None:
        changed = await self.repository.finish_run(
            run.run_id, status, output=output, error=error
        )
        stored = await self.repository.get_run(run.run_id)
        if stored is not None:
            _copy_run(stored, run)
        if not changed:
            logger.info(
                f"Run {run.run_id} already finished as {run.status}; ignoring {status}"
            )
            return

        logger.info(f"Run {run.run_id} finished with status {status}")
        if not run.job_id or self.progress_store is None:
            return
        if status == "completed":
            await self.progress_store.update(run.job_id, status="done", progress=100)
            return

        message = describe_outcome(status, exc)
        if status == "cancelled":
            await self.progress_store.update(
                run.job_id, status="cancelled", error=message
            )
            if self.clear_activities_on_cancel and self.activity_log is not None:
                removed = await self.activity_log.delete_activities(run.job_id)
                logger.debug(f"Removed {removed} activities for job {run.job_id}")
        else:
            await self.progress_store.update(
                run.job_id, status="errored", error=message
            )
