import asyncio
from datetime import timedelta

import pytest
from pydantic import BaseModel, ValidationError

from stepstone import (
    NoResultsError,
    RunCancelled,
    UnknownWorkflowError,
    Workflow,
    WorkflowRunner,
    describe_outcome,
)
from stepstone.config import EngineConfig, StepstoneConfig
from stepstone.persistence import InMemoryRunRepository, WorkflowRun
from stepstone.persistence.models import utcnow
from stepstone.progress import InMemoryActivityLog, InMemoryProgressStore

CONFIG = StepstoneConfig(engine=EngineConfig(retry_base_delay=0, retry_jitter=0))


class TopicInput(BaseModel):
    topic: str
    job_id: str = "job-1"


class TopicOutput(BaseModel):
    title: str
    words: int


def _runner(**kwargs):
    repo = InMemoryRunRepository()
    store = InMemoryProgressStore()
    log = InMemoryActivityLog()
    runner = WorkflowRunner(
        repo, progress_store=store, activity_log=log, config=CONFIG, **kwargs
    )
    return runner, repo, store, log


def _workflow(handler, **kwargs):
    kwargs.setdefault("output_model", TopicOutput)
    kwargs.setdefault("timeout", 300)
    kwargs.setdefault("job_id", "job_id")
    return Workflow("topic", TopicInput, handler, **kwargs)


@pytest.mark.asyncio
async def test_run_completes_with_validated_output():
    runner, repo, store, _ = _runner()

    async def handler(ctx):
        title = await ctx.step("title", lambda: f"All about {ctx.input.topic}")
        await ctx.progress.update(title=title, progress=50)
        return {"title": title, "words": "42"}

    handle = await runner.start(_workflow(handler), {"topic": "bread"})
    run = await handle.result()

    assert run.status == "completed"
    assert handle.status == "completed"
    assert handle.output == {"title": "All about bread", "words": 42}
    assert handle.input == {"topic": "bread", "job_id": "job-1"}
    assert handle.error is None
    assert run.finished_at is not None

    stored = await repo.get_run(handle.id)
    assert stored.status == "completed"
    assert stored.output == handle.output

    snapshot = await store.read("job-1")
    assert snapshot.status == "done"
    assert snapshot.progress == 100
    assert snapshot.title == "All about bread"
    assert snapshot.metadata["run_id"] == handle.id


@pytest.mark.asyncio
async def test_invalid_input_creates_no_run():
    runner, repo, _, _ = _runner()

    async def handler(ctx):
        return {"title": "x", "words": 1}

    with pytest.raises(ValidationError):
        await runner.start(_workflow(handler), {"wrong": "field"})
    assert await repo.list_runs() == []


@pytest.mark.asyncio
async def test_handler_error_fails_run():
    runner, _, store, _ = _runner()

    async def handler(ctx):
        await ctx.step("one", lambda: 1)

        async def explode():
            raise RuntimeError("search backend down")

        await ctx.step("two", explode)

    run = await runner.run(_workflow(handler), {"topic": "bread"})

    assert run.status == "failed"
    assert "search backend down" in run.error
    assert run.output is None
    snapshot = await store.read("job-1")
    assert snapshot.status == "errored"
    assert snapshot.error == "The workflow encountered an error."


@pytest.mark.asyncio
async def test_no_results_error_reports_no_results():
    runner, _, store, _ = _runner()

    async def handler(ctx):
        sections = await ctx.step.map(
            "sections", ["a", "b"], _always_fails, max_attempts=1
        )
        if not any(sections):
            raise NoResultsError("No valid research sections")

    run = await runner.run(_workflow(handler), {"topic": "bread"})

    assert run.status == "failed"
    snapshot = await store.read("job-1")
    assert snapshot.error == "No results were found."


async def _always_fails(item, index):
    raise RuntimeError(f"{item} failed")


@pytest.mark.asyncio
async def test_output_validation_error_fails_run():
    runner, _, _, _ = _runner()

    async def handler(ctx):
        return {"title": "missing words"}

    run = await runner.run(_workflow(handler), {"topic": "bread"})
    assert run.status == "failed"
    assert run.output is None


@pytest.mark.asyncio
async def test_timeout_interrupts_running_step():
    runner, repo, store, _ = _runner()
    finished = []

    async def slow():
        await asyncio.sleep(5)
        finished.append(1)
        return "late"

    async def handler(ctx):
        await ctx.step("quick", lambda: "ok")
        await ctx.step("slow", slow)
        return {"title": "never", "words": 0}

    run = await runner.run(_workflow(handler, timeout=0.2), {"topic": "bread"})

    assert run.status == "timedout"
    assert finished == []
    assert await repo.get_step(run.run_id, "slow") is None
    assert await repo.get_step(run.run_id, "quick") is not None
    snapshot = await store.read("job-1")
    assert snapshot.status == "errored"
    assert snapshot.error == "The workflow timed out."


@pytest.mark.asyncio
async def test_cancel_after_second_step_of_five():
    runner, repo, store, log = _runner()
    executed = []
    reached = asyncio.Event()
    gate = asyncio.Event()

    async def handler(ctx):
        for index in range(1, 6):
            await ctx.step(f"step-{index}", lambda index=index: executed.append(index))
            await ctx.progress.add_activity("think", f"step {index}", status="done")
            if index == 2:
                reached.set()
                await gate.wait()
        return {"title": "done", "words": 5}

    handle = await runner.start(_workflow(handler), {"topic": "bread"})
    await reached.wait()
    assert await handle.cancel() is True
    gate.set()
    run = await handle.result()

    assert run.status == "cancelled"
    assert executed == [1, 2]
    assert run.output is None
    steps = await repo.list_steps(run.run_id)
    assert [s.step_name for s in steps] == ["step-1", "step-2"]

    snapshot = await store.read("job-1")
    assert snapshot.status == "cancelled"
    assert snapshot.error == "The workflow was cancelled."
    assert len(await log.list_activities("job-1")) == 2


@pytest.mark.asyncio
async def test_cancel_can_clear_activities():
    runner, _, _, log = _runner(clear_activities_on_cancel=True)
    reached = asyncio.Event()
    gate = asyncio.Event()

    async def handler(ctx):
        await ctx.progress.add_activity("search", "Searching")
        reached.set()
        await gate.wait()
        await ctx.step("after", lambda: 1)

    handle = await runner.start(_workflow(handler), {"topic": "bread"})
    await reached.wait()
    await runner.cancel(handle.id)
    gate.set()
    run = await handle.result()

    assert run.status == "cancelled"
    assert await log.list_activities("job-1") == []


@pytest.mark.asyncio
async def test_swallowed_cancellation_still_cancels_run():
    runner, _, _, _ = _runner()
    reached = asyncio.Event()
    gate = asyncio.Event()

    async def handler(ctx):
        reached.set()
        await gate.wait()
        try:
            await ctx.step("after", lambda: 1)
        except RunCancelled:
            pass
        return {"title": "swallowed", "words": 1}

    handle = await runner.start(_workflow(handler), {"topic": "bread"})
    await reached.wait()
    await handle.cancel()
    gate.set()
    run = await handle.result()
    assert run.status == "cancelled"
    assert run.output is None


@pytest.mark.asyncio
async def test_cancelled_collaborator_fails_run():
    runner, repo, store, _ = _runner()

    async def handler(ctx):
        async def call_collaborator():
            loop = asyncio.get_running_loop()
            pending = loop.create_future()
            loop.call_later(0.01, pending.cancel)
            return await pending

        await ctx.step("collaborator", call_collaborator)
        return {"title": "never", "words": 0}

    handle = await runner.start(_workflow(handler), {"topic": "bread"})
    run = await handle.result()

    assert run.status == "failed"
    assert run.error == "Workflow handler was cancelled"
    assert (await repo.get_run(handle.id)).status == "failed"
    assert await repo.get_step(handle.id, "collaborator") is None
    snapshot = await store.read("job-1")
    assert snapshot.status == "errored"
    assert snapshot.error == "The workflow encountered an error."


@pytest.mark.asyncio
async def test_cancel_unknown_or_finished_run():
    runner, _, _, _ = _runner()

    async def handler(ctx):
        return {"title": "t", "words": 1}

    run = await runner.run(_workflow(handler), {"topic": "bread"})
    assert await runner.cancel(run.run_id) is False
    assert await runner.cancel("missing") is False


@pytest.mark.asyncio
async def test_terminal_state_is_absorbing():
    runner, repo, store, _ = _runner()

    async def handler(ctx):
        return {"title": "t", "words": 1}

    run = await runner.run(_workflow(handler), {"topic": "bread"})
    assert await repo.finish_run(run.run_id, "failed", error="late") is False

    handle = await runner.resume(run.run_id)
    assert handle.status == "completed"
    assert handle.task is None
    assert (await handle.result()).output == {"title": "t", "words": 1}

    await store.update("job-1", status="in_progress", progress=10)
    assert (await store.read("job-1")).status == "done"


@pytest.mark.asyncio
async def test_resume_past_deadline_times_out():
    runner, repo, _, _ = _runner()
    calls = []

    async def handler(ctx):
        calls.append(1)
        return {"title": "t", "words": 1}

    workflow = runner.register(_workflow(handler))
    past = utcnow() - timedelta(minutes=10)
    run = WorkflowRun(
        workflow_name=workflow.name,
        input={"topic": "bread", "job_id": "job-1"},
        job_id="job-1",
        started_at=past,
        timeout_at=past + timedelta(minutes=5),
    )
    await repo.create_run(run)

    handle = await runner.resume(run.run_id)
    resumed = await handle.result()
    assert resumed.status == "timedout"
    assert calls == []


@pytest.mark.asyncio
async def test_resume_requires_registered_workflow_and_known_run():
    runner, repo, _, _ = _runner()
    now = utcnow()
    run = WorkflowRun(
        workflow_name="unregistered", started_at=now, timeout_at=now + timedelta(minutes=5)
    )
    await repo.create_run(run)

    with pytest.raises(UnknownWorkflowError):
        await runner.resume(run.run_id)
    with pytest.raises(KeyError):
        await runner.resume("missing")
    assert await runner.resume_pending() == []


@pytest.mark.asyncio
async def test_task_cancellation_leaves_run_resumable():
    runner, repo, _, _ = _runner()
    calls = {"one": 0, "two": 0}
    reached = asyncio.Event()
    block = {"enabled": True}

    async def handler(ctx):
        async def one():
            calls["one"] += 1
            return "first"

        first = await ctx.step("one", one)
        if block["enabled"]:
            reached.set()
            await asyncio.Event().wait()

        async def two():
            calls["two"] += 1
            return f"{first}+second"

        second = await ctx.step("two", two)
        return {"title": second, "words": 2}

    handle = await runner.start(_workflow(handler), {"topic": "bread"})
    await reached.wait()
    handle.task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await handle.task

    assert (await repo.get_run(handle.id)).status == "running"

    block["enabled"] = False
    pending = await runner.resume_pending()
    assert [h.id for h in pending] == [handle.id]
    run = await pending[0].result()

    assert run.status == "completed"
    assert run.output == {"title": "first+second", "words": 2}
    assert calls == {"one": 1, "two": 1}


@pytest.mark.asyncio
async def test_handle_refresh_reads_repository():
    runner, repo, _, _ = _runner()
    reached = asyncio.Event()
    gate = asyncio.Event()

    async def handler(ctx):
        reached.set()
        await gate.wait()
        return {"title": "t", "words": 1}

    handle = await runner.start(_workflow(handler), {"topic": "bread"})
    await reached.wait()
    await repo.request_cancel(handle.id)
    refreshed = await handle.refresh()
    assert refreshed.cancel_requested is True
    assert handle.status == "running"
    gate.set()
    await handle.result()


@pytest.mark.asyncio
async def test_job_id_from_callable_and_no_progress():
    runner, repo, store, _ = _runner()

    async def handler(ctx):
        assert ctx.progress is not None
        return {"title": ctx.input.topic, "words": 1}

    workflow = _workflow(handler, job_id=lambda data: f"job-{data.topic}")
    run = await runner.run(workflow, {"topic": "rye"})
    assert run.job_id == "job-rye"
    assert (await store.read("job-rye")).status == "done"

    async def quiet(ctx):
        assert ctx.progress is None
        return {"title": "quiet", "words": 0}

    run = await runner.run(_workflow(quiet, job_id=None), {"topic": "rye"})
    assert run.status == "completed"
    assert run.job_id is None


def test_workflow_rejects_bad_timeout():
    async def handler(ctx):
        return None

    with pytest.raises(ValueError):
        Workflow("bad", TopicInput, handler, timeout=0)
    assert Workflow("ok", TopicInput, handler, timeout=timedelta(minutes=5)).timeout == 300


def test_describe_outcome_messages():
    assert describe_outcome("completed") is None
    assert describe_outcome("failed") == "The workflow encountered an error."
    assert describe_outcome("failed", NoResultsError("none")) == "No results were found."
    assert describe_outcome("timedout") == "The workflow timed out."
    assert describe_outcome("cancelled") == "The workflow was cancelled."
