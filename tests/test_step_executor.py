import asyncio
from datetime import timedelta

import pytest
from pydantic import BaseModel

from stepstone import RunCancelled, RunTerminated, StepExecutor, completed
from stepstone.config import EngineConfig
from stepstone.persistence import InMemoryRunRepository, WorkflowRun
from stepstone.persistence.models import utcnow

ENGINE = EngineConfig(retry_base_delay=0, retry_jitter=0, map_concurrency=4, max_attempts=3)


class Page(BaseModel):
    url: str
    title: str


async def _executor(repo=None, engine=ENGINE):
    repo = repo or InMemoryRunRepository()
    now = utcnow()
    run = WorkflowRun(
        workflow_name="test", started_at=now, timeout_at=now + timedelta(minutes=5)
    )
    await repo.create_run(run)
    return StepExecutor(run, repo, engine), repo


@pytest.mark.asyncio
async def test_step_executes_once_and_replays_checkpoint():
    step, repo = await _executor()
    calls = []

    async def body():
        calls.append(1)
        return {"title": "Hello", "count": 3}

    first = await step("fetch-title", body)
    second = await step("fetch-title", body)

    assert calls == [1]
    assert first == second == {"title": "Hello", "count": 3}
    records = await repo.list_steps(step.run_id)
    assert [r.step_name for r in records] == ["fetch-title"]


@pytest.mark.asyncio
async def test_replay_after_restart_uses_stored_result():
    repo = InMemoryRunRepository()
    step, _ = await _executor(repo)
    await step("fetch-title", lambda: "first")

    resumed = StepExecutor(step.run, repo, ENGINE)

    def never():
        raise AssertionError("completed step must not run again")

    assert await resumed("fetch-title", never) == "first"


@pytest.mark.asyncio
async def test_fresh_and_replayed_results_are_identical():
    step, repo = await _executor()

    fresh = await step("page", lambda: Page(url="https://a.example", title="A"))
    replayed = await StepExecutor(step.run, repo, ENGINE)("page", lambda: None)

    assert fresh == replayed == {"url": "https://a.example", "title": "A"}


@pytest.mark.asyncio
async def test_result_type_validates_checkpoint():
    step, repo = await _executor()

    page = await step(
        "page", lambda: Page(url="https://a.example", title="A"), result_type=Page
    )
    again = await StepExecutor(step.run, repo, ENGINE)(
        "page", lambda: None, result_type=Page
    )
    assert isinstance(page, Page)
    assert page == again


@pytest.mark.asyncio
async def test_sync_bodies_are_supported():
    step, _ = await _executor()
    assert await step("validate", lambda: [1, 2, 3]) == [1, 2, 3]


@pytest.mark.asyncio
async def test_step_retries_until_success():
    step, repo = await _executor()
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("transient")
        return "ok"

    assert await step("flaky", flaky, max_attempts=3) == "ok"
    record = await repo.get_step(step.run_id, "flaky")
    assert record.attempts == 3


@pytest.mark.asyncio
async def test_failed_step_is_not_checkpointed():
    step, repo = await _executor()
    attempts = []

    async def broken():
        attempts.append(1)
        raise ValueError("nope")

    with pytest.raises(ValueError):
        await step("broken", broken, max_attempts=2)
    assert len(attempts) == 2
    assert await repo.get_step(step.run_id, "broken") is None


@pytest.mark.asyncio
async def test_cancel_is_checked_before_step():
    step, repo = await _executor()
    await step("one", lambda: 1)
    await repo.request_cancel(step.run_id)

    with pytest.raises(RunCancelled):
        await step("two", lambda: 2)
    assert step.cancel_observed
    assert await repo.get_step(step.run_id, "two") is None


@pytest.mark.asyncio
async def test_closed_executor_refuses_steps():
    step, _ = await _executor()
    step.close()
    with pytest.raises(RunTerminated):
        await step("late", lambda: 1)


@pytest.mark.asyncio
async def test_empty_step_name_rejected():
    step, _ = await _executor()
    with pytest.raises(ValueError):
        await step("", lambda: 1)


@pytest.mark.asyncio
async def test_map_respects_concurrency_and_order():
    step, repo = await _executor()
    in_flight = 0
    peak = 0

    async def body(item, index):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        # Later items finish first.
        await asyncio.sleep(0.01 * (10 - index))
        in_flight -= 1
        return item * 10

    results = await step.map("square", list(range(10)), body, concurrency=3)

    assert results == [i * 10 for i in range(10)]
    assert peak == 3
    names = {r.step_name for r in await repo.list_steps(step.run_id)}
    assert names == {f"square[{i}]" for i in range(10)}


@pytest.mark.asyncio
async def test_map_partial_failure_leaves_none():
    step, repo = await _executor()
    attempts = {}

    async def body(item, index):
        attempts[index] = attempts.get(index, 0) + 1
        if item == "bad":
            raise RuntimeError("always fails")
        return item.upper()

    results = await step.map(
        "sections", ["a", "bad", "c"], body, max_attempts=2, concurrency=2
    )

    assert results == ["A", None, "C"]
    assert completed(results) == ["A", "C"]
    assert attempts == {0: 1, 1: 2, 2: 1}
    assert await repo.get_step(step.run_id, "sections[1]") is None


@pytest.mark.asyncio
async def test_map_uses_configured_defaults():
    engine = EngineConfig(retry_base_delay=0, map_concurrency=2, max_attempts=4)
    step, _ = await _executor(engine=engine)
    in_flight = 0
    peak = 0
    tries = []

    async def body(item, index):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        if index == 0:
            tries.append(1)
            raise RuntimeError("fail")
        return index

    results = await step.map("defaults", range(5), body)
    assert results == [None, 1, 2, 3, 4]
    assert peak == 2
    assert len(tries) == 4


@pytest.mark.asyncio
async def test_map_resume_reexecutes_only_missing_items():
    repo = InMemoryRunRepository()
    step, _ = await _executor(repo)
    executed = []
    fail_on = {"b"}

    async def body(item, index):
        executed.append(item)
        if item in fail_on:
            raise RuntimeError("down")
        return item

    first = await step.map("letters", ["a", "b", "c"], body, max_attempts=1)
    assert first == ["a", None, "c"]

    fail_on.clear()
    executed.clear()
    resumed = StepExecutor(step.run, repo, ENGINE)
    second = await resumed.map("letters", ["a", "b", "c"], body, max_attempts=1)

    assert second == ["a", "b", "c"]
    assert executed == ["b"]


@pytest.mark.asyncio
async def test_map_cancel_stops_remaining_items():
    step, repo = await _executor()
    started = []

    async def body(item, index):
        started.append(index)
        if index == 0:
            await repo.request_cancel(step.run_id)
        return index

    with pytest.raises(RunCancelled):
        await step.map("items", range(5), body, concurrency=1)
    assert started == [0]


@pytest.mark.asyncio
async def test_map_empty_items():
    step, _ = await _executor()
    assert await step.map("nothing", [], lambda item, index: item) == []


@pytest.mark.asyncio
async def test_map_rejects_invalid_concurrency():
    step, _ = await _executor()
    with pytest.raises(ValueError):
        await step.map("bad", [1], lambda item, index: item, concurrency=-1)


@pytest.mark.asyncio
async def test_map_cancel_lets_running_items_finish():
    step, repo = await _executor()
    finished = []

    async def body(item, index):
        if index == 0:
            await asyncio.sleep(0.2)
        elif index == 1:
            await repo.request_cancel(step.run_id)
        finished.append(index)
        return index

    with pytest.raises(RunCancelled):
        await step.map("items", range(3), body, concurrency=2)

    assert sorted(finished) == [0, 1]
    assert (await repo.get_step(step.run_id, "items[0]")).result == 0
    assert (await repo.get_step(step.run_id, "items[1]")).result == 1
    assert await repo.get_step(step.run_id, "items[2]") is None


@pytest.mark.asyncio
async def test_zero_concurrency_and_attempts_rejected():
    step, _ = await _executor()
    with pytest.raises(ValueError):
        await step.map("bad", [1], lambda item, index: item, concurrency=0)
    with pytest.raises(ValueError):
        await step.map("bad", [1], lambda item, index: item, max_attempts=0)
    with pytest.raises(ValueError):
        await step("bad", lambda: 1, max_attempts=0)
