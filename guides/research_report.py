"""Fan-out example: research report sections in parallel with progress.

The search and writing calls are fakes; one section always fails to show how
``step.map`` leaves a ``None`` in its slot while the others carry on. A
second terminal can follow along with ``stepstone job watch research-1``
when the progress backend is shared (sqlite or redis).
"""

import asyncio
import random

from pydantic import BaseModel

from stepstone import (
    NoResultsError,
    ProgressPoller,
    Workflow,
    WorkflowRunner,
    completed,
    get_activity_log,
    get_progress_store,
)
from stepstone.logging import configure_logging
from stepstone.persistence import InMemoryRunRepository


class ResearchInput(BaseModel):
    topic: str
    job_id: str


class Report(BaseModel):
    title: str
    sections: list[str]
    summary: str


async def fake_search(query: str) -> list[dict]:
    await asyncio.sleep(random.uniform(0.1, 0.4))
    slug = query.lower().replace(" ", "-")
    return [
        {"url": f"https://example.com/{slug}/{i}", "title": f"{query} #{i}"}
        for i in range(2)
    ]


async def fake_write(heading: str, sources: list[dict]) -> str:
    await asyncio.sleep(random.uniform(0.2, 0.6))
    if "pitfalls" in heading.lower():
        raise RuntimeError("writer unavailable")
    return f"## {heading}\n\nBased on {len(sources)} sources."


async def research(ctx) -> Report:
    progress = ctx.progress
    topic = ctx.input.topic
    await progress.update(title=f"Researching {topic}", topic=topic)

    async def surface():
        activity = await progress.add_activity("search", f"Searching {topic}")
        results = await fake_search(topic)
        await progress.update_activity(activity, status="done")
        await progress.update(sources=results, progress=10)
        return results

    await ctx.step("surface-research", surface, max_attempts=3)

    headings = await ctx.step(
        "generate-toc",
        lambda: [f"{topic}: history", f"{topic}: practice", f"{topic}: pitfalls"],
    )
    await progress.update(progress=20)

    async def write_section(heading: str, index: int) -> str:
        activity = await progress.add_activity("search", f"Researching {heading}")
        sources = await fake_search(heading)
        await progress.update(sources=sources)
        await progress.update_activity(activity, status="done")

        compose = await progress.add_activity("compose", f"Writing {heading}")
        try:
            text = await fake_write(heading, sources)
        except Exception:
            await progress.update_activity(compose, status="error")
            raise
        await progress.update_activity(compose, status="done")
        await progress.update(progress=20 + 20 * (index + 1))
        return text

    sections = completed(
        await ctx.step.map(
            "research-section", headings, write_section, concurrency=2, max_attempts=2
        )
    )
    if not sections:
        raise NoResultsError("No valid research sections")

    summary = await ctx.step(
        "generate-summary", lambda: f"{len(sections)} sections about {topic}."
    )

    async def finalize():
        await progress.update(status="done", progress=100, summary=summary)
        return {"title": f"Report on {topic}", "sections": sections, "summary": summary}

    return await ctx.step("finalize", finalize)


workflow = Workflow(
    name="research-report",
    input_model=ResearchInput,
    output_model=Report,
    handler=research,
    timeout=600,
    job_id="job_id",
)


async def main():
    configure_logging("INFO")
    store = get_progress_store()
    activities = get_activity_log()
    runner = WorkflowRunner(
        InMemoryRunRepository(), progress_store=store, activity_log=activities
    )

    handle = await runner.start(workflow, {"topic": "Sourdough", "job_id": "research-1"})
    poller = ProgressPoller(store, activities, interval=0.5)
    async for view in poller.poll("research-1"):
        if view.snapshot:
            print(f"{view.snapshot.status} {view.snapshot.progress}%")

    run = await handle.result()
    print(f"Run {run.run_id}: {run.status}")
    for section in (run.output or {}).get("sections", []):
        print(section)


if __name__ == "__main__":
    asyncio.run(main())
