"""Three-step workflow: fetch a page title, summarize it, finalize.

Run it twice against the same SQLite file and interrupt the first run with
Ctrl+C after "fetch-title" completes; the second run resumes from the
checkpoint instead of fetching again.
"""

import asyncio
import sys

from pydantic import BaseModel

from stepstone import Workflow, WorkflowRunner, get_repository
from stepstone.logging import configure_logging
from stepstone.progress import InMemoryActivityLog, InMemoryProgressStore


class PageInput(BaseModel):
    url: str
    job_id: str


class PageSummary(BaseModel):
    title: str
    summary: str


async def fetch_title(url: str) -> str:
    # Stand-in for an HTTP call.
    await asyncio.sleep(0.5)
    return f"Title of {url}"


async def summarize(title: str) -> str:
    # Stand-in for a model call.
    await asyncio.sleep(2)
    return f"A short summary of '{title}'."


async def summarize_page(ctx) -> PageSummary:
    progress = ctx.progress
    title = await ctx.step("fetch-title", lambda: fetch_title(ctx.input.url))
    await progress.update(title=title, progress=30)

    summary = await ctx.step("summarize", lambda: summarize(title), max_attempts=3)
    await progress.update(summary=summary, progress=80)

    async def finalize():
        await progress.update(status="done", progress=100, result={"title": title})
        return {"title": title, "summary": summary}

    return await ctx.step("finalize", finalize)


workflow = Workflow(
    name="summarize-page",
    input_model=PageInput,
    output_model=PageSummary,
    handler=summarize_page,
    timeout=300,
    job_id="job_id",
)


async def main():
    configure_logging("INFO")
    repository = get_repository("sqlite://summarize-page.db")
    runner = WorkflowRunner(
        repository,
        progress_store=InMemoryProgressStore(),
        activity_log=InMemoryActivityLog(),
    )
    runner.register(workflow)

    pending = await runner.resume_pending()
    if pending:
        print(f"Resuming {len(pending)} unfinished run(s)")
        for handle in pending:
            run = await handle.result()
            print(f"{run.run_id}: {run.status} {run.output}")
        return

    url = sys.argv[1] if len(sys.argv) > 1 else "https://example.com"
    run = await runner.run(workflow, {"url": url, "job_id": "job-summarize"})
    print(f"{run.run_id}: {run.status} {run.output}")


if __name__ == "__main__":
    asyncio.run(main())
