"""Checkpointed step execution for workflow handlers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from pydantic import TypeAdapter
from pydantic_core import to_jsonable_python

from .config import EngineConfig
from .exceptions import RunCancelled, RunInterrupted, RunTerminated
from .persistence import RunRepository, StepRecord, WorkflowRun
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")
ItemT = TypeVar("ItemT")

StepBody = Callable[[], Union[Awaitable[Any], Any]]
ItemBody = Callable[[Any, int], Union[Awaitable[Any], Any]]


def completed(results: Iterable[Optional[T]]) -> List[T]:
    """Drop the ``None`` placeholders ``StepExecutor.map`` leaves for failed items."""
    return [result for result in results if result is not None]


class StepExecutor:
    """Run named units of work at most once per run.

    ``await step(name, body)`` returns the checkpointed result when ``name``
    already completed in this run, otherwise calls ``body``, persists what it
    returns and hands it back. Results travel through JSON in both cases so a
    replayed step returns exactly what the first execution returned.
    """

    def __init__(
        self,
        run: WorkflowRun,
        repository: RunRepository,
        engine: EngineConfig | None = None,
    ) -> None:
        self.run = run
        self._repository = repository
        self._engine = engine or EngineConfig()
        self._cancel_requested = False
        self._closed = False
        self.cancel_observed = False

    @property
    def run_id(self) -> str:
        return self.run.run_id

    def request_cancel(self) -> None:
        """Flag the run as cancelled for in-process callers."""
        self._cancel_requested = True

    def close(self) -> None:
        """Refuse any further steps; called once the run is terminal."""
        self._closed = True

    # ------------------------------------------------------------------
    async def __call__(
        self,
        name: str,
        body: StepBody,
        *,
        max_attempts: int = 1,
        result_type: Any = None,
    ) -> Any:
        if not name:
            raise ValueError("Step name must be a non-empty string")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        await self._check_boundary(name)

        record = await self._repository.get_step(self.run_id, name)
        if record is not None:
            logger.debug(f"Replaying step {name} for run {self.run_id}")
            return self._decode(record.result, result_type)

        logger.info(f"Running step {name} for run {self.run_id}")
        value, attempts = await self._attempt(name, body, max_attempts)
        return await self._checkpoint(name, value, attempts, result_type)

    async def map(
        self,
        name: str,
        items: Sequence[ItemT],
        body: ItemBody,
        *,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        result_type: Any = None,
    ) -> List[Any]:
        """Run ``body(item, index)`` over ``items`` with bounded concurrency.

        Each item is its own checkpoint, ``"{name}[{index}]"``. Items that
        still fail after ``max_attempts`` come back as ``None`` in their slot
        and are not checkpointed, so a resumed run tries them again. The
        returned list is aligned with ``items``.
        """
        if not name:
            raise ValueError("Step name must be a non-empty string")
        items = list(items)
        if concurrency is None:
            concurrency = self._engine.map_concurrency
        if max_attempts is None:
            max_attempts = self._engine.max_attempts
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        semaphore = asyncio.Semaphore(concurrency)
        logger.info(
            f"Mapping step {name} over {len(items)} items for run {self.run_id} "
            f"(concurrency={concurrency}, max_attempts={max_attempts})"
        )

        async def run_item(index: int, item: Any) -> Any:
            item_name = f"{name}[{index}]"
            async with semaphore:
                await self._check_boundary(item_name)
                record = await self._repository.get_step(self.run_id, item_name)
                if record is not None:
                    logger.debug(f"Replaying step {item_name} for run {self.run_id}")
                    return self._decode(record.result, result_type)
                try:
                    value, attempts = await self._attempt(
                        item_name, lambda: body(item, index), max_attempts
                    )
                except RunInterrupted:
                    raise
                except Exception as exc:
                    logger.error(
                        f"Step {item_name} failed after {max_attempts} attempts "
                        f"for run {self.run_id}: {exc}"
                    )
                    return None
                return await self._checkpoint(item_name, value, attempts, result_type)

        tasks = [
            asyncio.ensure_future(run_item(index, item))
            for index, item in enumerate(items)
        ]
        try:
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        # Running items finish and checkpoint; unstarted ones stop at their boundary.
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            interrupted = [e for e in errors if isinstance(e, RunInterrupted)]
            raise (interrupted or errors)[0]
        results = outcomes

        failed = sum(1 for result in results if result is None)
        if failed:
            logger.warning(
                f"Step {name} finished with {failed}/{len(items)} failed items "
                f"for run {self.run_id}"
            )
        return list(results)

    # ------------------------------------------------------------------
    async def _check_boundary(self, name: str) -> None:
        if self._closed or self.run.is_terminal:
            raise RunTerminated(self.run_id, self.run.status)
        if self._cancel_requested or await self._repository.is_cancel_requested(
            self.run_id
        ):
            self._cancel_requested = True
            self.cancel_observed = True
            logger.info(f"Cancellation observed before step {name} of run {self.run_id}")
            raise RunCancelled(self.run_id)

    async def _attempt(
        self, name: str, body: StepBody, max_attempts: int
    ) -> Tuple[Any, int]:
        attempt = 1
        while True:
            try:
                value = body()
                if inspect.isawaitable(value):
                    value = await value
                return value, attempt
            except RunInterrupted:
                raise
            except Exception as exc:
                if attempt >= max_attempts:
                    raise
                logger.warning(
                    f"Step {name} attempt {attempt}/{max_attempts} failed "
                    f"for run {self.run_id}: {exc}"
                )
                await schedule_retry(
                    attempt,
                    base=self._engine.retry_base_delay,
                    jitter=self._engine.retry_jitter,
                    max_delay=self._engine.retry_max_delay,
                )
                attempt += 1

    async def _checkpoint(
        self, name: str, value: Any, attempts: int, result_type: Any
    ) -> Any:
        record = await self._repository.save_step(
            StepRecord(
                run_id=self.run_id,
                step_name=name,
                result=to_jsonable_python(value),
                attempts=attempts,
            )
        )
        return self._decode(record.result, result_type)

    @staticmethod
    def _decode(value: Any, result_type: Any) -> Any:
        if result_type is None:
            return value
        return TypeAdapter(result_type).validate_python(value)
