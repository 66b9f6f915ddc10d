from __future__ import annotations

import asyncio
import random


def compute_backoff(
    attempt: int,
    base: float = 0.5,
    jitter: float = 0.1,
    max_delay: float = 30.0,
) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` is 1 for the first retry. A ``base`` of zero disables waiting.
    """
    if base <= 0:
        return 0.0
    delay = min(base * 2 ** (attempt - 1), max_delay)
    return delay + random.uniform(0, jitter)


async def schedule_retry(
    attempt: int, base: float = 0.5, jitter: float = 0.1, max_delay: float = 30.0
) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter, max_delay=max_delay)
    if delay:
        await asyncio.sleep(delay)
