import asyncio

import pytest

from stepstone.utils import compute_backoff, schedule_retry


def test_backoff_grows_exponentially_and_caps():
    assert compute_backoff(1, base=0.5, jitter=0) == 0.5
    assert compute_backoff(2, base=0.5, jitter=0) == 1.0
    assert compute_backoff(3, base=0.5, jitter=0) == 2.0
    assert compute_backoff(10, base=0.5, jitter=0, max_delay=5) == 5


def test_backoff_adds_bounded_jitter():
    for _ in range(20):
        delay = compute_backoff(1, base=1.0, jitter=0.25)
        assert 1.0 <= delay <= 1.25


def test_zero_base_disables_backoff():
    assert compute_backoff(4, base=0, jitter=1.0) == 0.0


@pytest.mark.asyncio
async def test_schedule_retry_skips_sleep_without_delay(monkeypatch):
    calls = []

    async def fake_sleep(delay):
        calls.append(delay)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    await schedule_retry(1, base=0)
    await schedule_retry(2, base=0.5, jitter=0)
    assert calls == [1.0]
