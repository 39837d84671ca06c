# tests/test_concurrency.py
import asyncio

import pytest

from caloric.concurrency import run_with_concurrency


def test_results_keep_submission_order():
    async def make(i, delay):
        await asyncio.sleep(delay)
        return i

    delays = [0.05, 0.04, 0.03, 0.02, 0.01]
    tasks = [lambda i=i, d=d: make(i, d) for i, d in enumerate(delays)]
    assert asyncio.run(run_with_concurrency(tasks, 5)) == [0, 1, 2, 3, 4]


def test_in_flight_never_exceeds_limit():
    in_flight = 0
    peak = 0

    async def task():
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return True

    results = asyncio.run(run_with_concurrency([task] * 9, 3))
    assert results == [True] * 9
    assert peak == 3


def test_each_task_runs_once():
    calls = []

    def factory(i):
        async def run():
            calls.append(i)
            await asyncio.sleep(0)
            return i * 10
        return run

    results = asyncio.run(run_with_concurrency([factory(i) for i in range(7)], 4))
    assert results == [0, 10, 20, 30, 40, 50, 60]
    assert sorted(calls) == list(range(7))


def test_empty_and_zero_concurrency():
    assert asyncio.run(run_with_concurrency([], 10)) == []

    async def one():
        return 1

    # a non-positive limit still runs with one worker
    assert asyncio.run(run_with_concurrency([one, one], 0)) == [1, 1]


def test_uncaught_task_error_rejects_runner():
    async def ok():
        await asyncio.sleep(0.01)
        return "ok"

    async def bad():
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        asyncio.run(run_with_concurrency([ok, bad, ok], 2))
