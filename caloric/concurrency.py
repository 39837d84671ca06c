# caloric/concurrency.py
import asyncio
from typing import Awaitable, Callable, List, Sequence, TypeVar

T = TypeVar("T")


async def run_with_concurrency(tasks: Sequence[Callable[[], Awaitable[T]]], concurrency: int) -> List[T]:
    """
    Run task factories with at most `concurrency` in flight.

    Workers share a cursor and claim the next index before starting that task,
    so no index is claimed twice. Results land at their submission index.
    The first uncaught task exception cancels the remaining workers and is raised.
    """
    results: List[T] = [None] * len(tasks)  # type: ignore[list-item]
    if not tasks:
        return results

    cursor = 0

    async def worker():
        nonlocal cursor
        while cursor < len(tasks):
            current = cursor
            cursor += 1
            results[current] = await tasks[current]()

    workers = [asyncio.ensure_future(worker()) for _ in range(min(max(1, concurrency), len(tasks)))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for w in workers:
            w.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise
    return results
