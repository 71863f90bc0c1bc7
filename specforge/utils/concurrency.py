"""Bounded-concurrency execution of independent async tasks.

Used for reviewer fan-out: at most `limit` calls in flight, each outcome
reported independently, results in submission order.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

T = TypeVar("T")

DEFAULT_LIMIT = 5


@dataclass
class Outcome(Generic[T]):
    """Result of one task: either `value` or `error` is meaningful."""

    key: str
    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Task(Generic[T]):
    key: str
    run: Callable[[], Awaitable[T]]


async def run_bounded(
    tasks: Sequence[Task[T]],
    limit: int = DEFAULT_LIMIT,
    on_start: Callable[[str], Any] | None = None,
    on_complete: Callable[[Outcome[T]], Any] | None = None,
) -> list[Outcome[T]]:
    """Run `tasks` with at most `limit` in flight.

    Queue order is submission order; a queued task starts as soon as a
    running one resolves. A failing task never cancels the others. Returns
    one Outcome per task, in submission order, once all have resolved.
    `on_start`/`on_complete` may be plain functions or coroutine functions.
    Cancelling the caller cancels every in-flight task.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")

    semaphore = asyncio.Semaphore(limit)

    async def _notify(callback, arg) -> None:
        if callback is None:
            return
        result = callback(arg)
        if asyncio.iscoroutine(result):
            await result

    async def _run(task: Task[T]) -> Outcome[T]:
        async with semaphore:
            await _notify(on_start, task.key)
            try:
                outcome = Outcome(key=task.key, value=await task.run())
            except Exception as exc:
                outcome = Outcome(key=task.key, error=exc)
            await _notify(on_complete, outcome)
            return outcome

    # asyncio.Semaphore wakes waiters in FIFO order and tasks are created in
    # submission order, so the queue order matches the input order.
    futures = [asyncio.ensure_future(_run(task)) for task in tasks]
    try:
        return list(await asyncio.gather(*futures))
    except BaseException:
        for future in futures:
            future.cancel()
        await asyncio.gather(*futures, return_exceptions=True)
        raise
