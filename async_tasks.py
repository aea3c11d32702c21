"""Bounded fan-out and fixed-delay retry helpers."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")

# max_retries value meaning "never give up".
RETRY_FOREVER = None

DEFAULT_RETRY_DELAY_S = 0.4


async def run_with_concurrency(
    tasks: Sequence[Callable[[], Awaitable[T]]],
    limit: int,
) -> List[Optional[T]]:
    """Run zero-argument coroutine factories with at most ``limit`` in flight.

    The returned list lines up with ``tasks`` by position. A task that raises
    leaves ``None`` in its slot; it never stops the other tasks and never
    makes this call raise.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")

    results: List[Optional[T]] = [None] * len(tasks)
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < len(tasks):
            # Claim and advance before awaiting: no index is handed out twice.
            i = next_index
            next_index += 1
            try:
                results[i] = await tasks[i]()
            except Exception as exc:
                print(f"[tasks] task {i} failed: {exc}")
                results[i] = None

    workers = [worker() for _ in range(min(limit, len(tasks)))]
    await asyncio.gather(*workers)
    return results


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: Optional[int],
    delay_s: float = DEFAULT_RETRY_DELAY_S,
    *,
    label: str = "retry",
) -> T:
    """Call ``fn`` until it succeeds, sleeping ``delay_s`` between attempts.

    ``max_retries`` counts retries after the first attempt, so ``3`` allows
    four calls in total. ``RETRY_FOREVER`` retries without limit. When the
    retries run out the last exception is re-raised.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            attempt += 1
            if max_retries is not RETRY_FOREVER and attempt > max_retries:
                raise
            print(f"[{label}] attempt {attempt} failed: {exc}; retrying in {delay_s:.2f}s")
            await asyncio.sleep(delay_s)


__all__ = ["RETRY_FOREVER", "DEFAULT_RETRY_DELAY_S", "run_with_concurrency", "with_retry"]
