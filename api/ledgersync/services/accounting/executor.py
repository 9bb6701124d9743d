"""Bounded-concurrency runner for provider calls.

Second, finer-grained limiter under the pre-spread job delay: at most
``max_concurrent`` calls in flight, and call starts at least
``call_delay_ms`` apart.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def run_with_concurrency(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    *,
    max_concurrent: int,
    call_delay_ms: int = 0,
    on_progress: Callable[[int, int], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[R]:
    """Run ``fn`` over ``items`` and return results in input order.

    ``fn`` is expected to report its own failures in its return value; an
    exception escaping it cancels nothing but is re-raised once every item
    has finished.
    """
    if not items:
        return []

    loop = asyncio.get_running_loop()
    semaphore = asyncio.Semaphore(max(1, max_concurrent))
    start_lock = asyncio.Lock()
    delay = call_delay_ms / 1000
    last_start: float | None = None
    completed = 0
    total = len(items)

    async def _run(item: T) -> R:
        nonlocal last_start, completed
        async with semaphore:
            async with start_lock:
                now = loop.time()
                if last_start is not None and delay > 0:
                    wait = last_start + delay - now
                    if wait > 0:
                        await sleep(wait)
                        now += wait
                last_start = now
            try:
                return await fn(item)
            finally:
                completed += 1
                if on_progress is not None:
                    on_progress(completed, total)

    results = await asyncio.gather(*(_run(item) for item in items), return_exceptions=True)

    for result in results:
        if isinstance(result, BaseException):
            logger.error("Concurrent task failed: %s", result)
            raise result
    return results
