"""Async utilities for fanning out blocking work."""

import asyncio
import concurrent.futures
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_with_concurrency(
    n: int,
    *coros: Awaitable[T],
) -> list[T]:
    """Run coroutines with limited concurrency.

    Args:
        n: Maximum number of concurrent coroutines
        *coros: Coroutines to run

    Returns:
        List of results in the same order as input
    """
    semaphore = asyncio.Semaphore(n)

    async def sem_coro(coro: Awaitable[T]) -> T:
        async with semaphore:
            return await coro

    return await asyncio.gather(*[sem_coro(coro) for coro in coros])


async def map_blocking(
    func: Callable[[T], R],
    items: Iterable[T],
    concurrency: int = 4,
) -> list[R]:
    """Apply a blocking function to items on a bounded thread pool.

    Args:
        func: Blocking function to apply
        items: Items to process
        concurrency: Maximum concurrent calls

    Returns:
        List of results in the same order as input
    """
    loop = asyncio.get_running_loop()
    concurrency = max(concurrency, 1)
    with concurrent.futures.ThreadPoolExecutor(max_workers=concurrency) as pool:
        return await gather_with_concurrency(
            concurrency,
            *[loop.run_in_executor(pool, func, item) for item in items],
        )


def run_sync(coro: Awaitable[T]) -> T:
    """Run an async function synchronously.

    This is useful for integrating async code with Click commands.

    Args:
        coro: Coroutine to run

    Returns:
        Result of the coroutine
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # Already inside an event loop: run on a fresh loop in a worker thread
        with concurrent.futures.ThreadPoolExecutor() as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    else:
        return asyncio.run(coro)


def run_interruptible(
    func: Callable[[], R],
    on_interrupt: Callable[[], None],
) -> R:
    """Run a blocking call in a worker thread, forwarding Ctrl-C.

    The first ``KeyboardInterrupt`` calls ``on_interrupt`` and keeps waiting
    so the call can wind down. A second interrupt propagates.

    Args:
        func: Blocking function to run
        on_interrupt: Called once when the caller is interrupted

    Returns:
        Result of ``func``
    """
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(func)
        try:
            return future.result()
        except KeyboardInterrupt:
            on_interrupt()
            return future.result()
