"""
Generic bounded-concurrency batch executor.

Items are processed in sequential windows of ``concurrency_limit``; each
window runs in parallel under ``asyncio.gather``. A worker that raises is
logged and left out of the results, so one bad item never aborts the batch.

Cancellation is cooperative: a StopToken is checked before each worker
starts. A window already dispatched runs to completion.

Usage:
    runner = ConcurrentTaskRunner()
    token = StopToken()
    results = await runner.run(pages, 3, process_page, stop_token=token)
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger("task_runner")

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_WINDOW_PAUSE = 0.05

_SKIPPED = object()


def _run_sync(coro):
    """Run an async coroutine synchronously."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # Already inside a running loop; run on a fresh loop in a worker thread.
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    return asyncio.run(coro)


class StopToken:
    """Advisory cancellation flag shared between a caller and its workers."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def stop(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def stopped(self) -> bool:
        return self._event.is_set()


class ConcurrentTaskRunner:
    """
    Windowed parallel executor.

    Parameters
    ----------
    window_pause : float
        Seconds to sleep between windows so a remote host is not saturated.
    """

    def __init__(self, window_pause: float = DEFAULT_WINDOW_PAUSE) -> None:
        self.window_pause = window_pause

    async def run(
        self,
        items: Sequence[T],
        concurrency_limit: int,
        worker: Callable[[T], Awaitable[R]],
        stop_token: Optional[StopToken] = None,
    ) -> List[R]:
        """
        Apply *worker* to every item, at most *concurrency_limit* at a time.

        Returns
        -------
        list
            Results of the workers that completed without raising, window by
            window. Order within a window follows the input order.
        """
        limit = max(1, int(concurrency_limit))
        results: List[R] = []
        total = len(items)

        for start in range(0, total, limit):
            if stop_token is not None and stop_token.stopped:
                logger.info("Stop requested, %d of %d items not dispatched", total - start, total)
                break

            window = items[start:start + limit]
            logger.debug("Dispatching items %d-%d of %d", start + 1, start + len(window), total)
            outcomes = await asyncio.gather(*(self._invoke(worker, item, stop_token) for item in window))
            results.extend(o for o in outcomes if o is not _SKIPPED)

            if start + limit < total and self.window_pause > 0:
                await asyncio.sleep(self.window_pause)

        return results

    def run_sync(self, items: Sequence[T], concurrency_limit: int, worker, stop_token=None) -> List[R]:
        """Synchronous wrapper for run()."""
        return _run_sync(self.run(items, concurrency_limit, worker, stop_token))

    @staticmethod
    async def _invoke(worker: Callable[[T], Awaitable[R]], item: T, stop_token: Optional[StopToken]) -> Any:
        if stop_token is not None and stop_token.stopped:
            return _SKIPPED
        try:
            return await worker(item)
        except Exception as exc:
            logger.error("Worker failed for %r: %s", item, exc, exc_info=logger.isEnabledFor(logging.DEBUG))
            return _SKIPPED
