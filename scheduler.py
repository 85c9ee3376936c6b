"""
scheduler.py
============
Where update coroutines run.

Two implementations behind one interface:
  - ``AsyncioScheduler``  – an event loop is already running (the caller is
                            async); tasks are created on that loop
  - ``ThreadedScheduler`` – no loop is running (CLI, plain threads); a
                            private loop runs in a daemon thread

``select_scheduler()`` picks one at startup and the updater keeps it.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Interface for running coroutines and periodic jobs."""

    def submit(self, coro: Awaitable[Any]) -> "concurrent.futures.Future | asyncio.Future":
        raise NotImplementedError

    def run_every(self, interval: float, fn: Callable[[], Awaitable[Any]]) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        pass

    @staticmethod
    def _log_failure(future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc, exc_info=exc)

    @staticmethod
    async def _repeat(interval: float, fn: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Scheduled run failed: %s", exc, exc_info=True)


# ──────────────────────────────────────────────
#  Running loop
# ──────────────────────────────────────────────

class AsyncioScheduler(TaskScheduler):
    """Schedules onto an event loop that the caller already runs."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.loop = loop or asyncio.get_running_loop()
        self._tasks: Set[asyncio.Future] = set()

    def _track(self, task: asyncio.Future) -> asyncio.Future:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(self._log_failure)
        return task

    def submit(self, coro: Awaitable[Any]) -> asyncio.Future:
        return self._track(asyncio.ensure_future(coro, loop=self.loop))

    def run_every(self, interval: float, fn: Callable[[], Awaitable[Any]]) -> None:
        self._track(asyncio.ensure_future(self._repeat(interval, fn), loop=self.loop))

    def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()


# ──────────────────────────────────────────────
#  Background thread
# ──────────────────────────────────────────────

class ThreadedScheduler(TaskScheduler):
    """Owns an event loop running in a daemon thread."""

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="update-scheduler",
        )
        self._thread.start()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def submit(self, coro: Awaitable[Any]) -> concurrent.futures.Future:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(self._log_failure)
        return future

    def run_every(self, interval: float, fn: Callable[[], Awaitable[Any]]) -> None:
        self.submit(self._repeat(interval, fn))

    def shutdown(self) -> None:
        if self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        if not self._thread.is_alive():
            self.loop.close()


def select_scheduler() -> TaskScheduler:
    """Pick the scheduler for the current context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running event loop, using a background thread")
        return ThreadedScheduler()
    logger.debug("Using the running event loop")
    return AsyncioScheduler(loop)
