"""Deferred execution on asyncio tasks.

A callback is enqueued only after the mutation that wanted it has
committed. Timers are never cancelled when a round ends early; the callback
re-reads state and drops itself when its deadline is no longer the active one.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from logger import get_logger
from store import now_ms

logger = get_logger("PromptQuiz.scheduler")

Callback = Callable[..., Awaitable[Any]]


class TaskScheduler:
    def __init__(self, clock: Callable[[], int] = now_ms, tick: float = 1.0):
        self.clock = clock
        # Longest single sleep; timers re-check the clock every tick
        self.tick = tick
        # task -> due time (epoch ms)
        self._tasks: dict[asyncio.Task, int] = {}

    def schedule_at(self, when_ms: int, callback: Callback, *args: Any) -> asyncio.Task:
        """Run ``callback(*args)`` at or after ``when_ms``."""
        delay = max(0, when_ms - self.clock()) / 1000
        task = asyncio.create_task(self._run(when_ms, callback, args))
        self._tasks[task] = when_ms
        task.add_done_callback(self._forget)
        logger.debug(f"⏲️ Scheduled {getattr(callback, '__name__', callback)} in {delay:.1f}s")
        return task

    def run_soon(self, callback: Callback, *args: Any) -> asyncio.Task:
        """Zero-delay deferral, used for "everyone answered" and AI generation"""
        return self.schedule_at(self.clock(), callback, *args)

    async def _run(self, when_ms: int, callback: Callback, args: tuple) -> None:
        remaining = when_ms - self.clock()
        while remaining > 0:
            await asyncio.sleep(min(remaining / 1000, self.tick))
            remaining = when_ms - self.clock()
        try:
            await callback(*args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ Deferred task {getattr(callback, '__name__', callback)} failed: {e}", exc_info=True)

    def _forget(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task already due, including ones they enqueue"""
        while True:
            now = self.clock()
            due = [t for t, when in self._tasks.items() if when <= now and not t.done()]
            if not due:
                return
            await asyncio.gather(*due, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
