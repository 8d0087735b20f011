"""Time source and periodic task scheduling.

Every timer in the market maker goes through a ``Clock`` so tick logic can
be driven deterministically in tests.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now_ms(self) -> float: ...
    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time in milliseconds and ``asyncio.sleep``."""

    def now_ms(self) -> float:
        return time.time() * 1000.0

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class Scheduler:
    """Owns the periodic tasks started by one component.

    Each job sleeps ``interval_s`` between runs. Exceptions from a run are
    logged and passed to ``on_error`` (when given); the job keeps going.
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._tasks: dict[str, asyncio.Task] = {}

    def every(
        self,
        name: str,
        interval_s: float,
        fn: Callable[[], Awaitable[None]],
        *,
        run_immediately: bool = False,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> asyncio.Task:
        if name in self._tasks and not self._tasks[name].done():
            raise RuntimeError(f"Job {name} already scheduled")
        task = asyncio.create_task(
            self._run(name, interval_s, fn, run_immediately, on_error),
            name=name,
        )
        self._tasks[name] = task
        return task

    async def _run(
        self,
        name: str,
        interval_s: float,
        fn: Callable[[], Awaitable[None]],
        run_immediately: bool,
        on_error: Optional[Callable[[Exception], None]],
    ) -> None:
        first = True
        while True:
            try:
                if not (first and run_immediately):
                    await self._clock.sleep(interval_s)
                first = False
                await fn()
            except asyncio.CancelledError:
                return
            except Exception as exc:
                logger.error("Periodic job %s failed: %s", name, exc)
                if on_error is not None:
                    on_error(exc)

    @property
    def job_names(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
