"""Fixed-delay periodic tasks.

A cycle starts only after the previous one has finished and the delay
has elapsed, so cycles of one task never overlap.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from bitfleet.observability.logger import get_logger
from bitfleet.observability.metrics import metrics

log = get_logger(__name__)


class PeriodicTask:
    """Runs ``fn`` forever with a fixed delay between cycles.

    Cycle errors are logged and the next cycle runs as usual, except
    for the exception types in ``fatal``, which end the task and
    propagate to whoever awaits it.
    """

    def __init__(
        self,
        name: str,
        interval_secs: float,
        fn: Callable[[], Awaitable[Any]],
        fatal: tuple[type[BaseException], ...] = (),
    ):
        self.name = name
        self.interval_secs = interval_secs
        self.fn = fn
        self.fatal = fatal
        self.cycles = 0
        self.errors = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if not self.is_running:
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    async def run(self) -> None:
        log.info("scheduler.task_started", task=self.name, interval_secs=self.interval_secs)
        while not self._stop.is_set():
            start = time.monotonic()
            try:
                await self.fn()
            except self.fatal:
                raise
            except Exception as e:
                self.errors += 1
                metrics.incr("scheduler.cycle_error", task=self.name)
                log.error("scheduler.cycle_error", task=self.name, error=str(e),
                          error_type=type(e).__name__)
            self.cycles += 1
            metrics.histogram("scheduler.cycle_secs", time.monotonic() - start, task=self.name)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_secs)
            except asyncio.TimeoutError:
                pass
        log.info("scheduler.task_stopped", task=self.name, cycles=self.cycles)

    def stop(self) -> None:
        """Ask the task to stop after the current cycle."""
        self._stop.set()

    async def join(self) -> None:
        if self._task is not None:
            await self._task
