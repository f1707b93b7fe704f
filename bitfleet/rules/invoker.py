"""Serialized rule invoker.

One FIFO queue and one worker per process: every rule batch, whoever
triggered it, runs to completion before the next one starts. Actions
read proposal and pending-order state before writing proposals, so two
overlapping batches could both propose against the same empty store.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from bitfleet.observability.logger import get_logger
from bitfleet.observability.metrics import metrics
from bitfleet.rules.engine import CompiledRule, RuleContext, RuleEvaluator

log = get_logger(__name__)


@dataclass
class _Task:
    ctx: RuleContext
    rules: list[CompiledRule]
    label: str
    done: asyncio.Future


class RuleInvoker:
    def __init__(self, evaluator: RuleEvaluator | None = None):
        self.evaluator = evaluator or RuleEvaluator()
        self._queue: asyncio.Queue[_Task | None] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self.completed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="rule-invoker")

    async def submit(self, ctx: RuleContext, rules: list[CompiledRule], label: str = "") -> None:
        """Queue a batch and wait until it has run.

        Returns normally even when the batch failed; the failure is
        logged by the worker.
        """
        if not rules:
            return
        self._ensure_worker()
        done = asyncio.get_running_loop().create_future()
        await self._queue.put(_Task(ctx=ctx, rules=rules, label=label, done=done))
        metrics.gauge("invoker.queue_depth", self._queue.qsize())
        # The batch keeps running if this waiter is cancelled.
        await asyncio.shield(done)

    async def _run(self) -> None:
        while True:
            task = await self._queue.get()
            if task is None:
                self._queue.task_done()
                return
            try:
                await self.evaluator.evaluate(task.ctx, task.rules)
                self.completed += 1
            except Exception as e:
                self.failed += 1
                metrics.incr("invoker.task_failed")
                log.error(
                    "invoker.task_failed",
                    label=task.label, error=str(e), error_type=type(e).__name__,
                    **task.ctx.to_dict(),
                )
            finally:
                if not task.done.done():
                    task.done.set_result(None)
                self._queue.task_done()

    async def stop(self) -> None:
        """Let queued batches finish, then stop the worker."""
        if self._worker is None or self._worker.done():
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None
