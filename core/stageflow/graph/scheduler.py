"""
Sequential scheduling for node execution.

Nodes inside a stage are independent as far as the plan is concerned, but
they still run one at a time: the scheduler is a FIFO task queue drained by a
single consumer. A pacing policy inserts a fixed pause after every completed
task, which spaces out requests to rate-limited backends.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class PacingPolicy:
    """Pause inserted after each completed node. 0 disables pacing."""

    delay_seconds: float = 0.3

    async def pause(self) -> None:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)


class SequentialScheduler:
    """
    Runs queued node tasks strictly one after another.

    Example:
        scheduler = SequentialScheduler(PacingPolicy(delay_seconds=0))
        scheduler.enqueue(["a", "b"])
        await scheduler.drain(run_node, should_stop=cancel_event.is_set)
    """

    def __init__(self, pacing: PacingPolicy | None = None):
        self.pacing = pacing or PacingPolicy()
        self._queue: deque[str] = deque()
        self._running = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_running(self) -> bool:
        return self._running

    def enqueue(self, node_ids: Iterable[str]) -> None:
        self._queue.extend(node_ids)

    def clear(self) -> None:
        self._queue.clear()

    async def drain(
        self,
        handler: Callable[[str], Awaitable[bool]],
        should_stop: Callable[[], bool] = lambda: False,
    ) -> list[str]:
        """Pop and run tasks until the queue is empty, stopped, or a task fails.

        ``handler`` returns True when the node completed (pacing applies),
        False when it was skipped. Exceptions from the handler propagate and
        leave the remaining tasks in the queue.

        Returns the ids that were handed to ``handler``.
        """
        if self._running:
            raise RuntimeError("Scheduler is already draining")
        self._running = True
        handled: list[str] = []
        try:
            while self._queue:
                if should_stop():
                    logger.info(f"⏹ Stop requested, {len(self._queue)} queued nodes left")
                    break
                node_id = self._queue.popleft()
                handled.append(node_id)
                completed = await handler(node_id)
                if completed:
                    await self.pacing.pause()
        finally:
            self._running = False
        return handled
