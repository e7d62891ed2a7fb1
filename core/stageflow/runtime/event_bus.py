"""
Event Bus - Pub/sub status sink for workflow runs.

The coordinator publishes every run status change here. UI layers, CLIs and
tests subscribe to the event types they care about, optionally filtered to
one run or one node. Handler failures are logged and never reach the run.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class ExecutionEventType(StrEnum):
    """Status changes a run can publish."""

    STARTED = "started"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"
    CYCLE_DETECTED = "cycle_detected"
    FINISHED = "finished"
    FAILED = "failed"
    STOPPED = "stopped"
    RESET = "reset"


@dataclass
class ExecutionEvent:
    """One status change of a run. ``node_id`` is None for run-level events."""

    type: ExecutionEventType
    run_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": str(self.type),
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[ExecutionEvent], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    event_types: set[ExecutionEventType]
    handler: EventHandler
    filter_run: str | None = None
    filter_node: str | None = None

    def matches(self, event: ExecutionEvent) -> bool:
        if event.type not in self.event_types:
            return False
        if self.filter_run and event.run_id != self.filter_run:
            return False
        if self.filter_node and event.node_id != self.filter_node:
            return False
        return True


class EventBus:
    """
    Status sink for runs: the coordinator publishes, observers subscribe.

    Example:
        bus = EventBus()

        async def show(event: ExecutionEvent):
            print(event.type, event.node_id)

        bus.subscribe([ExecutionEventType.COMPLETED, ExecutionEventType.ERROR], show)
        coordinator = ExecutionCoordinator(backend, event_bus=bus)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        """
        Args:
            max_history: Number of past events kept for get_history()
            max_concurrent_handlers: Handlers allowed to run at the same time
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._history: list[ExecutionEvent] = []
        self._max_history = max_history
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)
        self._history_lock = asyncio.Lock()
        self._next_sub = 0

    def subscribe(
        self,
        event_types: list[ExecutionEventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """Register an async handler and return its subscription id.

        ``filter_run`` and ``filter_node`` narrow delivery to one run or one
        node when set.
        """
        self._next_sub += 1
        sub_id = f"sub_{self._next_sub}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"{sub_id} listening for {[str(t) for t in event_types]}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns False if the id is unknown."""
        removed = self._subscriptions.pop(subscription_id, None)
        if removed is not None:
            logger.debug(f"{subscription_id} removed")
        return removed is not None

    async def publish(self, event: ExecutionEvent) -> None:
        """Record the event and await every matching handler."""
        async with self._history_lock:
            self._history.append(event)
            if self._max_history > 0:
                del self._history[: -self._max_history]
            else:
                self._history.clear()

        handlers = [s.handler for s in self._subscriptions.values() if s.matches(event)]
        if handlers:
            await asyncio.gather(*(self._deliver(event, h) for h in handlers))

    async def _deliver(self, event: ExecutionEvent, handler: EventHandler) -> None:
        async with self._handler_slots:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"✗ Event handler failed on {event.type}: {e}")

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(self, run_id: str, total_nodes: int, total_stages: int) -> None:
        await self.publish(
            ExecutionEvent(
                type=ExecutionEventType.STARTED,
                run_id=run_id,
                data={"total_nodes": total_nodes, "total_stages": total_stages},
            )
        )

    async def emit_node_executing(self, run_id: str, node_id: str, stage: str) -> None:
        await self.publish(
            ExecutionEvent(
                type=ExecutionEventType.EXECUTING,
                run_id=run_id,
                node_id=node_id,
                data={"stage": stage},
            )
        )

    async def emit_node_completed(self, run_id: str, node_id: str, result: Any) -> None:
        await self.publish(
            ExecutionEvent(
                type=ExecutionEventType.COMPLETED,
                run_id=run_id,
                node_id=node_id,
                data={"result": result},
            )
        )

    async def emit_node_error(self, run_id: str, node_id: str, error: str) -> None:
        await self.publish(
            ExecutionEvent(
                type=ExecutionEventType.ERROR,
                run_id=run_id,
                node_id=node_id,
                data={"error": error},
            )
        )

    async def emit_node_skipped(self, run_id: str, node_id: str, error: str, reason: str) -> None:
        await self.publish(
            ExecutionEvent(
                type=ExecutionEventType.SKIPPED,
                run_id=run_id,
                node_id=node_id,
                data={"error": error, "reason": reason},
            )
        )

    async def emit_cycle_detected(self, run_id: str, error: str, cycle_path: list[str]) -> None:
        await self.publish(
            ExecutionEvent(
                type=ExecutionEventType.CYCLE_DETECTED,
                run_id=run_id,
                data={"error": error, "cyclePath": list(cycle_path)},
            )
        )

    async def emit_run_finished(self, run_id: str, executed: int) -> None:
        await self.publish(
            ExecutionEvent(
                type=ExecutionEventType.FINISHED,
                run_id=run_id,
                data={"executed": executed},
            )
        )

    async def emit_run_failed(self, run_id: str, error: str) -> None:
        await self.publish(
            ExecutionEvent(
                type=ExecutionEventType.FAILED,
                run_id=run_id,
                data={"error": error},
            )
        )

    async def emit_run_stopped(self, run_id: str | None) -> None:
        await self.publish(ExecutionEvent(type=ExecutionEventType.STOPPED, run_id=run_id))

    async def emit_run_reset(self) -> None:
        await self.publish(ExecutionEvent(type=ExecutionEventType.RESET))

    # === QUERY METHODS ===

    def get_history(
        self,
        event_type: ExecutionEventType | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[ExecutionEvent]:
        """Past events, most recent first, optionally filtered by type and run."""
        events = [
            e
            for e in reversed(self._history)
            if (event_type is None or e.type == event_type)
            and (run_id is None or e.run_id == run_id)
        ]
        return events[:limit]

    def get_stats(self) -> dict:
        counts = Counter(str(e.type) for e in self._history)
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(counts),
        }

    async def wait_for(
        self,
        event_type: ExecutionEventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionEvent | None:
        """Wait for the next matching event. Returns None on timeout."""
        future: asyncio.Future[ExecutionEvent] = asyncio.get_running_loop().create_future()

        async def capture(event: ExecutionEvent) -> None:
            if not future.done():
                future.set_result(event)

        sub_id = self.subscribe([event_type], capture, filter_run=run_id, filter_node=node_id)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
