"""
Tracer - Timed spans around node executions within a run.

Each run owns one Tracer (through its RunContext). Span ids are
``span_<n>`` with a per-tracer counter, and nested spans are prefixed with
their parent's id (``span_1.span_2``), so ids are unique and sortable within
a run without any randomness.
"""

import itertools
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from stageflow.observability import sanitize_meta

logger = logging.getLogger(__name__)


class SpanStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Span(BaseModel):
    """One timed operation."""

    span_id: str
    parent_span_id: str | None = None
    run_id: str
    node_id: str | None = None
    operation: str
    start_time: float = Field(description="Epoch milliseconds")
    end_time: float | None = None
    duration_ms: float | None = None
    status: SpanStatus = SpanStatus.RUNNING
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class NodeTiming(BaseModel):
    count: int = 0
    total_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0


class TraceSummary(BaseModel):
    """Aggregate view over every span of a run."""

    total_spans: int = 0
    completed_spans: int = 0
    failed_spans: int = 0
    active_spans: int = 0
    total_duration_ms: float = 0.0
    average_duration_ms: float = 0.0
    nodes: dict[str, NodeTiming] = Field(default_factory=dict)


class Tracer:
    """
    Records spans for a single run.

    Example:
        tracer = Tracer(run_id="run_1")
        async with tracer.span("execute-script-generator", node_id="script-1"):
            await backend.execute(request)
        tracer.summary().completed_spans  # 1
    """

    def __init__(self, run_id: str, clock: Callable[[], float] | None = None):
        self.run_id = run_id
        self._clock = clock or (lambda: time.time() * 1000)
        self._counter = itertools.count(1)
        # Insertion order doubles as the tie-break for equal start times.
        self._spans: dict[str, Span] = {}

    def start_span(
        self,
        operation: str,
        node_id: str | None = None,
        parent_span_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Open a span and return its id."""
        own_id = f"span_{next(self._counter)}"
        span_id = f"{parent_span_id}.{own_id}" if parent_span_id else own_id
        self._spans[span_id] = Span(
            span_id=span_id,
            parent_span_id=parent_span_id,
            run_id=self.run_id,
            node_id=node_id,
            operation=operation,
            start_time=self._clock(),
            metadata=dict(metadata or {}),
        )
        logger.debug(f"Span {span_id} started: {operation}")
        return span_id

    def end_span(
        self,
        span_id: str,
        status: SpanStatus = SpanStatus.COMPLETED,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Span | None:
        """Close a span. Unknown or already closed spans are ignored with a warning."""
        span = self._spans.get(span_id)
        if span is None:
            logger.warning(f"⚠ end_span for unknown span {span_id}")
            return None
        if span.status != SpanStatus.RUNNING:
            logger.warning(f"⚠ end_span for span {span_id} which is already {span.status}")
            return span

        span.end_time = self._clock()
        span.duration_ms = span.end_time - span.start_time
        span.status = status
        span.error = error
        if metadata:
            span.metadata.update(metadata)
        logger.debug(f"Span {span_id} {status} in {span.duration_ms:.1f}ms")
        return span

    @asynccontextmanager
    async def span(
        self,
        operation: str,
        node_id: str | None = None,
        parent_span_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        """Run the body inside a span; exceptions mark it failed and propagate."""
        span_id = self.start_span(operation, node_id, parent_span_id, metadata)
        try:
            yield span_id
        except BaseException as e:
            self.end_span(span_id, SpanStatus.FAILED, error=str(e) or type(e).__name__)
            raise
        else:
            self.end_span(span_id, SpanStatus.COMPLETED)

    def get_span(self, span_id: str) -> Span | None:
        return self._spans.get(span_id)

    def all_spans(self) -> list[Span]:
        """Every span ordered by start time."""
        return sorted(self._spans.values(), key=lambda s: s.start_time)

    def active_spans(self) -> list[Span]:
        return [s for s in self._spans.values() if s.status == SpanStatus.RUNNING]

    def spans_for_node(self, node_id: str) -> list[Span]:
        return [s for s in self._spans.values() if s.node_id == node_id]

    def summary(self) -> TraceSummary:
        spans = list(self._spans.values())
        completed = [s for s in spans if s.status == SpanStatus.COMPLETED]
        total = sum(s.duration_ms or 0.0 for s in completed)

        nodes: dict[str, NodeTiming] = {}
        for span in completed:
            if span.node_id is None:
                continue
            timing = nodes.setdefault(span.node_id, NodeTiming())
            timing.count += 1
            timing.total_duration_ms += span.duration_ms or 0.0
            timing.avg_duration_ms = timing.total_duration_ms / timing.count

        return TraceSummary(
            total_spans=len(spans),
            completed_spans=len(completed),
            failed_spans=sum(1 for s in spans if s.status == SpanStatus.FAILED),
            active_spans=sum(1 for s in spans if s.status == SpanStatus.RUNNING),
            total_duration_ms=total,
            average_duration_ms=total / len(completed) if completed else 0.0,
            nodes=nodes,
        )

    def export(self) -> dict[str, Any]:
        """Serializable trace of the run. Span metadata is sanitized."""
        spans = []
        for span in self.all_spans():
            data = span.model_dump(mode="json")
            data["metadata"] = sanitize_meta(data["metadata"])
            spans.append(data)
        return {
            "run_id": self.run_id,
            "spans": spans,
            "summary": self.summary().model_dump(mode="json"),
            "exported_at": datetime.now(UTC).isoformat(),
        }

    def clear(self) -> None:
        self._spans.clear()
