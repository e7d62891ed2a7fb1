"""Per-run services: configuration resolution, tracing, status events."""

from stageflow.runtime.config_orchestrator import (
    ConfigConflict,
    ConfigOrchestrator,
    ConfigSnapshot,
    ConfigSuggestion,
)
from stageflow.runtime.event_bus import EventBus, ExecutionEvent, ExecutionEventType
from stageflow.runtime.run_context import RunContext, create_run_id
from stageflow.runtime.tracer import Span, SpanStatus, Tracer, TraceSummary

__all__ = [
    "ConfigOrchestrator",
    "ConfigSuggestion",
    "ConfigConflict",
    "ConfigSnapshot",
    "EventBus",
    "ExecutionEvent",
    "ExecutionEventType",
    "RunContext",
    "create_run_id",
    "Tracer",
    "Span",
    "SpanStatus",
    "TraceSummary",
]
