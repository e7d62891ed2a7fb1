"""
Stageflow - graph scheduling and orchestration for media workflows.

Turns a graph of processing nodes into a staged, deterministic execution
plan and drives it against a node execution backend.
"""

from stageflow.graph import (
    ConnectionSpec,
    ExecutionCoordinator,
    ExecutionPlan,
    NodeSpec,
    RunResult,
    StepKind,
    WorkflowSpec,
    create_execution_plan,
)
from stageflow.runtime import EventBus, ExecutionEventType

__version__ = "0.1.0"

__all__ = [
    "ConnectionSpec",
    "ExecutionCoordinator",
    "ExecutionPlan",
    "NodeSpec",
    "RunResult",
    "StepKind",
    "WorkflowSpec",
    "create_execution_plan",
    "EventBus",
    "ExecutionEventType",
]
