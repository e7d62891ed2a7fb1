"""Workflow graphs: step kinds, connections, planning and execution."""

from stageflow.graph.builder import ExecutionGraph, build_graph
from stageflow.graph.cycles import CycleReport, classify_cycles, ensure_no_unmanaged_cycle
from stageflow.graph.edge import ConnectionSpec, WorkflowSpec
from stageflow.graph.errors import (
    AuthenticationError,
    BackendError,
    NodeExecutionError,
    PlanInvariantError,
    UnmanagedCycleError,
    WorkflowError,
)
from stageflow.graph.executor import ExecutionCoordinator, RunResult
from stageflow.graph.gating import GateDecision, GateOutcome, evaluate_gate
from stageflow.graph.node import CAPABILITIES, KindCapabilities, NodeSpec, StepKind, capabilities
from stageflow.graph.planner import (
    ExecutionPlan,
    Stage,
    WorkflowDAG,
    build_stages,
    compute_start_nodes,
    create_execution_plan,
    project_dag,
    topological_order,
)
from stageflow.graph.routing import assemble_inputs, resolve_port_value
from stageflow.graph.scheduler import PacingPolicy, SequentialScheduler

__all__ = [
    # Nodes
    "StepKind",
    "KindCapabilities",
    "CAPABILITIES",
    "capabilities",
    "NodeSpec",
    # Connections
    "ConnectionSpec",
    "WorkflowSpec",
    # Planning
    "ExecutionGraph",
    "build_graph",
    "CycleReport",
    "classify_cycles",
    "ensure_no_unmanaged_cycle",
    "project_dag",
    "topological_order",
    "build_stages",
    "compute_start_nodes",
    "create_execution_plan",
    "WorkflowDAG",
    "ExecutionPlan",
    "Stage",
    # Execution
    "GateDecision",
    "GateOutcome",
    "evaluate_gate",
    "assemble_inputs",
    "resolve_port_value",
    "PacingPolicy",
    "SequentialScheduler",
    "ExecutionCoordinator",
    "RunResult",
    # Errors
    "WorkflowError",
    "UnmanagedCycleError",
    "PlanInvariantError",
    "NodeExecutionError",
    "AuthenticationError",
    "BackendError",
]
