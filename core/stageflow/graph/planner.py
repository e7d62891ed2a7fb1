"""
Stage Planner - Turns a workflow into an immutable, staged execution plan.

Pipeline (one pass per run):
    build_graph()          adjacency + indegree over the full workflow
        ↓
    classify_cycles()      managed loop edges, or a fatal unmanaged cycle
        ↓
    project_dag()          the same graph minus managed loop edges
        ↓
    topological_order()    Kahn's algorithm over the projection
        ↓
    build_stages()         layered grouping: a node's stage is one past the
                           deepest stage of its projected predecessors
        ↓
    compute_start_nodes()  roots of the full graph whose kind may start a run

Every node of the workflow lands in exactly one stage. A plan that would
violate that is rejected with PlanInvariantError rather than half-run.
"""

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, Field

from stageflow.graph.builder import ExecutionGraph, build_graph, rebuild_without
from stageflow.graph.cycles import CycleReport, ensure_no_unmanaged_cycle
from stageflow.graph.edge import ConnectionSpec
from stageflow.graph.errors import PlanInvariantError
from stageflow.graph.node import NodeSpec

logger = logging.getLogger(__name__)


class Stage(BaseModel):
    """A group of nodes whose projected predecessors all sit in earlier stages."""

    id: str
    index: int
    node_ids: tuple[str, ...]

    model_config = {"frozen": True}


class ExecutionPlan(BaseModel):
    """Ordered stages for one run. Immutable once built."""

    stages: tuple[Stage, ...] = ()
    start_nodes: tuple[str, ...] = ()
    total_nodes: int = 0
    managed_loop_edges: frozenset[tuple[str, str]] = Field(default_factory=frozenset)

    model_config = {"frozen": True}

    def order(self) -> list[str]:
        """All node ids in execution order."""
        return [node_id for stage in self.stages for node_id in stage.node_ids]

    def stage_index_of(self, node_id: str) -> int | None:
        for stage in self.stages:
            if node_id in stage.node_ids:
                return stage.index
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stages": [{"id": s.id, "nodeIds": list(s.node_ids)} for s in self.stages],
            "startNodes": list(self.start_nodes),
            "totalNodes": self.total_nodes,
            "managedLoopEdges": sorted([list(edge) for edge in self.managed_loop_edges]),
        }


def project_dag(graph: ExecutionGraph, managed_loop_edges: set[tuple[str, str]]) -> ExecutionGraph:
    """Return the graph with every managed loop edge removed."""
    return rebuild_without(graph, managed_loop_edges)


def topological_order(projection: ExecutionGraph) -> list[str]:
    """Kahn's algorithm. The queue is seeded in node order for a stable result."""
    indegree = dict(projection.indegree)
    queue = deque(node_id for node_id, degree in indegree.items() if degree == 0)
    order: list[str] = []

    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for successor in projection.adjacency[node_id]:
            indegree[successor] -= 1
            if indegree[successor] == 0:
                queue.append(successor)

    if len(order) != len(projection):
        unreachable = len(projection) - len(order)
        raise PlanInvariantError(f"Topological sort failed: {unreachable} nodes unreachable")
    return order


def build_stages(order: list[str], projection: ExecutionGraph) -> list[Stage]:
    """Group a topological order into layers.

    Each pass collects every unplaced node whose projected predecessors were
    all placed by earlier passes, so stage count equals the longest chain.
    """
    predecessors: dict[str, set[str]] = {node_id: set() for node_id in projection.nodes}
    for source, targets in projection.adjacency.items():
        for target in targets:
            predecessors[target].add(source)

    placed: set[str] = set()
    stages: list[Stage] = []

    while len(placed) < len(order):
        layer = [
            node_id
            for node_id in order
            if node_id not in placed and predecessors[node_id] <= placed
        ]
        if not layer:
            raise PlanInvariantError("Execution plan creation failed: circular dependency detected")
        stages.append(Stage(id=f"stage-{len(stages)}", index=len(stages), node_ids=tuple(layer)))
        placed.update(layer)

    return stages


def compute_start_nodes(graph: ExecutionGraph) -> list[str]:
    """Roots of the full graph whose kind is allowed to begin a run."""
    start_nodes = []
    for node_id, node in graph.nodes.items():
        caps = node.capabilities
        if graph.indegree[node_id] == 0 and caps.is_starter and not caps.start_excluded:
            start_nodes.append(node_id)
    return start_nodes


class WorkflowDAG:
    """
    Planning state for a single run.

    Keeps the intermediate artifacts around so callers can inspect why a plan
    looks the way it does.

    Example:
        dag = WorkflowDAG(nodes, connections, run_id="run_1")
        plan = dag.create_execution_plan()
        dag.cycle_report.managed_loop_edges
    """

    def __init__(
        self,
        nodes: Iterable[NodeSpec],
        connections: Iterable[ConnectionSpec],
        run_id: str = "",
    ):
        self.run_id = run_id
        self.graph = build_graph(nodes, connections)
        self.cycle_report: CycleReport = ensure_no_unmanaged_cycle(self.graph)
        self.projection = project_dag(self.graph, self.cycle_report.managed_loop_edges)

    def create_execution_plan(self) -> ExecutionPlan:
        order = topological_order(self.projection)
        stages = build_stages(order, self.projection)
        start_nodes = compute_start_nodes(self.graph)

        staged = sum(len(stage.node_ids) for stage in stages)
        if staged != len(self.graph):
            raise PlanInvariantError(
                f"Execution plan covers {staged} of {len(self.graph)} nodes"
            )

        plan = ExecutionPlan(
            stages=tuple(stages),
            start_nodes=tuple(start_nodes),
            total_nodes=staged,
            managed_loop_edges=frozenset(self.cycle_report.managed_loop_edges),
        )
        breakdown = ", ".join(f"{s.id}={len(s.node_ids)}" for s in plan.stages)
        logger.info(
            f"📋 Execution plan for {self.run_id or 'workflow'}: "
            f"{len(plan.stages)} stages ({breakdown}), start nodes {list(plan.start_nodes)}"
        )
        return plan

    def validate_gating(
        self,
        node_id: str,
        available: Mapping[str, Any],
    ) -> tuple[bool, list[str]]:
        """Check a node's declared ``requires`` entries against available results.

        Each entry has the form ``"<node_id>:<port>"``. A dependency is
        missing when the node has produced nothing, or when its result carries
        an output list without a value at that port.
        """
        node = self.graph.nodes.get(node_id)
        if node is None:
            return False, [f"Node {node_id} not found"]

        missing: list[str] = []
        for requirement in node.data.get("requires", []):
            required_id, _, port_text = str(requirement).partition(":")
            port = int(port_text) if port_text.isdigit() else 0
            result = available.get(required_id)
            if not result:
                missing.append(f"{required_id}:{port} (no data)")
                continue
            outputs = result.get("outputs") if isinstance(result, Mapping) else None
            if isinstance(outputs, list) and (port >= len(outputs) or not outputs[port]):
                missing.append(f"{required_id}:{port} (port missing)")
            elif isinstance(outputs, Mapping) and not outputs.get(str(port)):
                missing.append(f"{required_id}:{port} (port missing)")

        if missing:
            logger.warning(f"⚠ Node {node_id} gating failed, missing {missing}")
        return not missing, missing


def create_execution_plan(
    nodes: Iterable[NodeSpec],
    connections: Iterable[ConnectionSpec],
    run_id: str = "",
) -> ExecutionPlan:
    """Build, classify, project, order and stage a workflow in one call.

    Raises:
        UnmanagedCycleError: a cycle without a loop controller exists
        PlanInvariantError: the projection cannot be fully ordered or staged
    """
    return WorkflowDAG(nodes, connections, run_id=run_id).create_execution_plan()
