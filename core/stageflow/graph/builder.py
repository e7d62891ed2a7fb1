"""
Graph Builder - Adjacency and indegree bookkeeping for a workflow.

Builds the directed graph once per run from the node and connection lists.
Connections that name a node which does not exist are dropped; they are a
symptom of a half-edited canvas, not a reason to refuse the run.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from stageflow.graph.edge import ConnectionSpec
from stageflow.graph.node import NodeSpec

logger = logging.getLogger(__name__)


@dataclass
class ExecutionGraph:
    """Directed graph over node ids. Node order follows the input node list."""

    nodes: dict[str, NodeSpec] = field(default_factory=dict)
    adjacency: dict[str, list[str]] = field(default_factory=dict)
    indegree: dict[str, int] = field(default_factory=dict)
    connections: list[ConnectionSpec] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes


def build_graph(
    nodes: Iterable[NodeSpec],
    connections: Iterable[ConnectionSpec],
) -> ExecutionGraph:
    """Build adjacency lists and indegree counts.

    Every node starts with an empty successor list and indegree 0. Each
    connection between two known nodes appends the target to the source's
    successors and bumps the target's indegree; duplicates count twice.
    """
    graph = ExecutionGraph()
    for node in nodes:
        if node.id in graph.nodes:
            logger.debug(f"Duplicate node id '{node.id}', keeping the last definition")
        graph.nodes[node.id] = node
        graph.adjacency[node.id] = []
        graph.indegree[node.id] = 0

    for connection in connections:
        graph.connections.append(connection)
        _add_edge(graph, connection)

    return graph


def rebuild_without(
    graph: ExecutionGraph,
    excluded: set[tuple[str, str]],
) -> ExecutionGraph:
    """Rebuild adjacency and indegree from graph's connections minus excluded pairs."""
    projected = ExecutionGraph(
        nodes=dict(graph.nodes),
        adjacency={node_id: [] for node_id in graph.nodes},
        indegree={node_id: 0 for node_id in graph.nodes},
    )
    for connection in graph.connections:
        if (connection.source_id, connection.target_id) in excluded:
            continue
        projected.connections.append(connection)
        _add_edge(projected, connection)
    return projected


def _add_edge(graph: ExecutionGraph, connection: ConnectionSpec) -> None:
    if connection.source_id not in graph.nodes or connection.target_id not in graph.nodes:
        logger.debug(
            f"Ignoring connection '{connection.id}': "
            f"{connection.source_id} → {connection.target_id} has an unknown endpoint"
        )
        return
    graph.adjacency[connection.source_id].append(connection.target_id)
    graph.indegree[connection.target_id] += 1
