"""
Cycle Classifier - Tells managed feedback loops apart from invalid cycles.

A cycle that passes through a loop-controller node is a managed loop: the
loop controller owns the repetition, so the back edge that closes the cycle
is recorded and later removed by the DAG projection. Any other cycle makes
the workflow unschedulable.

The traversal is an explicit-stack depth-first search so that long chains do
not run into the interpreter's recursion limit. It visits roots in node order
and successors in adjacency order, which keeps the reported cycle path and the
set of managed edges deterministic.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from stageflow.graph.builder import ExecutionGraph
from stageflow.graph.errors import UnmanagedCycleError

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Outcome of classifying every cycle in a graph."""

    managed_loop_edges: set[tuple[str, str]] = field(default_factory=set)
    cycle_path: list[str] | None = None  # set only for an unmanaged cycle

    @property
    def has_cycle(self) -> bool:
        """True when an unmanaged cycle was found."""
        return self.cycle_path is not None

    def describe(self) -> str:
        if self.cycle_path is None:
            return ""
        return " → ".join(self.cycle_path)


def _is_managed(graph: ExecutionGraph, cycle: list[str]) -> bool:
    # The closing node repeats the first one.
    return any(graph.nodes[node_id].capabilities.is_loop_controller for node_id in cycle[:-1])


def classify_cycles(graph: ExecutionGraph) -> CycleReport:
    """Find every back edge and classify the cycle it closes.

    Stops at the first unmanaged cycle. Managed cycles contribute the edge
    from the last node on the cycle back to its first node.
    """
    report = CycleReport()
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []

    for root in graph.nodes:
        if root in visited:
            continue

        visited.add(root)
        on_stack.add(root)
        path.append(root)
        stack: list[tuple[str, Iterator[str]]] = [(root, iter(graph.adjacency[root]))]

        while stack:
            node_id, successors = stack[-1]
            descended = False

            for successor in successors:
                if successor in on_stack:
                    cycle = path[path.index(successor) :] + [successor]
                    if not _is_managed(graph, cycle):
                        report.cycle_path = cycle
                        logger.error(f"✗ Unmanaged cycle: {report.describe()}")
                        return report
                    edge = (cycle[-2], cycle[0])
                    if edge not in report.managed_loop_edges:
                        logger.debug(f"Managed loop edge {edge[0]} → {edge[1]}")
                    report.managed_loop_edges.add(edge)
                    continue

                if successor in visited:
                    continue

                visited.add(successor)
                on_stack.add(successor)
                path.append(successor)
                stack.append((successor, iter(graph.adjacency[successor])))
                descended = True
                break

            if not descended:
                stack.pop()
                on_stack.discard(node_id)
                path.pop()

    return report


def ensure_no_unmanaged_cycle(graph: ExecutionGraph) -> CycleReport:
    """Classify cycles and raise UnmanagedCycleError if any cycle is unmanaged."""
    report = classify_cycles(graph)
    if report.cycle_path is not None:
        raise UnmanagedCycleError(report.cycle_path)
    return report
