"""
Run context - Everything owned by a single run.

A new RunContext is allocated every time a run starts, so results, traces
and configuration suggestions never leak from one run into the next.
"""

import asyncio
import copy
import secrets
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from stageflow.graph.node import NodeSpec
from stageflow.runtime.config_orchestrator import ConfigOrchestrator
from stageflow.runtime.tracer import Tracer


def create_run_id() -> str:
    """Return a new run id like ``run_1718000000000_9f2c4a1b``."""
    return f"run_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class RunContext:
    """Mutable state of one run."""

    run_id: str
    tracer: Tracer
    orchestrator: ConfigOrchestrator
    results: dict[str, Any] = field(default_factory=dict)  # node id -> last result
    node_data: dict[str, dict[str, Any]] = field(default_factory=dict)  # run-local node data
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.time)
    current_node: str | None = None
    current_stage: str | None = None

    @classmethod
    def create(
        cls,
        nodes: Iterable[NodeSpec],
        run_id: str | None = None,
        base_config: dict[str, Any] | None = None,
    ) -> "RunContext":
        run_id = run_id or create_run_id()
        return cls(
            run_id=run_id,
            tracer=Tracer(run_id),
            orchestrator=ConfigOrchestrator(run_id, base_config=base_config),
            node_data={node.id: copy.deepcopy(node.data) for node in nodes},
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def merge_node_data(self, node_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Merge updates into a node's run-local data and return the merged copy."""
        merged = {**self.node_data.get(node_id, {}), **updates}
        self.node_data[node_id] = merged
        return dict(merged)
