"""
Node backend contract.

The engine never performs generative work itself. Each executable node is
handed to a NodeBackend as a NodeExecutionRequest and the backend returns the
node's result as a JSON-like mapping, or raises BackendError.
"""

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from stageflow.graph.node import StepKind


class NodeExecutionRequest(BaseModel):
    """What a backend receives for one node execution."""

    type: StepKind
    payload: dict[str, Any] = Field(default_factory=dict, description="The node's data")
    input_data: dict[str, Any] = Field(
        default_factory=dict, description="Routed upstream values keyed by source node id"
    )
    node_id: str
    run_id: str
    config: dict[str, Any] = Field(
        default_factory=dict, description="Effective configuration of the current stage"
    )

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """camelCase JSON body."""
        return self.model_dump(mode="json", by_alias=True)


@runtime_checkable
class NodeBackend(Protocol):
    """Anything that can execute a node."""

    async def execute(self, request: NodeExecutionRequest) -> dict[str, Any]:
        """Execute one node and return its result.

        Raises:
            BackendError: the node could not be executed
        """
        ...
