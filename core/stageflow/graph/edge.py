"""
Edge Protocol - How nodes connect in a workflow.

A connection routes one numbered output port of a source node into one
numbered input port of a target node. Connections carry no conditions; a
feedback connection is only legal when a loop controller sits on the cycle
it closes (see cycles.py).
"""

from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from stageflow.graph.node import NodeSpec


class ConnectionSpec(BaseModel):
    """
    Specification for a connection between two nodes.

    Accepts both snake_case and the camelCase field names used by saved
    workflow files.

    Example:
        ConnectionSpec(
            id="script-to-voice",
            source_id="script-1",
            target_id="voice-1",
            source_port=0,
        )
    """

    id: str
    source_id: str = Field(validation_alias=AliasChoices("source_id", "sourceId", "source"))
    target_id: str = Field(validation_alias=AliasChoices("target_id", "targetId", "target"))
    source_port: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("source_port", "sourcePort"),
        description="Output port index on the source node",
    )
    target_port: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("target_port", "targetPort"),
        description="Input port index on the target node",
    )

    model_config = {"frozen": True, "populate_by_name": True}

    @field_validator("source_port", "target_port", mode="before")
    @classmethod
    def _default_missing_port(cls, value: Any) -> Any:
        if value is None or value == "":
            return 0
        return value

    @property
    def key(self) -> tuple[str, int, str, int]:
        """Identity used for de-duplication."""
        return (self.source_id, self.source_port, self.target_id, self.target_port)


class WorkflowSpec(BaseModel):
    """
    A complete workflow: the nodes and the connections between them.

    Example:
        WorkflowSpec(
            nodes=[NodeSpec(id="a", type="script-generator")],
            connections=[],
        )
    """

    name: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list, description="All node specifications")
    connections: list[ConnectionSpec] = Field(
        default_factory=list,
        validation_alias=AliasChoices("connections", "edges"),
        description="All connection specifications",
    )

    model_config = {"extra": "allow", "populate_by_name": True}

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_incoming(self, node_id: str) -> list[ConnectionSpec]:
        """Get all connections entering a node."""
        return [c for c in self.connections if c.target_id == node_id]

    def get_outgoing(self, node_id: str) -> list[ConnectionSpec]:
        """Get all connections leaving a node."""
        return [c for c in self.connections if c.source_id == node_id]

    def dedupe_connections(self) -> "WorkflowSpec":
        """Return a copy without duplicate connections. The first occurrence wins."""
        seen: set[tuple[str, int, str, int]] = set()
        unique: list[ConnectionSpec] = []
        for connection in self.connections:
            if connection.key in seen:
                continue
            seen.add(connection.key)
            unique.append(connection)
        return self.model_copy(update={"connections": unique})

    def normalized(self) -> "WorkflowSpec":
        """Return a copy with port defaults filled in and duplicate connections dropped."""
        nodes = [node.normalized() for node in self.nodes]
        return self.model_copy(update={"nodes": nodes}).dedupe_connections()

    def validate(self) -> list[str]:
        """Validate the workflow structure. Returns a list of problems, empty when valid."""
        errors = []

        seen_ids: set[str] = set()
        for node in self.nodes:
            if node.id in seen_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_ids.add(node.id)

        seen_keys: set[tuple[str, int, str, int]] = set()
        for connection in self.connections:
            source = self.get_node(connection.source_id)
            target = self.get_node(connection.target_id)
            if source is None:
                errors.append(
                    f"Connection '{connection.id}' references missing source "
                    f"'{connection.source_id}'"
                )
            elif connection.source_port >= source.ports()[1]:
                errors.append(
                    f"Connection '{connection.id}' uses output port {connection.source_port} "
                    f"but '{source.id}' has {source.ports()[1]}"
                )
            if target is None:
                errors.append(
                    f"Connection '{connection.id}' references missing target "
                    f"'{connection.target_id}'"
                )
            elif connection.target_port >= target.ports()[0]:
                errors.append(
                    f"Connection '{connection.id}' uses input port {connection.target_port} "
                    f"but '{target.id}' has {target.ports()[0]}"
                )
            if connection.key in seen_keys:
                errors.append(f"Duplicate connection: '{connection.id}'")
            seen_keys.add(connection.key)

        return errors
