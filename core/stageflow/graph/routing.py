"""
Port routing - Which part of an upstream result flows down a connection.

A result may carry ``outputs`` as an ordered list (one entry per port) or as
a mapping of named slots. Numeric ports always resolve to something: the
literal port key first, then the slot the source kind names for that port,
then the generic aliases below, then ``default``, then the whole result.
Sources whose kind has strict ports only ever yield list entries.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from stageflow.graph.edge import ConnectionSpec
from stageflow.graph.node import KindCapabilities

# Generic slot names tried for kinds that do not name their own slots
PORT_ALIASES: dict[int, tuple[str, ...]] = {
    0: ("script", "text", "yes", "primary", "default"),
    1: ("prompts", "no", "secondary"),
}


def resolve_port_value(
    result: Any,
    port: int,
    source_caps: KindCapabilities,
) -> Any:
    """Pick the value a source result routes through output ``port``.

    Returns None when nothing should be routed.
    """
    if result is None:
        return None

    outputs = result.get("outputs") if isinstance(result, Mapping) else None

    if isinstance(outputs, list):
        value = outputs[port] if port < len(outputs) else None
        if value is None and not source_caps.strict_ports:
            return result
        return value

    if source_caps.strict_ports:
        return None

    if isinstance(outputs, Mapping):
        key = str(port)
        if key in outputs:
            return outputs[key]
        slot = source_caps.slot_for_port(port)
        if slot is not None and slot in outputs:
            return outputs[slot]
        for alias in PORT_ALIASES.get(port, ()):
            if alias in outputs:
                return outputs[alias]
        if "default" in outputs:
            return outputs["default"]

    return result


def assemble_inputs(
    incoming: Iterable[ConnectionSpec],
    results: Mapping[str, Any],
    capabilities_of: Mapping[str, KindCapabilities],
) -> dict[str, Any]:
    """Build a node's input set from its incoming connections.

    Keys are source node ids. When one source feeds the node through more
    than one connection, later entries are keyed ``"<source>:<port>"``.
    Sources without a result in this run, and values that resolve to None,
    are left out.
    """
    inputs: dict[str, Any] = {}
    for connection in incoming:
        if connection.source_id not in results:
            continue
        caps = capabilities_of.get(connection.source_id)
        if caps is None:
            continue
        value = resolve_port_value(results[connection.source_id], connection.source_port, caps)
        if value is None:
            continue
        key = connection.source_id
        if key in inputs:
            key = f"{connection.source_id}:{connection.source_port}"
        inputs[key] = value
    return inputs
