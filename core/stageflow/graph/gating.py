"""
Gating - Per-node checks applied before a node is sent to the backend.

Gating reads the run-local copy of a node's data and decides one of:

- EXECUTE      run the node
- SKIP_SILENT  display-only sink, nothing to do
- SKIP_WARN    required input payload missing, log a warning and move on
- SELF_HEAL    payload patched with defaults, then run the node
- SKIP_SIGNAL  cannot run, tell the status sink why
"""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from stageflow.graph.node import NodeSpec

logger = logging.getLogger(__name__)

DEFAULT_TRAINING_SAMPLES: tuple[dict[str, str], ...] = (
    {"url": "/uploads/defaults/subject_upper_body_side.png", "name": "subject_upper_body_side.png"},
    {"url": "/uploads/defaults/subject_full_body_front.png", "name": "subject_full_body_front.png"},
    {"url": "/uploads/defaults/subject_headshot_angle.png", "name": "subject_headshot_angle.png"},
    {"url": "/uploads/defaults/subject_profile_left.png", "name": "subject_profile_left.png"},
    {"url": "/uploads/defaults/subject_casual_pose.png", "name": "subject_casual_pose.png"},
)


class GateOutcome(StrEnum):
    EXECUTE = "execute"
    SKIP_SILENT = "skip_silent"
    SKIP_WARN = "skip_warn"
    SELF_HEAL = "self_heal"
    SKIP_SIGNAL = "skip_signal"


@dataclass
class GateDecision:
    """Outcome of gating one node."""

    outcome: GateOutcome
    data: dict[str, Any] = field(default_factory=dict)  # node data to execute with
    reason: str | None = None
    message: str | None = None

    @property
    def should_execute(self) -> bool:
        return self.outcome in (GateOutcome.EXECUTE, GateOutcome.SELF_HEAL)


def evaluate_gate(node: NodeSpec, data: dict[str, Any]) -> GateDecision:
    """Decide whether ``node`` runs, given its current run-local ``data``."""
    caps = node.capabilities

    if caps.is_sink:
        logger.debug(f"Skipping display node {node.id} ({node.type})")
        return GateDecision(GateOutcome.SKIP_SILENT, data=data)

    if caps.input_payload_key and not data.get(caps.input_payload_key):
        logger.warning(f"⚠ Skipping {node.type} {node.id}: no {caps.input_payload_key} attached")
        return GateDecision(
            GateOutcome.SKIP_WARN,
            data=data,
            reason=f"missing_{caps.input_payload_key}",
        )

    if caps.training_samples_key:
        samples = data.get(caps.training_samples_key) or []
        if len(samples) < caps.min_training_samples:
            logger.info(
                f"🩹 {node.id} has {len(samples)} training samples, "
                f"using {len(DEFAULT_TRAINING_SAMPLES)} defaults"
            )
            healed = {
                **data,
                caps.training_samples_key: [dict(s) for s in DEFAULT_TRAINING_SAMPLES],
            }
            return GateDecision(GateOutcome.SELF_HEAL, data=healed, reason="default_samples")

    if caps.model_key and not data.get(caps.model_key):
        return GateDecision(
            GateOutcome.SKIP_SIGNAL,
            data=data,
            reason="no_model_selected",
            message=(
                "No trained LoRA model selected. "
                "Train a model first or pick one in the node settings."
            ),
        )

    return GateDecision(GateOutcome.EXECUTE, data=data)
