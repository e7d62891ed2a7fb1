"""
Node Protocol - The closed set of step kinds and what each kind can do.

Every behaviour that depends on a node's kind (start eligibility, whether it
executes at all, loop control, gating payloads, named output slots, default
port counts) lives in one capability table. Planner, gating and routing all
read from CAPABILITIES instead of keeping their own lists of kind strings.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class StepKind(StrEnum):
    """All node types a workflow may contain."""

    TREND_RESEARCH = "trend-research"
    CONTENT_RESEARCH = "content-research"
    RESEARCH_REVISE = "research-revise"
    SCRIPT_GENERATOR = "script-generator"
    AI_ANALYSIS = "ai-analysis"
    VOICE_GENERATOR = "voice-generator"
    AUDIO_PROCESSOR = "audio-processor"
    MUSIC_GENERATOR = "music-generator"
    CHARACTER_ANIMATOR = "character-animator"
    VIDEO_GENERATOR = "video-generator"
    VISUAL_EFFECTS = "visual-effects"
    IMAGE_GENERATOR = "image-generator"
    COMFYUI_WORKFLOW = "comfyui-workflow"
    BATCH_COMFYUI = "batch-comfyui"
    MEDIA_PROCESSOR = "media-processor"
    BATCH_PROCESSOR = "batch-processor"
    QUALITY_ENHANCER = "quality-enhancer"
    LOOP = "loop-node"
    EXPORT_PUBLISHER = "export-publisher"
    CLOUD_STORAGE = "cloud-storage"
    ANALYTICS_TRACKER = "analytics-tracker"
    INPUT = "input-node"
    DECISION = "decision-node"
    IMPROVEMENT = "improvement-node"
    PREVIEW = "preview-node"
    IMAGE_PREVIEW = "image-preview-node"
    AUDIO_PREVIEW = "audio-preview-node"
    VIDEO_PREVIEW = "video-preview-node"
    TEXT_PREVIEW = "text-preview-node"
    JUDGMENT = "judgment-node"
    TRASH = "trash-node"
    SEQUENTIAL = "sequential-node"
    IMAGE_SEQUENTIAL = "image-sequential-node"
    LIKENESS = "likeness-node"
    YES_NO = "yes-no-node"
    VIDEO_ASSEMBLY = "video-assembly"
    FILE_INPUT = "file-input-node"
    LORA_TRAINING = "lora-training-node"
    LORA = "lora-node"
    DIGIVICE_WIDGET = "digivice-widget"


@dataclass(frozen=True)
class KindCapabilities:
    """What the engine needs to know about one step kind."""

    is_starter: bool = False  # may begin a run when it has no inbound edges
    start_excluded: bool = False  # never a start node, whatever its indegree
    is_sink: bool = False  # display-only step, never sent to the backend
    is_loop_controller: bool = False  # cycles through it are managed loops

    # Gating payloads
    input_payload_key: str | None = None  # data key that must be present
    training_samples_key: str | None = None
    min_training_samples: int = 0
    model_key: str | None = None  # data key naming a trained model

    # Credentialed service whose 401 is reported as an authentication failure
    auth_service: str | None = None

    # Named output slot per numeric port
    output_slots: tuple[str, ...] = ()
    # Ports resolve only from an ordered output list, never by fallback
    strict_ports: bool = False

    input_ports: int = 1
    output_ports: int = 1

    def slot_for_port(self, port: int) -> str | None:
        """Return the named output slot of a numeric port, if the kind names it."""
        if 0 <= port < len(self.output_slots):
            return self.output_slots[port]
        return None


_DEFAULT = KindCapabilities()

_SINK = KindCapabilities(is_sink=True, start_excluded=True, output_ports=0)

CAPABILITIES: dict[StepKind, KindCapabilities] = {
    StepKind.TREND_RESEARCH: KindCapabilities(is_starter=True),
    StepKind.CONTENT_RESEARCH: KindCapabilities(is_starter=True),
    StepKind.SCRIPT_GENERATOR: KindCapabilities(is_starter=True),
    StepKind.INPUT: KindCapabilities(is_starter=True),
    StepKind.SEQUENTIAL: KindCapabilities(is_starter=True),
    StepKind.LIKENESS: KindCapabilities(is_starter=True),
    StepKind.VOICE_GENERATOR: KindCapabilities(auth_service="ElevenLabs"),
    StepKind.LOOP: KindCapabilities(is_loop_controller=True, start_excluded=True),
    StepKind.TRASH: KindCapabilities(start_excluded=True),
    StepKind.PREVIEW: KindCapabilities(is_sink=True, start_excluded=True),
    StepKind.IMAGE_PREVIEW: _SINK,
    StepKind.AUDIO_PREVIEW: _SINK,
    StepKind.VIDEO_PREVIEW: _SINK,
    StepKind.TEXT_PREVIEW: _SINK,
    StepKind.JUDGMENT: KindCapabilities(
        output_slots=("yes", "no"), strict_ports=True, output_ports=2
    ),
    StepKind.YES_NO: KindCapabilities(output_slots=("yes", "no"), output_ports=2),
    StepKind.DECISION: KindCapabilities(input_ports=2, output_ports=2),
    StepKind.FILE_INPUT: KindCapabilities(
        input_payload_key="uploadedFile",
        output_slots=("script", "prompts"),
        input_ports=0,
        output_ports=2,
    ),
    StepKind.LORA_TRAINING: KindCapabilities(
        training_samples_key="trainingImages", min_training_samples=5
    ),
    StepKind.LORA: KindCapabilities(model_key="selectedModel"),
}


def capabilities(kind: StepKind | str) -> KindCapabilities:
    """Look up the capabilities of a step kind. Kinds not in the table get defaults."""
    return CAPABILITIES.get(StepKind(kind), _DEFAULT)


class NodeSpec(BaseModel):
    """
    A single processing step in a workflow.

    ``data`` is the opaque configuration payload edited by the user. The
    engine only reads the handful of keys named in the capability table and
    never mutates the spec itself; per-run changes live on the RunContext.

    Example:
        NodeSpec(
            id="script-1",
            type=StepKind.SCRIPT_GENERATOR,
            data={"topic": "tide pools"},
        )
    """

    id: str
    type: StepKind
    data: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] | None = Field(
        default=None, description="Canvas position, carried through untouched"
    )

    model_config = {"extra": "allow"}

    @property
    def capabilities(self) -> KindCapabilities:
        return capabilities(self.type)

    def ports(self) -> tuple[int, int]:
        """Return (input_ports, output_ports), honouring explicit overrides in data."""
        caps = self.capabilities
        inputs = self.data.get("inputPorts")
        outputs = self.data.get("outputPorts")
        return (
            inputs if isinstance(inputs, int) else caps.input_ports,
            outputs if isinstance(outputs, int) else caps.output_ports,
        )

    def normalized(self) -> "NodeSpec":
        """Return a copy whose data carries explicit port counts and a lastResult slot."""
        inputs, outputs = self.ports()
        data = {**self.data, "inputPorts": inputs, "outputPorts": outputs}
        data.setdefault("lastResult", None)
        return self.model_copy(update={"data": data})
