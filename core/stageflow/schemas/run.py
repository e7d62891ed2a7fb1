"""
Run Schema - The persisted summary of one workflow run.
"""

from enum import StrEnum

from pydantic import BaseModel, Field, computed_field


class RunStatus(StrEnum):
    """Status of a run."""

    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    STOPPED = "stopped"
    CYCLE_DETECTED = "cycle_detected"


class RunSummary(BaseModel):
    """What a run did, small enough to list many of them."""

    run_id: str
    status: RunStatus
    started_at: str = ""  # ISO 8601
    duration_ms: float = 0.0
    total_nodes: int = 0
    executed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed_node: str | None = None
    error: str | None = None

    model_config = {"extra": "allow"}

    @computed_field
    @property
    def success(self) -> bool:
        return self.status == RunStatus.FINISHED
