"""Load workflow files from disk."""

import json
import logging
from pathlib import Path

from stageflow.graph.edge import WorkflowSpec

logger = logging.getLogger(__name__)


def load_workflow(path: Path | str) -> WorkflowSpec:
    """Read a workflow JSON file and normalize it.

    The file holds ``nodes`` and ``connections`` (``edges`` is accepted as
    well). Node port counts get per-kind defaults and duplicate connections
    are dropped.

    Raises:
        FileNotFoundError: the file does not exist
        json.JSONDecodeError: the file is not JSON
        pydantic.ValidationError: the JSON is not a workflow
    """
    path = Path(path)
    with open(path, encoding="utf-8-sig") as f:
        raw = json.load(f)

    workflow = WorkflowSpec.model_validate(raw)
    normalized = workflow.normalized()

    dropped = len(workflow.connections) - len(normalized.connections)
    if dropped:
        logger.info(f"Dropped {dropped} duplicate connections from {path.name}")
    return normalized
