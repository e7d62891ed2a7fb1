"""Node execution backends: the contract plus HTTP and in-process implementations."""

from stageflow.backend.http import HttpNodeBackend
from stageflow.backend.local import LocalNodeBackend, echo_handler
from stageflow.backend.protocol import NodeBackend, NodeExecutionRequest

__all__ = [
    "NodeBackend",
    "NodeExecutionRequest",
    "HttpNodeBackend",
    "LocalNodeBackend",
    "echo_handler",
]
