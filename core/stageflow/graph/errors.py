"""
Workflow errors - Everything that can stop a plan from being built or a run
from completing.

Plan construction errors are raised before any stage exists. Node execution
errors are raised by the coordinator while driving the backend and are turned
into status events plus a failed RunResult.
"""

from typing import Any


class WorkflowError(Exception):
    """Base class for workflow planning and execution errors."""


class UnmanagedCycleError(WorkflowError):
    """A cycle with no loop-controller node on it. Plans cannot be built."""

    def __init__(self, cycle_path: list[str]):
        self.cycle_path = list(cycle_path)
        super().__init__(f"Cycle detected: {' → '.join(self.cycle_path)}")


class PlanInvariantError(WorkflowError):
    """The projected graph could not be ordered or staged completely."""


class NodeExecutionError(WorkflowError):
    """A node failed while executing against the backend."""

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        details: Any = None,
    ):
        self.node_id = node_id
        self.details = details
        super().__init__(message)


class AuthenticationError(NodeExecutionError):
    """The backend rejected the credentials of a service a node depends on."""

    def __init__(
        self,
        service: str,
        node_id: str | None = None,
        details: Any = None,
    ):
        self.service = service
        super().__init__(
            f"{service} API authentication failed. Please check your API key in Settings.",
            node_id=node_id,
            details=details,
        )


class BackendError(WorkflowError):
    """Raised by node backends when a request fails.

    ``status_code`` carries the HTTP-style status when the backend has one,
    so the coordinator can tell authentication failures apart.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: Any = None,
    ):
        self.status_code = status_code
        self.details = details
        super().__init__(message)
