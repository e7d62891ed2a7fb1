"""
In-process node backend.

Dispatches each request to an async handler registered for its step kind.
Useful for embedding the engine next to Python node implementations, for
dry runs from the CLI, and in tests.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from stageflow.backend.protocol import NodeExecutionRequest
from stageflow.graph.errors import BackendError
from stageflow.graph.node import StepKind

logger = logging.getLogger(__name__)

NodeHandler = Callable[[NodeExecutionRequest], Awaitable[dict[str, Any]]]


class LocalNodeBackend:
    """
    NodeBackend backed by a registry of Python handlers.

    Example:
        backend = LocalNodeBackend()

        @backend.handler(StepKind.SCRIPT_GENERATOR)
        async def write_script(request):
            return {"outputs": {"script": f"About {request.payload['topic']}"}}
    """

    def __init__(self, fallback: NodeHandler | None = None):
        self._handlers: dict[StepKind, NodeHandler] = {}
        self._fallback = fallback

    def register(self, kind: StepKind | str, handler: NodeHandler) -> None:
        """Register (or replace) the handler for a step kind."""
        self._handlers[StepKind(kind)] = handler

    def handler(self, kind: StepKind | str) -> Callable[[NodeHandler], NodeHandler]:
        """Decorator form of register()."""

        def decorator(func: NodeHandler) -> NodeHandler:
            self.register(kind, func)
            return func

        return decorator

    def supports(self, kind: StepKind | str) -> bool:
        return StepKind(kind) in self._handlers or self._fallback is not None

    async def execute(self, request: NodeExecutionRequest) -> dict[str, Any]:
        handler = self._handlers.get(request.type, self._fallback)
        if handler is None:
            raise BackendError(f"No handler registered for node type '{request.type}'")

        try:
            result = await handler(request)
        except BackendError:
            raise
        except Exception as e:
            logger.exception(f"Handler for {request.type} raised")
            raise BackendError(
                str(e) or type(e).__name__, details={"type": type(e).__name__}
            ) from e

        return result if isinstance(result, dict) else {"result": result}


async def echo_handler(request: NodeExecutionRequest) -> dict[str, Any]:
    """Handler that returns its inputs. Used for dry runs."""
    return {
        "outputs": {"default": {"type": str(request.type), "inputs": request.input_data}},
        "dryRun": True,
    }
