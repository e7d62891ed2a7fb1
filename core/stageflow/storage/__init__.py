"""Storage for run artifacts."""

from stageflow.storage.trace_store import TraceStore

__all__ = ["TraceStore"]
