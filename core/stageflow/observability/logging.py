"""
Logging for workflow runs.

The coordinator stores the active run id, stage and node id in a ContextVar.
Both formatters read it, so a plain ``logger.info()`` anywhere in the engine
(backends, orchestrator, tracer) is attributed to the right run without
passing ids around. ContextVars follow asyncio tasks, so concurrent runs in
separate tasks keep separate contexts.

``sanitize_meta`` is shared with the tracer export: credentials are redacted
and oversized payloads truncated before they reach a log line or a trace file.
"""

import json
import logging
import os
import re
from collections.abc import Mapping
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

# Color codes emitted by terminal-aware libraries
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

SENSITIVE_KEY_PARTS = ("key", "token", "secret", "password")
MAX_STRING_LENGTH = 1000
MAX_OBJECT_LENGTH = 2000


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


def sanitize_meta(meta: Any) -> Any:
    """Make metadata safe to log or export.

    - values under keys that look like credentials become "[REDACTED]"
    - strings longer than 1000 characters are truncated
    - nested objects whose JSON form exceeds 2000 characters become "[LARGE_OBJECT]"
    """
    if isinstance(meta, Mapping):
        clean: dict[str, Any] = {}
        for key, value in meta.items():
            if any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS):
                clean[key] = "[REDACTED]"
            elif isinstance(value, str):
                clean[key] = _truncate(value)
            elif isinstance(value, (Mapping, list, tuple)):
                clean[key] = "[LARGE_OBJECT]" if _too_large(value) else sanitize_meta(value)
            else:
                clean[key] = value
        return clean
    if isinstance(meta, (list, tuple)):
        return [sanitize_meta(item) for item in meta]
    if isinstance(meta, str):
        return _truncate(meta)
    return meta


def _truncate(value: str) -> str:
    if len(value) > MAX_STRING_LENGTH:
        return value[:MAX_STRING_LENGTH] + "...[truncated]"
    return value


def _too_large(value: Any) -> bool:
    try:
        return len(json.dumps(value, default=str)) > MAX_OBJECT_LENGTH
    except (TypeError, ValueError):
        return True


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    The active trace context (run_id, stage, node_id) is merged into every
    entry. Records may add ``event``, ``latency_ms``, ``node_id`` and ``meta``
    through ``extra=``; ``meta`` is sanitized before it is written.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }

        for attr in ("event", "latency_ms", "node_id"):
            value = getattr(record, attr, None)
            if value is not None:
                entry[attr] = strip_ansi_codes(value) if isinstance(value, str) else value

        meta = getattr(record, "meta", None)
        if meta is not None:
            entry["meta"] = sanitize_meta(meta)

        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Colored single-line output for terminals.

    Lines are prefixed with the short run id, the stage and the node, e.g.
    ``[INFO    ] [run:9f2c4a1b | stage-1 | node:voice] ▶ voice``.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        parts = []
        if context.get("run_id"):
            parts.append(f"run:{context['run_id'][-8:]}")
        if context.get("stage"):
            parts.append(context["stage"])
        if context.get("node_id"):
            parts.append(f"node:{context['node_id']}")
        prefix = f"[{' | '.join(parts)}] " if parts else ""

        color = self.LEVEL_COLORS.get(record.levelno, "")
        line = f"{color}[{record.levelname:<8}]{self.RESET} {prefix}{record.getMessage()}"

        event = getattr(record, "event", None)
        if event is not None:
            line += f" [{event}]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Install a single root handler using one of the formatters above.

    Called once by the CLI; embedding applications may call it themselves
    or keep their own logging setup.

    Args:
        level: Root log level name
        format: "json", "human", or "auto". Auto picks JSON when LOG_FORMAT=json
            or ENV=production, and human-readable output otherwise.

    Example:
        configure_logging(level="DEBUG", format="human")
    """
    if format == "auto":
        wants_json = os.getenv("LOG_FORMAT", "").lower() == "json"
        in_production = os.getenv("ENV", "development").lower() == "production"
        format = "json" if wants_json or in_production else "human"

    handler = logging.StreamHandler()
    if format == "json":
        handler.setFormatter(StructuredFormatter())
        # Keep third-party output free of color codes inside JSON messages
        os.environ["NO_COLOR"] = "1"
        os.environ["FORCE_COLOR"] = "0"
    else:
        handler.setFormatter(HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    if format == "json":
        # httpx logs each backend request; route it through the JSON handler
        for name in ("httpx", "httpcore"):
            client_logger = logging.getLogger(name)
            client_logger.handlers.clear()
            client_logger.propagate = True


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields (run_id, stage, node_id, ...) into the current trace context.

    The coordinator sets run_id when a run starts and updates stage and
    node_id as it moves through the plan; every log record emitted in the
    same async context carries them.
    """
    trace_context.set({**(trace_context.get() or {}), **kwargs})


def get_trace_context() -> dict:
    """Copy of the current trace context, empty when none is set."""
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    """Drop the trace context, e.g. when a run finishes or between tests."""
    trace_context.set(None)
