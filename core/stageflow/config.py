"""Shared Stageflow configuration utilities.

Centralises reading of ~/.stageflow/configuration.json so the CLI and any
embedding application resolve backend and pacing settings the same way.
Environment variables override the file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

STAGEFLOW_CONFIG_FILE = Path.home() / ".stageflow" / "configuration.json"

DEFAULT_BACKEND_URL = "http://localhost:3001"
DEFAULT_BACKEND_TIMEOUT = 300.0
DEFAULT_PACING_MS = 300


def get_stageflow_config() -> dict[str, Any]:
    """Load configuration from ~/.stageflow/configuration.json."""
    if not STAGEFLOW_CONFIG_FILE.exists():
        return {}
    try:
        with open(STAGEFLOW_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_backend_url() -> str:
    """Return the node execution server URL."""
    env = os.environ.get("STAGEFLOW_BACKEND_URL")
    if env:
        return env
    return get_stageflow_config().get("backend", {}).get("url", DEFAULT_BACKEND_URL)


def get_backend_timeout() -> float:
    return float(get_stageflow_config().get("backend", {}).get("timeout", DEFAULT_BACKEND_TIMEOUT))


def get_pacing_delay() -> float:
    """Return the pause between nodes in seconds."""
    env = os.environ.get("STAGEFLOW_PACING_MS")
    if env:
        return int(env) / 1000
    return get_stageflow_config().get("execution", {}).get("pacing_ms", DEFAULT_PACING_MS) / 1000


def get_log_level() -> str:
    env = os.environ.get("STAGEFLOW_LOG_LEVEL")
    if env:
        return env.upper()
    return get_stageflow_config().get("logging", {}).get("level", "INFO").upper()


def get_trace_dir() -> Path | None:
    trace_dir = get_stageflow_config().get("execution", {}).get("trace_dir")
    return Path(trace_dir).expanduser() if trace_dir else None


def get_api_keys() -> dict[str, str]:
    """Return service API keys, resolved from the env vars named in configuration."""
    keys: dict[str, str] = {}
    for service, env_var in get_stageflow_config().get("api_key_env_vars", {}).items():
        value = os.environ.get(env_var)
        if value:
            keys[service] = value
    return keys


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.stageflow/configuration.json."""

    backend_url: str = field(default_factory=get_backend_url)
    backend_timeout: float = field(default_factory=get_backend_timeout)
    pacing_delay: float = field(default_factory=get_pacing_delay)
    log_level: str = field(default_factory=get_log_level)
    trace_dir: Path | None = field(default_factory=get_trace_dir)
    api_keys: dict[str, str] = field(default_factory=get_api_keys)
