"""
Configuration Orchestrator - Resolves competing configuration suggestions.

Any participant in a run (a node result, an operator, a test) may suggest a
value for a dotted configuration path. Before each stage the coordinator asks
the orchestrator to resolve everything suggested so far into one effective
configuration tree, and records the outcome as an immutable snapshot.

Resolution per path:
    1. drop suggestions whose ttl has elapsed
    2. one left: apply it
    3. several left: highest priority wins, ties go to the latest timestamp,
       and every loser is recorded as a conflict with the reason it lost
"""

import copy
import logging
import math
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 50.0

REASON_PRIORITY = "higher priority"
REASON_RECENCY = "more recent suggestion"
REASON_DEFAULT = "default resolution order"


def now_ms() -> float:
    """Wall-clock time in epoch milliseconds."""
    return time.time() * 1000


class ConfigSuggestion(BaseModel):
    """A proposed value for one configuration path."""

    path: str = Field(description="Dotted path, e.g. 'video.quality'")
    value: Any = None
    source: str = Field(min_length=1, description="Who suggested it (node id, 'user', ...)")
    priority: float = DEFAULT_PRIORITY
    timestamp: float = Field(ge=0, description="Epoch milliseconds")
    ttl: float | None = Field(default=None, gt=0, description="Lifetime in milliseconds")
    rationale: str = ""
    scope: str | None = None

    model_config = {"frozen": True}

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        if not value or any(not segment for segment in value.split(".")):
            raise ValueError(f"invalid configuration path '{value}'")
        return value

    @field_validator("priority")
    @classmethod
    def _check_priority(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("priority must be a finite number")
        return value

    def is_expired(self, now: float) -> bool:
        return self.ttl is not None and (now - self.timestamp) >= self.ttl


class ConfigConflict(BaseModel):
    """A suggestion that lost resolution for its path."""

    path: str
    winner: ConfigSuggestion
    loser: ConfigSuggestion
    reason: str

    model_config = {"frozen": True}


class ConfigSnapshot(BaseModel):
    """Effective configuration for one stage of one run."""

    run_id: str
    stage: str
    timestamp: float
    effective_config: dict[str, Any] = Field(default_factory=dict)
    applied_suggestions: tuple[ConfigSuggestion, ...] = ()
    conflicts: tuple[ConfigConflict, ...] = ()

    model_config = {"frozen": True}


def set_nested_value(tree: dict[str, Any], path: str, value: Any) -> None:
    """Set ``tree[a][b][c] = value`` for path 'a.b.c', creating containers as needed."""
    *parents, leaf = path.split(".")
    current = tree
    for key in parents:
        child = current.get(key)
        if not isinstance(child, dict):
            child = {}
            current[key] = child
        current = child
    current[leaf] = value


def _conflict_reason(winner: ConfigSuggestion, loser: ConfigSuggestion) -> str:
    if winner.priority > loser.priority:
        return REASON_PRIORITY
    if winner.timestamp > loser.timestamp:
        return REASON_RECENCY
    return REASON_DEFAULT


class ConfigOrchestrator:
    """
    Collects configuration suggestions for a run and resolves them per stage.

    Example:
        orchestrator = ConfigOrchestrator(run_id="run_1")
        orchestrator.suggest("video.quality", "hd", source="script-1", priority=60)
        snapshot = orchestrator.resolve_conflicts("stage-0")
        snapshot.effective_config  # {"video": {"quality": "hd"}}
    """

    def __init__(
        self,
        run_id: str,
        clock: Callable[[], float] | None = None,
        base_config: Mapping[str, Any] | None = None,
    ):
        self.run_id = run_id
        self._clock = clock or now_ms
        self._base_config = copy.deepcopy(dict(base_config or {}))
        # path -> suggestions in submission order
        self._suggestions: dict[str, list[ConfigSuggestion]] = {}
        self._snapshots: list[ConfigSnapshot] = []

    def add_suggestion(self, suggestion: ConfigSuggestion | Mapping[str, Any]) -> bool:
        """Validate and queue a suggestion. Malformed suggestions are logged and rejected."""
        if not isinstance(suggestion, ConfigSuggestion):
            raw = dict(suggestion)
            raw.setdefault("timestamp", self._clock())
            try:
                suggestion = ConfigSuggestion.model_validate(raw)
            except ValidationError as e:
                logger.error(
                    f"✗ Rejected configuration suggestion from {raw.get('source', '?')} "
                    f"for '{raw.get('path', '?')}': {e.error_count()} validation errors"
                )
                logger.debug(str(e))
                return False

        self._suggestions.setdefault(suggestion.path, []).append(suggestion)
        logger.debug(
            f"Suggestion {suggestion.path}={suggestion.value!r} from {suggestion.source} "
            f"(priority {suggestion.priority})"
        )
        return True

    def suggest(
        self,
        path: str,
        value: Any,
        source: str,
        priority: float = DEFAULT_PRIORITY,
        ttl: float | None = None,
        rationale: str = "",
        scope: str | None = None,
    ) -> bool:
        """Queue a suggestion stamped with the current time."""
        return self.add_suggestion(
            {
                "path": path,
                "value": value,
                "source": source,
                "priority": priority,
                "ttl": ttl,
                "rationale": rationale,
                "scope": scope,
                "timestamp": self._clock(),
            }
        )

    def pending_paths(self) -> list[str]:
        return list(self._suggestions)

    def resolve_conflicts(self, stage: str, now: float | None = None) -> ConfigSnapshot:
        """Resolve every path into an effective configuration and snapshot it."""
        now = self._clock() if now is None else now
        effective = copy.deepcopy(self._base_config)
        applied: list[ConfigSuggestion] = []
        conflicts: list[ConfigConflict] = []

        for path, suggestions in self._suggestions.items():
            live = [s for s in suggestions if not s.is_expired(now)]
            if not live:
                continue

            # Later submissions win exact ties on priority and timestamp.
            ranked = sorted(
                enumerate(live),
                key=lambda item: (item[1].priority, item[1].timestamp, item[0]),
                reverse=True,
            )
            winner = ranked[0][1]
            set_nested_value(effective, path, copy.deepcopy(winner.value))
            applied.append(winner)

            for _, loser in ranked[1:]:
                conflicts.append(
                    ConfigConflict(
                        path=path,
                        winner=winner,
                        loser=loser,
                        reason=_conflict_reason(winner, loser),
                    )
                )

        snapshot = ConfigSnapshot(
            run_id=self.run_id,
            stage=stage,
            timestamp=now,
            effective_config=effective,
            applied_suggestions=tuple(applied),
            conflicts=tuple(conflicts),
        )
        self._snapshots.append(snapshot)

        if conflicts:
            logger.info(
                f"⚖ {stage}: resolved {len(applied)} paths with {len(conflicts)} conflicts"
            )
        return snapshot.model_copy(deep=True)

    def get_snapshot(self, stage: str) -> ConfigSnapshot | None:
        """Most recent snapshot for a stage, or None."""
        for snapshot in reversed(self._snapshots):
            if snapshot.stage == stage:
                return snapshot.model_copy(deep=True)
        return None

    @property
    def snapshots(self) -> list[ConfigSnapshot]:
        """Snapshot history in resolution order."""
        return [s.model_copy(deep=True) for s in self._snapshots]

    def clear(self) -> None:
        self._suggestions.clear()
        self._snapshots.clear()
