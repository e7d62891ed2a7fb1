"""
Tests for the configuration orchestrator.

Covers:
- Single suggestions apply without conflicts
- Priority wins, then recency, with recorded conflict reasons
- TTL expiry
- Nested path creation
- Invalid suggestions are rejected, not raised
- Snapshots are immutable and retrievable per stage
"""

import pytest
from pydantic import ValidationError

from stageflow.runtime.config_orchestrator import (
    REASON_DEFAULT,
    REASON_PRIORITY,
    REASON_RECENCY,
    ConfigOrchestrator,
    ConfigSuggestion,
    set_nested_value,
)


def _suggestion(path, value, priority=50, timestamp=1_000.0, ttl=None, source="node-1"):
    return ConfigSuggestion(
        path=path,
        value=value,
        priority=priority,
        timestamp=timestamp,
        ttl=ttl,
        source=source,
    )


@pytest.fixture
def orchestrator():
    return ConfigOrchestrator(run_id="run_test", clock=lambda: 10_000.0)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestResolveConflicts:
    def test_single_suggestion_applied(self, orchestrator):
        orchestrator.add_suggestion(_suggestion("video.quality", "hd"))
        snapshot = orchestrator.resolve_conflicts("stage-0")

        assert snapshot.effective_config == {"video": {"quality": "hd"}}
        assert len(snapshot.applied_suggestions) == 1
        assert snapshot.conflicts == ()
        assert snapshot.run_id == "run_test"
        assert snapshot.stage == "stage-0"

    def test_equal_priority_more_recent_wins(self, orchestrator):
        orchestrator.add_suggestion(_suggestion("video.quality", "sd", priority=60, timestamp=1))
        orchestrator.add_suggestion(_suggestion("video.quality", "hd", priority=60, timestamp=2))
        snapshot = orchestrator.resolve_conflicts("stage-0", now=3)

        assert snapshot.effective_config["video"]["quality"] == "hd"
        assert len(snapshot.conflicts) == 1
        conflict = snapshot.conflicts[0]
        assert conflict.path == "video.quality"
        assert conflict.winner.value == "hd"
        assert conflict.loser.value == "sd"
        assert conflict.reason == REASON_RECENCY == "more recent suggestion"

    def test_higher_priority_beats_recency(self, orchestrator):
        orchestrator.add_suggestion(_suggestion("voice.id", "narrator", priority=80, timestamp=1))
        orchestrator.add_suggestion(_suggestion("voice.id", "robot", priority=20, timestamp=5))
        snapshot = orchestrator.resolve_conflicts("stage-0", now=6)

        assert snapshot.effective_config == {"voice": {"id": "narrator"}}
        assert snapshot.conflicts[0].reason == REASON_PRIORITY

    def test_exact_tie_prefers_later_submission(self, orchestrator):
        orchestrator.add_suggestion(_suggestion("a", 1, timestamp=1, source="first"))
        orchestrator.add_suggestion(_suggestion("a", 2, timestamp=1, source="second"))
        snapshot = orchestrator.resolve_conflicts("stage-0", now=2)

        assert snapshot.effective_config == {"a": 2}
        assert snapshot.conflicts[0].reason == REASON_DEFAULT

    def test_every_loser_recorded(self, orchestrator):
        for i, priority in enumerate((10, 90, 50)):
            orchestrator.add_suggestion(_suggestion("fps", 24 + i, priority=priority, timestamp=i))
        snapshot = orchestrator.resolve_conflicts("stage-0", now=10)

        assert snapshot.effective_config == {"fps": 25}
        assert sorted(c.loser.value for c in snapshot.conflicts) == [24, 26]
        assert all(c.winner.value == 25 for c in snapshot.conflicts)

    def test_expired_suggestion_excluded(self, orchestrator):
        orchestrator.add_suggestion(_suggestion("video.quality", "4k", ttl=1000, timestamp=0))
        snapshot = orchestrator.resolve_conflicts("stage-0", now=1500)

        assert snapshot.effective_config == {}
        assert snapshot.applied_suggestions == ()
        assert snapshot.conflicts == ()

    def test_expiry_boundary_is_inclusive(self, orchestrator):
        orchestrator.add_suggestion(_suggestion("a", 1, ttl=1000, timestamp=0))
        assert orchestrator.resolve_conflicts("s0", now=999).effective_config == {"a": 1}
        assert orchestrator.resolve_conflicts("s1", now=1000).effective_config == {}

    def test_expired_loser_does_not_conflict(self, orchestrator):
        orchestrator.add_suggestion(_suggestion("a", "old", priority=90, ttl=10, timestamp=0))
        orchestrator.add_suggestion(_suggestion("a", "new", priority=10, timestamp=50))
        snapshot = orchestrator.resolve_conflicts("stage-0", now=100)

        assert snapshot.effective_config == {"a": "new"}
        assert snapshot.conflicts == ()

    def test_base_config_is_merged_under_suggestions(self):
        orchestrator = ConfigOrchestrator(
            "run_test", clock=lambda: 0.0, base_config={"video": {"fps": 30, "quality": "sd"}}
        )
        orchestrator.add_suggestion(_suggestion("video.quality", "hd", timestamp=0))
        snapshot = orchestrator.resolve_conflicts("stage-0")
        assert snapshot.effective_config == {"video": {"fps": 30, "quality": "hd"}}


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


class TestSuggestions:
    def test_suggest_stamps_clock(self, orchestrator):
        assert orchestrator.suggest("audio.volume", 0.8, source="mixer")
        snapshot = orchestrator.resolve_conflicts("stage-0")
        applied = snapshot.applied_suggestions[0]
        assert applied.timestamp == 10_000.0
        assert applied.priority == 50

    def test_mapping_without_timestamp_uses_clock(self, orchestrator):
        assert orchestrator.add_suggestion({"path": "a.b", "value": 1, "source": "user"})
        assert orchestrator.pending_paths() == ["a.b"]

    @pytest.mark.parametrize(
        "raw",
        [
            {"path": "", "value": 1, "source": "x"},
            {"path": "a..b", "value": 1, "source": "x"},
            {"path": "a", "value": 1, "source": ""},
            {"path": "a", "value": 1, "source": "x", "ttl": 0},
            {"path": "a", "value": 1, "source": "x", "priority": "high"},
            {"value": 1, "source": "x"},
        ],
    )
    def test_invalid_suggestions_rejected(self, orchestrator, raw, caplog):
        assert orchestrator.add_suggestion(raw) is False
        assert orchestrator.pending_paths() == []
        assert "Rejected configuration suggestion" in caplog.text

    def test_model_validation_errors(self):
        with pytest.raises(ValidationError):
            ConfigSuggestion(path="a.", value=1, source="x", timestamp=0)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class TestSnapshots:
    def test_snapshot_history_and_lookup(self, orchestrator):
        orchestrator.add_suggestion(_suggestion("a", 1))
        orchestrator.resolve_conflicts("stage-0")
        orchestrator.add_suggestion(_suggestion("b", 2))
        orchestrator.resolve_conflicts("stage-1")

        assert [s.stage for s in orchestrator.snapshots] == ["stage-0", "stage-1"]
        assert orchestrator.get_snapshot("stage-0").effective_config == {"a": 1}
        assert orchestrator.get_snapshot("stage-1").effective_config == {"a": 1, "b": 2}
        assert orchestrator.get_snapshot("stage-9") is None

    def test_snapshots_are_immutable(self, orchestrator):
        orchestrator.add_suggestion(_suggestion("video.quality", "hd"))
        snapshot = orchestrator.resolve_conflicts("stage-0")

        with pytest.raises(ValidationError):
            snapshot.stage = "other"

        snapshot.effective_config["video"]["quality"] = "tampered"
        assert orchestrator.get_snapshot("stage-0").effective_config == {"video": {"quality": "hd"}}

    def test_clear(self, orchestrator):
        orchestrator.add_suggestion(_suggestion("a", 1))
        orchestrator.resolve_conflicts("stage-0")
        orchestrator.clear()
        assert orchestrator.snapshots == []
        assert orchestrator.pending_paths() == []


def test_set_nested_value_replaces_non_mapping_parents():
    tree = {"video": "legacy"}
    set_nested_value(tree, "video.quality.level", "hd")
    assert tree == {"video": {"quality": {"level": "hd"}}}
