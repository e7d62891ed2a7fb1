"""Tests for file-based trace storage."""

import pytest

from stageflow.schemas.run import RunStatus, RunSummary
from stageflow.storage.trace_store import TraceStore


def _summary(run_id: str, status: RunStatus, started_at: str) -> RunSummary:
    return RunSummary(run_id=run_id, status=status, started_at=started_at, total_nodes=2)


@pytest.mark.asyncio
async def test_save_and_load(tmp_path):
    store = TraceStore(tmp_path)
    summary = _summary("run_1", RunStatus.FINISHED, "2024-01-01T00:00:00+00:00")
    trace = {"run_id": "run_1", "spans": [{"span_id": "span_1"}]}

    run_dir = await store.save_run(summary, trace)

    assert run_dir == tmp_path / "runs" / "run_1"
    assert (run_dir / "summary.json").exists()
    assert not list(run_dir.glob("*.tmp"))

    loaded = await store.load_summary("run_1")
    assert loaded.status == RunStatus.FINISHED
    assert loaded.success
    assert await store.load_trace("run_1") == trace


@pytest.mark.asyncio
async def test_missing_and_corrupt_runs(tmp_path):
    store = TraceStore(tmp_path)
    assert await store.load_summary("ghost") is None
    assert await store.list_runs() == []

    run_dir = tmp_path / "runs" / "broken"
    run_dir.mkdir(parents=True)
    (run_dir / "summary.json").write_text("{not json", encoding="utf-8")
    assert await store.load_summary("broken") is None
    assert await store.list_runs() == []


@pytest.mark.asyncio
async def test_list_runs_filters_and_orders(tmp_path):
    store = TraceStore(tmp_path)
    await store.save_run(_summary("old", RunStatus.FINISHED, "2024-01-01T00:00:00"), {})
    await store.save_run(_summary("new", RunStatus.FINISHED, "2024-03-01T00:00:00"), {})
    await store.save_run(_summary("bad", RunStatus.FAILED, "2024-02-01T00:00:00"), {})

    assert [s.run_id for s in await store.list_runs()] == ["new", "bad", "old"]
    assert [s.run_id for s in await store.list_runs(status="finished")] == ["new", "old"]
    assert [s.run_id for s in await store.list_runs(limit=1)] == ["new"]
