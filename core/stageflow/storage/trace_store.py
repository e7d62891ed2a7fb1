"""File-based storage for run traces.

Each run gets its own directory; there is no shared index, so ``list_runs()``
scans the directory and loads summary.json from each run.

Storage layout::

    {base_path}/
      runs/
        {run_id}/
          summary.json   # RunSummary
          trace.json     # Tracer.export() plus configuration snapshots
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from stageflow.schemas.run import RunSummary

logger = logging.getLogger(__name__)


class TraceStore:
    """Persists run summaries and exported traces, one directory per run."""

    def __init__(self, base_path: Path | str) -> None:
        self._base_path = Path(base_path)

    def _get_run_dir(self, run_id: str) -> Path:
        return self._base_path / "runs" / run_id

    # -------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------

    async def save_run(self, summary: RunSummary, trace: dict[str, Any]) -> Path:
        """Write summary.json and trace.json atomically. Returns the run directory."""
        run_dir = self._get_run_dir(summary.run_id)
        await asyncio.to_thread(run_dir.mkdir, parents=True, exist_ok=True)
        await self._write_json(run_dir / "trace.json", trace)
        await self._write_json(run_dir / "summary.json", summary.model_dump(mode="json"))
        logger.debug(f"Trace for {summary.run_id} saved to {run_dir}")
        return run_dir

    # -------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------

    async def load_summary(self, run_id: str) -> RunSummary | None:
        data = await self._read_json(self._get_run_dir(run_id) / "summary.json")
        if data is None:
            return None
        data.pop("success", None)  # computed
        return RunSummary(**data)

    async def load_trace(self, run_id: str) -> dict | None:
        return await self._read_json(self._get_run_dir(run_id) / "trace.json")

    async def list_runs(self, status: str = "", limit: int = 20) -> list[RunSummary]:
        """Load summaries of stored runs, most recent first."""
        run_ids = await asyncio.to_thread(self._scan_run_dirs)
        summaries: list[RunSummary] = []

        for run_id in run_ids:
            summary = await self.load_summary(run_id)
            if summary is None:
                continue
            if status and summary.status != status:
                continue
            summaries.append(summary)

        summaries.sort(key=lambda s: s.started_at, reverse=True)
        return summaries[:limit]

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _scan_run_dirs(self) -> list[str]:
        runs_dir = self._base_path / "runs"
        if not runs_dir.exists():
            return []
        return [d.name for d in runs_dir.iterdir() if d.is_dir()]

    @staticmethod
    async def _write_json(path: Path, data: dict) -> None:
        """Write JSON atomically: write to .tmp then rename."""
        tmp = path.with_suffix(".tmp")
        content = json.dumps(data, indent=2, ensure_ascii=False, default=str)

        def _write() -> None:
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)

        await asyncio.to_thread(_write)

    @staticmethod
    async def _read_json(path: Path) -> dict | None:
        """Read and parse a JSON file. Returns None if missing or corrupt."""

        def _read() -> dict | None:
            if not path.exists():
                return None
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to read %s: %s", path, e)
                return None

        return await asyncio.to_thread(_read)
