from __future__ import annotations

import time
from typing import Any, Dict, Optional


class JobMonitor:
    """Throttled heartbeats for one analysis job.

    Stage transitions are always recorded; repeated progress updates within the same
    stage are dropped when they arrive faster than ``min_interval``.
    """

    def __init__(
        self,
        jobs_store: Dict[str, Dict[str, Any]],
        job_id: str,
        min_interval: float = 0.75,
    ):
        self.jobs = jobs_store
        self.job_id = job_id
        self.min_interval = float(min_interval)
        self._last_emit = 0.0
        self._stage: Optional[str] = None

    def touch(
        self,
        stage: Optional[str] = None,
        pct: Optional[float] = None,
        detail: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        now = time.time()
        stage_changed = stage is not None and stage != self._stage
        if not stage_changed and now - self._last_emit < self.min_interval:
            return
        self._last_emit = now

        job = self.jobs.get(self.job_id)
        if job is None:
            return
        job["last_heartbeat_at"] = now
        job["updated_at"] = now
        if stage_changed:
            self._stage = stage
            job["stage"] = stage
            job.setdefault("stages", []).append({"stage": stage, "at": now})
        if pct is not None:
            job["pct"] = max(0.0, min(100.0, round(float(pct), 1)))
        if detail is not None:
            job["detail"] = str(detail)
        if fields:
            progress = job.setdefault("progress", {})
            for key, value in fields.items():
                if value is None:
                    progress.pop(key, None)
                else:
                    progress[key] = value

    def stage_callback(self):
        """Adapter matching the pipeline's ``on_stage(stage, pct, detail)`` signature."""

        def _on_stage(stage: str, pct: float, detail: str) -> None:
            self.touch(stage=stage, pct=pct, detail=detail or None)

        return _on_stage

    def progress_callback(self):
        """Adapter for ``on_progress(fields)``: in-stage counters such as Pass 1 batches done."""

        def _on_progress(fields: Dict[str, Any]) -> None:
            self.touch(fields=fields)

        return _on_progress
