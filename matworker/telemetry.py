from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Literal, Optional

logger = logging.getLogger(__name__)

PipelineStage = Literal[
    "triage_start",
    "triage_complete",
    "dedup_complete",
    "quick_select",
    "pass1_start",
    "pass1_batch",
    "pass1_complete",
    "identity_check",
    "pose_estimation",
    "temporal_analysis",
    "summarization",
    "pass2_start",
    "pass2_complete",
    "validation",
    "save",
    "error",
]


class PipelineLogger:
    """Timestamped stage entries for one pipeline run.

    Entries are kept for the response's telemetry block and mirrored to the module
    logger so they reach whatever sink logging is configured with.
    """

    def __init__(self, job_id: Optional[str] = None):
        self.job_id = job_id
        self.entries: List[Dict[str, Any]] = []
        self._start = time.monotonic()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000)

    def _record(self, level: int, stage: PipelineStage, data: Dict[str, Any]) -> None:
        elapsed = self.elapsed_ms()
        self.entries.append({"stage": stage, "elapsed_ms": elapsed, "data": data})
        logger.log(
            level,
            f"[{stage}] +{elapsed}ms",
            extra={"stage": stage, "elapsed_ms": elapsed, "job_id": self.job_id, "data": data},
        )

    def log(self, stage: PipelineStage, **data: Any) -> None:
        self._record(logging.INFO, stage, data)

    def warn(self, stage: PipelineStage, **data: Any) -> None:
        self._record(logging.WARNING, stage, data)

    def summary(self) -> Dict[str, Any]:
        return {
            "total_ms": self.elapsed_ms(),
            "stages": len(self.entries),
            "entries": list(self.entries),
        }
