"""Cheap vision pre-filter that drops non-action frames before perception.

Each frame is labelled with an action class, a coarse position and an action intensity
by a lightweight model. Batches that fail are treated as all-action (fail open), so a
triage outage never costs coverage.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from .errors import AnalysisError, ErrorCode
from .schemas import Frame

logger = logging.getLogger(__name__)

FrameClass = Literal["wrestling_action", "transition", "neutral_stance", "no_action", "unclear"]
TriagePosition = Literal["standing", "top", "bottom", "transition", "unknown"]
Intensity = Literal["none", "low", "medium", "high"]

FRAME_CLASSES = ("wrestling_action", "transition", "neutral_stance", "no_action", "unclear")
INTENSITY_ORDER: Dict[str, int] = {"none": 0, "low": 1, "medium": 2, "high": 3}
_NON_ACTION = {"no_action", "unclear"}

TRIAGE_SYSTEM_PROMPT = """You are a wrestling video frame classifier. For each frame, quickly determine:
1. Is there active wrestling happening?
2. What position are the wrestlers in?
3. How intense is the action?

Output JSON:
{
  "classifications": [
    {
      "frame_index": <number>,
      "classification": "<wrestling_action|transition|neutral_stance|no_action|unclear>",
      "position": "<standing|top|bottom|transition|unknown>",
      "action_intensity": "<high|medium|low|none>"
    }
  ]
}

Classification guide:
- wrestling_action: Takedowns, scrambles, riding, escapes, pins, any physical wrestling contact
- transition: Moving between positions, getting up from mat, ref's position
- neutral_stance: Both wrestlers standing, hand-fighting, circling, no active attack
- no_action: Referee stoppage, celebration, walking to center, crowd/scoreboard, pre/post match
- unclear: Blurry, obstructed view, cannot determine

Position guide:
- standing: Both wrestlers on their feet
- top: One wrestler controlling from top position (riding)
- bottom: One wrestler on bottom being controlled
- transition: Changing between positions (scramble, stand-up in progress)
- unknown: Cannot determine

Be fast and accurate. This is a quick classification, not a detailed analysis."""


class FrameTriage(BaseModel):
    frame_index: int
    classification: FrameClass = "unclear"
    position: TriagePosition = "unknown"
    action_intensity: Intensity = "medium"
    include_in_analysis: bool = False


class TriageSummary(BaseModel):
    total_frames: int
    included_frames: int
    filtered_frames: int
    classification_counts: Dict[str, int]
    duration_ms: int


class TriageResult(BaseModel):
    classifications: List[FrameTriage] = Field(default_factory=list)
    summary: TriageSummary

    @property
    def included_indices(self) -> List[int]:
        return [c.frame_index for c in self.classifications if c.include_in_analysis]


class AppliedTriage(BaseModel):
    frames: List[Frame]
    original_indices: List[int]
    pre_labels: Dict[int, FrameTriage]


def _normalize(raw: Dict[str, Any]) -> Dict[str, Any]:
    classification = str(raw.get("classification") or "unclear").strip().lower()
    position = str(raw.get("position") or "unknown").strip().lower()
    intensity = str(raw.get("action_intensity") or "medium").strip().lower()
    return {
        "classification": classification if classification in FRAME_CLASSES else "unclear",
        "position": position if position in ("standing", "top", "bottom", "transition", "unknown") else "unknown",
        "action_intensity": intensity if intensity in INTENSITY_ORDER else "medium",
    }


def _fail_open(start: int, count: int) -> List[Dict[str, Any]]:
    return [
        {
            "frame_index": start + i,
            "classification": "wrestling_action",
            "position": "unknown",
            "action_intensity": "medium",
        }
        for i in range(count)
    ]


async def _classify_batch(
    client: Any,
    batch: Sequence[Frame],
    start: int,
    model: Optional[str],
    max_tokens: int,
) -> List[Dict[str, Any]]:
    images = [(f"[Frame {start + i}]", frame) for i, frame in enumerate(batch)]
    prompt = (
        f"Classify these {len(batch)} wrestling video frames "
        f"(indices {start} to {start + len(batch) - 1})."
    )
    try:
        result = await client.complete_json(
            TRIAGE_SYSTEM_PROMPT,
            prompt,
            images=images,
            max_tokens=max_tokens,
            label="triage",
            model=model,
        )
    except AnalysisError as exc:
        if exc.code == ErrorCode.INVALID_API_KEY:
            raise
        logger.warning(f"[TRIAGE] batch at {start} failed ({exc.code.value}); including all {len(batch)} frames")
        return _fail_open(start, len(batch))

    data = result.data
    if isinstance(data, dict):
        data = data.get("classifications")
    if not isinstance(data, list):
        logger.warning(f"[TRIAGE] batch at {start} unparseable; including all {len(batch)} frames")
        return _fail_open(start, len(batch))
    return [item for item in data if isinstance(item, dict)]


async def triage_frames(
    client: Any,
    frames: Sequence[Frame],
    min_intensity: Intensity = "low",
    always_include_edge_frames: int = 2,
    max_output_frames: Optional[int] = None,
    batch_size: int = 8,
    model: Optional[str] = None,
    max_tokens: int = 1500,
) -> TriageResult:
    """Classify every frame and decide which ones continue to perception.

    ``frame_index`` values in the result are positions in ``frames``.
    """

    started = time.time()
    total = len(frames)
    batches = [(start, frames[start : start + batch_size]) for start in range(0, total, batch_size)]
    logger.info(f"[TRIAGE] classifying {total} frames in {len(batches)} batches")

    batch_results = await asyncio.gather(
        *(_classify_batch(client, batch, start, model, max_tokens) for start, batch in batches)
    )

    by_index: Dict[int, Dict[str, Any]] = {}
    for items in batch_results:
        for item in items:
            try:
                idx = int(item.get("frame_index"))
            except (TypeError, ValueError):
                continue
            by_index.setdefault(idx, item)

    floor = INTENSITY_ORDER.get(min_intensity, 1)

    def is_edge(idx: int) -> bool:
        return idx < always_include_edge_frames or idx >= total - always_include_edge_frames

    classifications: List[FrameTriage] = []
    for idx in range(total):
        fields = _normalize(by_index.get(idx, {}))
        is_action = fields["classification"] not in _NON_ACTION
        meets_floor = INTENSITY_ORDER[fields["action_intensity"]] >= floor
        classifications.append(
            FrameTriage(
                frame_index=idx,
                include_in_analysis=is_edge(idx) or (is_action and meets_floor),
                **fields,
            )
        )

    included = [c for c in classifications if c.include_in_analysis]
    if max_output_frames and len(included) > max_output_frames:
        ranked = sorted(
            included,
            key=lambda c: (0 if is_edge(c.frame_index) else 1, -INTENSITY_ORDER[c.action_intensity]),
        )
        keep = {c.frame_index for c in ranked[:max_output_frames]}
        classifications = [
            c if c.frame_index in keep else c.model_copy(update={"include_in_analysis": False})
            for c in classifications
        ]

    counts = {name: 0 for name in FRAME_CLASSES}
    for c in classifications:
        counts[c.classification] += 1
    included_count = sum(1 for c in classifications if c.include_in_analysis)

    summary = TriageSummary(
        total_frames=total,
        included_frames=included_count,
        filtered_frames=total - included_count,
        classification_counts=counts,
        duration_ms=int((time.time() - started) * 1000),
    )
    logger.info(f"[TRIAGE] kept {included_count}/{total} frames ({summary.duration_ms}ms)")
    return TriageResult(classifications=classifications, summary=summary)


def apply_triage(frames: Sequence[Frame], result: TriageResult) -> AppliedTriage:
    """Keep frames that passed triage along with their positions and pre-labels."""

    kept: List[Frame] = []
    original: List[int] = []
    labels: Dict[int, FrameTriage] = {}
    for c in result.classifications:
        if c.include_in_analysis and 0 <= c.frame_index < len(frames):
            kept.append(frames[c.frame_index])
            original.append(c.frame_index)
            labels[c.frame_index] = c
    return AppliedTriage(frames=kept, original_indices=original, pre_labels=labels)
