"""Pass 1: batched vision calls that turn frames into per-frame observations."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, ValidationError

from .errors import AnalysisError, ErrorCode
from .schemas import Frame, Observation, ParticipantIdentification, QualityFlag, SCORED_POSITIONS

logger = logging.getLogger(__name__)

_UPSTREAM_CODES = {ErrorCode.RATE_LIMITED, ErrorCode.UPSTREAM_UNAVAILABLE, ErrorCode.ANALYSIS_ERROR}
_MIN_VISIBLE_FOR_IDENTITY = 5


class PerceptionResult(BaseModel):
    observations: List[Observation] = Field(default_factory=list)
    batches_submitted: int = 0
    batches_failed: int = 0
    frames_submitted: int = 0
    coverage: float = 0.0
    identity_confidence: Optional[float] = None
    position_confidence: Dict[str, float] = Field(default_factory=dict)
    warnings: List[QualityFlag] = Field(default_factory=list)


def build_perception_prompt(
    athlete: Optional[ParticipantIdentification] = None,
    opponent: Optional[ParticipantIdentification] = None,
    has_reference_frame: bool = False,
) -> str:
    if athlete:
        focus = f"Focus on the wrestler wearing the {athlete.uniform_description.upper()} singlet/uniform."
        if athlete.initial_side:
            focus += f" At the start of the clip they are on the {athlete.initial_side} side of the frame."
    else:
        focus = "Focus on the primary wrestler visible."
    if opponent:
        focus += f" Their opponent wears {opponent.uniform_description}."
        if opponent.initial_side:
            focus += f" The opponent starts on the {opponent.initial_side} side."
    if has_reference_frame:
        focus += " A reference photo of the athlete is attached before the match frames; it is not a match frame."

    identity_fields = ""
    identity_rules = ""
    if athlete or opponent or has_reference_frame:
        identity_fields = (
            ',\n      "athlete_identity_consistent": <true if the wrestler described above is the one you are describing>'
            ',\n      "identity_notes": "<how you recognised the athlete, or why you are unsure>"'
        )
        identity_rules = (
            "\n\nIDENTITY TRACKING: two wrestlers are on the mat. Confirm in every frame that you are "
            "describing the same athlete. If uniforms are hard to tell apart or the wrestlers swapped "
            "sides, set athlete_identity_consistent=false and explain in identity_notes."
        )

    return f"""You are a wrestling video perception system. Your job is to describe EXACTLY what you see in each frame: body positions, grips, stances, movements, contact points. Do NOT score, judge, or recommend. Just observe.

{focus}

For each frame, output a JSON object with:
{{
  "observations": [
    {{
      "frame_index": <the index shown in the frame label>,
      "athlete_position": "<standing/top/bottom/transition/not_visible>",
      "athlete_body": "<describe stance width, knee bend, hip level, arm position, head position>",
      "opponent_body": "<describe opponent's position relative to athlete>",
      "contact_points": "<where are the wrestlers touching? grips, ties, holds>",
      "action": "<what movement/technique is happening in this frame>",
      "wrestler_visible": <true if the athlete is clearly identifiable>,
      "estimated_stance_height": "<low/medium/high>",
      "estimated_knee_angle": "<deep_bend/moderate/straight>",
      "relative_position": "<tied_up/on_mat/scramble/separated>",
      "weight_distribution": "<forward/balanced/backward>",
      "significance": "<CRITICAL/IMPORTANT/CONTEXT/SKIP>"{identity_fields}
    }}
  ]
}}

SIGNIFICANCE LEVELS:
- CRITICAL: Scoring actions (takedowns, escapes, reversals, near falls), points scored against, clear technique errors, exceptional execution
- IMPORTANT: Scrambles with position changes, defensive wins, key transitions between positions
- CONTEXT: Setup sequences, grip fighting establishing position, pre-shot setup
- SKIP: Routine hand fighting with no position change, resets, referee stoppages, inactivity{identity_rules}

Be precise and literal. Describe body angles, limb positions, and spatial relationships. If you cannot see something clearly, say so."""


def plan_batches(frames: Sequence[Frame], batch_size: int = 5, max_batches: int = 15) -> List[List[Frame]]:
    """Split frames into batches, resampling the middle ones when over ``max_batches``."""

    batches = [list(frames[i : i + batch_size]) for i in range(0, len(frames), batch_size)]
    if len(batches) <= max_batches:
        return batches
    if max_batches < 3:
        return [batches[0], batches[-1]][: max(max_batches, 1)]
    middle = batches[1:-1]
    wanted = max_batches - 2
    picked = [middle[int(j * len(middle) / wanted)] for j in range(wanted)]
    return [batches[0], *picked, batches[-1]]


def select_quick_frames(frames: Sequence[Frame], max_frames: int = 8) -> List[Frame]:
    """Keep the first and last frame and sample the middle evenly, up to ``max_frames``."""

    if len(frames) <= max_frames:
        return list(frames)
    if max_frames < 2:
        return list(frames[:max_frames])
    step = (len(frames) - 1) / (max_frames - 1)
    picked = sorted({int(round(i * step)) for i in range(max_frames)})
    return [frames[i] for i in picked]


def _parse_batch(data: Any, batch: Sequence[Frame]) -> List[Observation]:
    if isinstance(data, dict):
        data = data.get("observations")
    if not isinstance(data, list):
        return []
    valid = {frame.index for frame in batch}
    parsed: List[Observation] = []
    for position, item in enumerate(data):
        if not isinstance(item, dict):
            continue
        try:
            index = int(item.get("frame_index"))
        except (TypeError, ValueError):
            index = -1
        if index not in valid:
            # models sometimes count from 0 inside each batch
            if position >= len(batch):
                continue
            index = batch[position].index
        try:
            parsed.append(Observation.model_validate({**item, "frame_index": index}))
        except ValidationError as exc:
            logger.debug(f"[PASS1] dropping malformed observation for frame {index}: {exc.error_count()} errors")
    return parsed


def _frame_caption(frame: Frame, pre_labels: Optional[Dict[int, Any]]) -> str:
    caption = f"[Frame {frame.index}]"
    label = (pre_labels or {}).get(frame.index)
    if label is not None:
        caption += f" (pre-label: position={label.position}, intensity={label.action_intensity})"
    return caption


def identity_confidence(observations: Sequence[Observation]) -> Tuple[Optional[float], int]:
    """Ratio of visible frames where identity was confirmed, plus the visible count."""

    visible = [o for o in observations if o.wrestler_visible]
    tracked = [o for o in visible if o.athlete_identity_consistent is not None]
    if not tracked:
        return None, len(visible)
    consistent = sum(1 for o in tracked if o.athlete_identity_consistent)
    return round(consistent / len(visible), 3), len(visible)


def position_confidence(observations: Sequence[Observation]) -> Dict[str, float]:
    """Per scored position: share of its frames that are visible and not identity-doubtful."""

    result: Dict[str, float] = {}
    for position in SCORED_POSITIONS:
        in_position = [o for o in observations if o.athlete_position == position]
        if not in_position:
            result[position] = 0.0
            continue
        reliable = sum(
            1 for o in in_position if o.wrestler_visible and o.athlete_identity_consistent is not False
        )
        result[position] = round(reliable / len(in_position), 3)
    return result


def merge_observations(batches: Sequence[Sequence[Observation]]) -> List[Observation]:
    seen: Dict[int, Observation] = {}
    for batch in batches:
        for obs in batch:
            seen.setdefault(obs.frame_index, obs)
    return [seen[i] for i in sorted(seen)]


async def run_perception(
    client: Any,
    frames: Sequence[Frame],
    athlete: Optional[ParticipantIdentification] = None,
    opponent: Optional[ParticipantIdentification] = None,
    id_frame: Optional[str] = None,
    pre_labels: Optional[Dict[int, Any]] = None,
    batch_size: int = 5,
    max_batches: int = 15,
    model: Optional[str] = None,
    max_tokens: int = 2000,
    coverage_min_ratio: float = 0.7,
    identity_min_confidence: float = 0.5,
    telemetry: Any = None,
    on_batch: Optional[Callable[[int, int], None]] = None,
) -> PerceptionResult:
    """Run every Pass 1 batch concurrently and merge the results by frame index.

    ``on_batch(done, total)`` is called as each batch finishes, in completion order.
    """

    batches = plan_batches(frames, batch_size, max_batches)
    reference = Frame(index=0, data=id_frame) if id_frame else None
    system = build_perception_prompt(athlete, opponent, reference is not None)
    tracking = bool(athlete or opponent or reference)
    done = 0
    logger.info(f"[PASS1] {len(frames)} frames in {len(batches)} batches of up to {batch_size}")

    async def attempt(number: int, batch: List[Frame]) -> Tuple[List[Observation], Optional[AnalysisError], bool]:
        images = []
        if number == 0 and reference is not None:
            images.append(("[Reference photo: not a match frame, use it to identify the athlete]", reference))
        images.extend((_frame_caption(frame, pre_labels), frame) for frame in batch)
        prompt = (
            f"Observe these {len(batch)} frames (indices {batch[0].index} to {batch[-1].index}). "
            "Describe exactly what you see in each frame."
        )
        try:
            result = await client.complete_json(
                system, prompt, images=images, max_tokens=max_tokens, label="pass1", model=model
            )
        except AnalysisError as exc:
            if exc.code not in _UPSTREAM_CODES:
                raise
            logger.warning(f"[PASS1] batch {number + 1}/{len(batches)} failed: {exc.code.value}")
            return [], exc, False
        observations = _parse_batch(result.data, batch)
        if not result.parsed:
            logger.warning(f"[PASS1] batch {number + 1}/{len(batches)} unparseable; continuing with no observations")
        if telemetry is not None:
            telemetry.log("pass1_batch", batch=number + 1, of=len(batches), observations=len(observations))
        return observations, None, not result.parsed

    async def observe(number: int, batch: List[Frame]) -> Tuple[List[Observation], Optional[AnalysisError], bool]:
        nonlocal done
        outcome = await attempt(number, batch)
        done += 1
        if on_batch is not None:
            on_batch(done, len(batches))
        return outcome

    outcomes = await asyncio.gather(*(observe(n, b) for n, b in enumerate(batches)))

    upstream_errors = [err for _, err, _ in outcomes if err is not None]
    parse_failures = sum(1 for _, _, failed in outcomes if failed)
    if batches and len(upstream_errors) == len(batches):
        raise AnalysisError(
            ErrorCode.PASS1_FAILED,
            "every perception batch failed upstream",
            reasons=sorted({err.code.value for err in upstream_errors}),
        )

    observations = merge_observations([obs for obs, _, _ in outcomes])
    submitted = len(frames)
    coverage = len(observations) / submitted if submitted else 0.0
    warnings: List[QualityFlag] = []

    failed = len(upstream_errors) + parse_failures
    if failed:
        warnings.append(
            QualityFlag(
                check="pass1_batches_failed",
                severity="warning",
                detail=f"{failed}/{len(batches)} perception batches returned no observations",
            )
        )
    if coverage < coverage_min_ratio:
        warnings.append(
            QualityFlag(
                check="pass1_coverage",
                severity="warning",
                detail=f"Pass 1 observed {len(observations)}/{submitted} frames ({round(coverage * 100)}% coverage)",
            )
        )

    identity, visible = identity_confidence(observations) if tracking else (None, 0)
    if identity is not None and identity < identity_min_confidence and visible >= _MIN_VISIBLE_FOR_IDENTITY:
        warnings.append(
            QualityFlag(
                check="identity_low",
                severity="warning",
                detail=f"Athlete identity confirmed in only {round(identity * 100)}% of {visible} visible frames",
            )
        )

    result = PerceptionResult(
        observations=observations,
        batches_submitted=len(batches),
        batches_failed=failed,
        frames_submitted=submitted,
        coverage=round(coverage, 3),
        identity_confidence=identity,
        position_confidence=position_confidence(observations),
        warnings=warnings,
    )
    logger.info(
        f"[PASS1] complete: {len(observations)} observations, {failed} failed batches, coverage={result.coverage}"
    )
    return result


def select_display_frames(
    observations: Sequence[Observation],
    max_frames: int = 20,
    min_frames: int = 8,
) -> List[int]:
    """Pick the frames shown to the user: all CRITICAL, then IMPORTANT, then some CONTEXT."""

    critical = [o.frame_index for o in observations if o.significance == "CRITICAL"]
    important = [o.frame_index for o in observations if o.significance == "IMPORTANT"]
    context = [o.frame_index for o in observations if o.significance == "CONTEXT"]

    selected: List[int] = []

    def add(index: int) -> None:
        if index not in selected:
            selected.append(index)

    for index in critical:
        if len(selected) >= max_frames:
            break
        add(index)
    for index in important:
        if len(selected) >= max_frames:
            break
        add(index)
    context_cap = min(max_frames, min_frames + len(critical) + len(important))
    for index in context:
        if len(selected) >= context_cap:
            break
        add(index)
    if len(selected) < min_frames and len(observations) >= min_frames:
        for obs in observations:
            if len(selected) >= min_frames:
                break
            add(obs.frame_index)
    return sorted(selected)
