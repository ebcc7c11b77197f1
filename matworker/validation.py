"""Quality gate for athlete-mode Pass 2 output.

Three passes run in order on a deep copy of the assessment:

* hallucination detection, which may clamp and correct fields,
* pipeline invariants on the corrected copy,
* cross-pass checks against the Pass 1 observations.

Nothing here raises. Every finding becomes a severity-tagged ``QualityFlag``.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

from .knowledge import KNOWN_TECHNIQUE_TERMS, SUBSCORE_MAX, compute_overall
from .schemas import SCORED_POSITIONS, Observation, QualityFlag, ScoredAssessment

logger = logging.getLogger(__name__)

MIN_REASONING_CHARS = 100
MIN_KEY_MOMENTS = 3
MIN_EVIDENCE_PER_POSITION = 2
EVIDENCE_FLOOR_FRAMES = 10
OBSERVATION_COVERAGE_MIN = 0.7
OVERCONFIDENT_THRESHOLD = 0.8
OVERCONFIDENT_MIN_EVIDENCE = 5
OVERALL_TOLERANCE = 3
ARITHMETIC_TOLERANCE = 1
SUBSCORE_SUM_TOLERANCE = 5
SCORING_INFLATION_FACTOR = 2


def _flag(check: str, severity: str, detail: str) -> QualityFlag:
    return QualityFlag(check=check, severity=severity, detail=detail)


def _fmt(value: float) -> str:
    return f"{value:g}"


def _sub_scores(assessment: ScoredAssessment, position: str) -> Dict[str, float]:
    return getattr(assessment.sub_scores, position).model_dump()


def detect_hallucinations(assessment: ScoredAssessment, frame_count: int) -> List[QualityFlag]:
    """Flag suspicious output and correct ``assessment`` in place."""

    flags: List[QualityFlag] = []
    scores = assessment.position_scores

    if scores.standing == scores.top == scores.bottom:
        flags.append(
            _flag("identical_position_scores", "warning", "All position scores are identical, possible hallucination")
        )

    all_subs = [v for pos in SCORED_POSITIONS for v in _sub_scores(assessment, pos).values()]
    if all_subs and all(v % 5 == 0 for v in all_subs):
        flags.append(
            _flag(
                "uniform_round_subscores",
                "info",
                "All sub-scores are multiples of 5, possible lack of differentiation",
            )
        )

    evidence = assessment.frame_evidence
    if not evidence:
        flags.append(
            _flag("no_frame_evidence", "warning", "No frame evidence provided; analysis may not be grounded in observations")
        )

    if assessment.confidence > OVERCONFIDENT_THRESHOLD and len(evidence) < OVERCONFIDENT_MIN_EVIDENCE:
        flags.append(
            _flag(
                "overconfident",
                "warning",
                f"Confidence {_fmt(assessment.confidence)} with only {len(evidence)} evidence citations",
            )
        )

    expected = compute_overall(scores.standing, scores.top, scores.bottom)
    if abs(assessment.overall_score - expected) > OVERALL_TOLERANCE:
        flags.append(
            _flag(
                "overall_mismatch",
                "warning",
                f"Overall score {_fmt(assessment.overall_score)} doesn't match calculated {expected}",
            )
        )

    last = max(frame_count - 1, 0)
    for item in evidence:
        if item.frame_index < 0 or item.frame_index >= frame_count:
            flags.append(
                _flag(
                    "evidence_index_clamped",
                    "warning",
                    f"Frame evidence references invalid index {item.frame_index} (valid: 0-{last})",
                )
            )
            item.frame_index = max(0, min(item.frame_index, last))

    for position in SCORED_POSITIONS:
        cap = SUBSCORE_MAX[position]
        block = getattr(assessment.sub_scores, position)
        for key, value in block.model_dump().items():
            if value < 0 or value > cap:
                flags.append(
                    _flag(
                        "subscore_out_of_range",
                        "warning",
                        f"{position.capitalize()} sub-score {key}={_fmt(value)} out of range 0-{cap}",
                    )
                )
                setattr(block, key, max(0, min(value, cap)))

    for position in SCORED_POSITIONS:
        total = sum(_sub_scores(assessment, position).values())
        current = getattr(scores, position)
        if abs(current - total) > SUBSCORE_SUM_TOLERANCE:
            flags.append(
                _flag(
                    "position_subscore_mismatch",
                    "warning",
                    f"{position.capitalize()} score {_fmt(current)} doesn't match sub-score sum {_fmt(total)}",
                )
            )
            setattr(scores, position, total)

    # overall always tracks the (possibly corrected) position scores
    assessment.overall_score = compute_overall(scores.standing, scores.top, scores.bottom)

    unknown = [
        item.action
        for item in evidence
        if item.action != "Frame not analyzed"
        and not any(term in item.action.lower() for term in KNOWN_TECHNIQUE_TERMS)
    ]
    if evidence and len(unknown) > len(evidence) * 0.5:
        flags.append(
            _flag(
                "taxonomy_drift",
                "info",
                "Over half of frame actions use non-standard terms: " + ", ".join(unknown[:3]),
            )
        )

    return flags


def check_invariants(
    assessment: ScoredAssessment,
    frame_count: int,
    observation_count: int,
) -> List[QualityFlag]:
    flags: List[QualityFlag] = []
    evidence = assessment.frame_evidence

    if frame_count > 0 and observation_count < frame_count * OBSERVATION_COVERAGE_MIN:
        flags.append(
            _flag(
                "observation_coverage",
                "warning",
                f"Only {observation_count}/{frame_count} observations "
                f"({round(observation_count / frame_count * 100)}% coverage)",
            )
        )

    referenced = {item.position for item in evidence}
    for position in SCORED_POSITIONS:
        count = sum(1 for item in evidence if item.position == position)
        if position in referenced and count < MIN_EVIDENCE_PER_POSITION:
            flags.append(_flag("evidence_density", "warning", f"Only {count} frame evidence for {position} position"))

    for position, text in assessment.position_reasoning.model_dump().items():
        if len(text) < MIN_REASONING_CHARS:
            flags.append(
                _flag(
                    "reasoning_depth",
                    "warning",
                    f"{position} reasoning only {len(text)} chars (min {MIN_REASONING_CHARS})",
                )
            )

    scores = assessment.position_scores
    expected = compute_overall(scores.standing, scores.top, scores.bottom)
    if abs(assessment.overall_score - expected) > ARITHMETIC_TOLERANCE:
        flags.append(
            _flag("score_calculation", "error", f"Overall {_fmt(assessment.overall_score)} vs calculated {expected}")
        )

    key_moments = sum(1 for item in evidence if item.is_key_moment)
    if key_moments < MIN_KEY_MOMENTS and frame_count >= EVIDENCE_FLOOR_FRAMES:
        flags.append(
            _flag(
                "key_frame_density",
                "info",
                f"Only {key_moments} key moments identified from {frame_count} frames",
            )
        )

    if not evidence:
        flags.append(_flag("no_evidence", "error", "Pass 2 returned zero frame evidence entries"))

    return flags


def cross_validate(
    observations: Sequence[Observation],
    assessment: ScoredAssessment,
    frame_count: int,
    raw_indices: Sequence[int] = (),
) -> List[QualityFlag]:
    """Compare Pass 2 claims with what Pass 1 actually saw.

    ``raw_indices`` are the evidence frame indices as Pass 2 returned them, before any
    clamping.
    """

    flags: List[QualityFlag] = []

    critical = sum(1 for obs in observations if obs.significance == "CRITICAL")
    claimed = assessment.match_stats.total()
    if claimed > 0 and critical > 0 and claimed > critical * SCORING_INFLATION_FACTOR:
        flags.append(
            _flag(
                "scoring_inflation",
                "warning",
                f"Pass 2 claims {claimed} scoring events but Pass 1 only found {critical} critical actions",
            )
        )

    for position, text in assessment.position_reasoning.model_dump().items():
        if len(text) < MIN_REASONING_CHARS:
            flags.append(_flag("shallow_reasoning", "warning", f"{position} reasoning is only {len(text)} chars"))

    per_position: Dict[str, int] = {}
    for item in assessment.frame_evidence:
        per_position[item.position] = per_position.get(item.position, 0) + 1
    if frame_count >= EVIDENCE_FLOOR_FRAMES:
        for position in SCORED_POSITIONS:
            count = per_position.get(position, 0)
            if count < MIN_EVIDENCE_PER_POSITION:
                flags.append(_flag("sparse_evidence", "warning", f"Only {count} evidence frames for {position}"))

    key_moments = sum(1 for item in assessment.frame_evidence if item.is_key_moment)
    if key_moments < MIN_KEY_MOMENTS and frame_count >= EVIDENCE_FLOOR_FRAMES:
        flags.append(
            _flag("few_key_frames", "info", f"Only {key_moments} key moments identified from {frame_count} frames")
        )

    out_of_bounds = [i for i in raw_indices if i < 0 or i >= frame_count]
    if out_of_bounds:
        flags.append(
            _flag(
                "evidence_out_of_bounds",
                "error",
                f"{len(out_of_bounds)} frame evidence entries have invalid indices",
            )
        )

    return flags


def validate_assessment(
    assessment: ScoredAssessment,
    observations: Sequence[Observation],
    frame_count: int,
    observation_count: int,
) -> Tuple[ScoredAssessment, List[QualityFlag]]:
    """Return ``(corrected_copy, flags)``; the input assessment is left untouched."""

    corrected = assessment.model_copy(deep=True)
    raw_indices = [item.frame_index for item in assessment.frame_evidence]

    flags = detect_hallucinations(corrected, frame_count)
    flags += check_invariants(corrected, frame_count, observation_count)
    flags += cross_validate(observations, corrected, frame_count, raw_indices)

    if flags:
        errors = sum(1 for f in flags if f.severity == "error")
        logger.info(f"[VALIDATION] {len(flags)} quality flags ({errors} errors): {[f.check for f in flags]}")
    return corrected, flags
