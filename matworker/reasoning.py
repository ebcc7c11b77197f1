"""Pass 2: one structured reasoning call that scores (or scouts) from the observations."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import AnalysisError, ErrorCode
from .knowledge import TECHNIQUE_TAXONOMY, build_knowledge_base_prompt, interpret_score
from .schemas import (
    FatigueAnalysis,
    MatchContext,
    Observation,
    ParticipantIdentification,
    ScoredAssessment,
    ScoutingResult,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

ATHLETE_SCHEMA_NAME = "wrestling_analysis"
SCOUTING_SCHEMA_NAME = "opponent_scouting"
PASS2_ATTEMPTS = 2


def _match_context_section(context: Optional[MatchContext]) -> str:
    if context is None or context.is_empty():
        return ""
    parts = []
    if context.weight_class:
        parts.append(f"Weight class: {context.weight_class}")
    if context.competition_name:
        parts.append(f"Competition: {context.competition_name}")
    if context.round_number:
        parts.append(f"Round/Match #: {context.round_number}")
    if context.days_from_weigh_in is not None:
        parts.append(f"Days from weigh-in: {context.days_from_weigh_in}")
    return (
        "\nMATCH CONTEXT:\n"
        + "\n".join(parts)
        + "\nUse this context to inform your analysis. If the athlete weighed in recently, consider whether "
        "technique degradation might be fatigue from a weight cut rather than a skill gap.\n"
    )


def build_athlete_prompt(
    athlete: Optional[ParticipantIdentification],
    match_style: str,
    frame_count: int,
    match_context: Optional[MatchContext] = None,
) -> str:
    uniform = f" wearing a {athlete.uniform_description} singlet" if athlete else ""
    standing = TECHNIQUE_TAXONOMY["standing"]
    return f"""You are an expert youth wrestling coach and video analyst. You are given frame-by-frame observations from a wrestling match and must produce a detailed, rubric-based technical analysis.

ATHLETE: The wrestler{uniform}.
{_match_context_section(match_context)}
{build_knowledge_base_prompt(match_style)}

TECHNIQUE REFERENCE (use these terms in your analysis):
Standing offense: {', '.join(standing['offense'])}
Standing defense: {', '.join(standing['defense'])}
Top techniques: {', '.join(TECHNIQUE_TAXONOMY['top'])}
Bottom techniques: {', '.join(TECHNIQUE_TAXONOMY['bottom'])}

INSTRUCTIONS:
1. Read ALL frame observations carefully. Map each observation to the rubric sub-criteria.
2. Score each sub-criterion based ONLY on evidence from the observations. If a position was not observed, score it based on what limited evidence exists (do not assume zero).
3. Calculate position scores as the sum of their sub-criteria.
4. Calculate overall = standing*0.4 + top*0.3 + bottom*0.3 (round to nearest integer).
5. Cite specific frame indices as evidence for your scores. Every evidence entry needs a rubric_impact.
6. Recommend drills that directly address the weaknesses found.
7. Set confidence based on wrestler visibility across frames, variety of positions observed, and video quality.

SCORING ACTION TRACKING:
8. For frame_evidence actions that involve scoring, prefix with the actor:
   - "ATHLETE: Takedown (double leg)" when the athlete scored
   - "OPPONENT: Takedown (single leg)" when the opponent scored
   - "ATHLETE: Escape (standup)" when the athlete scored an escape
   This prefix is REQUIRED for any scoring action. Non-scoring actions do not need a prefix.
9. Count scoring actions in match_stats: takedowns_scored, takedowns_allowed, reversals_scored, escapes_scored, near_falls_scored, pins_scored.
10. Determine match_result if possible from the evidence (win/loss/draw/unknown) and result_type (pin/tech_fall/major_decision/decision/unknown).

FATIGUE DETECTION:
11. Split the frame observations into two halves (first half = early match, second half = late match).
12. Compare technique quality between the halves: stance height, defensive reaction speed, shot commitment, scoring rate.
13. Estimate a score for each half. If second_half is more than 10 points lower, set conditioning_flag=true.
14. Consider match context (weight cut, round number) when interpreting fatigue signs.

ANTI-HALLUCINATION RULES:
- Do NOT invent techniques that were not described in the observations.
- If the observations say "not visible" or "unclear", lower your confidence.
- Sub-scores within a position should NOT all be identical; differentiate based on evidence.
- Do NOT give round numbers (multiples of 5) for every sub-score; use specific values justified by evidence.
- If you see fewer than 3 frames in a position, note this limitation in your reasoning.
- Only cite frame indices that appear in the observations.

The match had {frame_count} frames analyzed (valid frame indices 0-{max(frame_count - 1, 0)})."""


QUICK_FATIGUE_NOTE = "Quick mode - fatigue analysis skipped"


def build_quick_athlete_prompt(
    athlete: Optional[ParticipantIdentification],
    match_style: str,
    frame_count: int,
) -> str:
    """Compressed rubric prompt for quick mode: fewer drills, no fatigue split."""

    uniform = f" wearing a {athlete.uniform_description} singlet" if athlete else ""
    return f"""You are an expert youth wrestling coach. Quick tournament analysis mode, be concise.

ATHLETE: The wrestler{uniform}.

{build_knowledge_base_prompt(match_style)}

INSTRUCTIONS:
1. Score each sub-criterion based on the frame observations.
2. Calculate overall = standing*0.4 + top*0.3 + bottom*0.3 (round to nearest integer).
3. Cite frame indices as evidence. Prefix scoring actions with ATHLETE: or OPPONENT:.
4. List the top 2 strengths and top 2 weaknesses.
5. Recommend 2 priority drills.
6. Set confidence based on visibility and position variety.
7. Leave fatigue_analysis at its defaults with conditioning_notes="{QUICK_FATIGUE_NOTE}".
8. Estimate match_result if possible, otherwise result="unknown".

{frame_count} frames analyzed (valid frame indices 0-{max(frame_count - 1, 0)}). Focus on key moments."""


def build_scouting_prompt(opponent: Optional[ParticipantIdentification], match_style: str) -> str:
    uniform = f" wearing a {opponent.uniform_description} singlet" if opponent else ""
    return f"""You are an expert wrestling scout and tactician. You are given frame-by-frame observations of an OPPONENT wrestler{uniform} and must produce a tactical scouting report with a gameplan.

{build_knowledge_base_prompt(match_style)}

INSTRUCTIONS:
1. Analyze the opponent's attack patterns: what techniques they use most, how they set them up, how effective they are.
2. Analyze their defense patterns: how they react to attacks, their sprawl quality, their counter-wrestling.
3. Identify their position preferences and tendencies (do they prefer standing? Are they dangerous on top?).
4. Look for conditioning indicators: do they slow down in later frames? Is their technique deteriorating?
5. Build a period-by-period gameplan for how to beat this opponent.
6. Recommend specific counter-techniques for their primary attacks.

Be specific and tactical. This scouting report will be used by a wrestler preparing for a match against this opponent."""


def _half_lines(observations: Sequence[Observation]) -> List[str]:
    return [
        f"Frame {o.frame_index}: position={o.athlete_position}, body={o.athlete_body}, action={o.action}"
        for o in observations
    ]


def build_athlete_user_prompt(
    observations: Sequence[Observation],
    observation_text: str,
    frame_count: int,
    temporal_context: str = "",
    pose_context: str = "",
    compact_halves: bool = False,
) -> str:
    half = len(observations) // 2
    first, second = list(observations[:half]), list(observations[half:])

    if compact_halves:
        first_body = f"frames {first[0].frame_index}-{first[-1].frame_index}" if first else "no frames"
        second_body = f"frames {second[0].frame_index}-{second[-1].frame_index}" if second else "no frames"
        halves = (
            f"\n--- FIRST HALF (early match): {first_body} ---"
            f"\n--- SECOND HALF (late match): {second_body} ---"
        )
    else:
        halves = (
            f"\n\n--- FIRST HALF (observations 0-{max(half - 1, 0)}, early match) ---\n"
            + "\n".join(_half_lines(first))
            + f"\n\n--- SECOND HALF (observations {half}-{max(len(observations) - 1, 0)}, late match) ---\n"
            + "\n".join(_half_lines(second))
        )

    extras = "\n\n".join(part for part in (temporal_context, pose_context) if part)
    if extras:
        extras = "\n\n" + extras

    return (
        f"Here are the frame-by-frame observations from the match ({frame_count} frames total):\n\n"
        f"{observation_text}{extras}\n\n"
        f"For fatigue analysis, here are the observations split by match half:{halves}\n\n"
        "Score this wrestler's technique using the rubric. Cite specific frame indices as evidence. "
        f"Also complete the fatigue analysis comparing first half vs second half. Submit the result with the "
        f"{ATHLETE_SCHEMA_NAME} tool."
    )


async def _structured_call(
    client: Any,
    system: str,
    prompt: str,
    schema_name: str,
    model_cls: Type[ModelT],
    max_tokens: int,
    model: Optional[str],
) -> ModelT:
    schema = model_cls.model_json_schema()
    problems: List[str] = []
    for attempt in range(1, PASS2_ATTEMPTS + 1):
        result = await client.complete_structured(
            system,
            prompt,
            schema_name=schema_name,
            schema=schema,
            max_tokens=max_tokens,
            label="pass2",
            model=model,
        )
        if not result.parsed:
            problems.append(f"attempt {attempt}: no structured output")
            logger.warning(f"[PASS2] attempt {attempt}/{PASS2_ATTEMPTS} returned no structured output")
            continue
        try:
            return model_cls.model_validate(result.data)
        except ValidationError as exc:
            problems.append(f"attempt {attempt}: {exc.error_count()} schema errors")
            logger.warning(
                f"[PASS2] attempt {attempt}/{PASS2_ATTEMPTS} failed schema validation: {exc.errors()[:3]}"
            )
    raise AnalysisError(ErrorCode.PASS2_FAILED, "reasoning output failed schema validation", reasons=problems)


async def run_athlete_reasoning(
    client: Any,
    observations: Sequence[Observation],
    observation_text: str,
    frame_count: int,
    match_style: str = "folkstyle",
    athlete: Optional[ParticipantIdentification] = None,
    match_context: Optional[MatchContext] = None,
    temporal_context: str = "",
    pose_context: str = "",
    compact_halves: bool = False,
    max_tokens: int = 4096,
    model: Optional[str] = None,
    quick: bool = False,
) -> ScoredAssessment:
    if quick:
        system = build_quick_athlete_prompt(athlete, match_style, frame_count)
        prompt = (
            f"Frame observations:\n\n{observation_text}\n\n"
            f"Score this wrestler. Be concise. Submit the result with the {ATHLETE_SCHEMA_NAME} tool."
        )
    else:
        system = build_athlete_prompt(athlete, match_style, frame_count, match_context)
        prompt = build_athlete_user_prompt(
            observations, observation_text, frame_count, temporal_context, pose_context, compact_halves
        )
    logger.info(f"[PASS2] athlete reasoning over {len(observations)} observations ({len(prompt)} prompt chars)")
    assessment = await _structured_call(
        client, system, prompt, ATHLETE_SCHEMA_NAME, ScoredAssessment, max_tokens, model
    )
    if quick:
        assessment.fatigue_analysis = FatigueAnalysis(conditioning_notes=QUICK_FATIGUE_NOTE)
    logger.info(
        f"[PASS2] overall={assessment.overall_score} confidence={assessment.confidence} "
        f"evidence={len(assessment.frame_evidence)}"
    )
    return assessment


async def run_scouting_reasoning(
    client: Any,
    observation_text: str,
    match_style: str = "folkstyle",
    opponent: Optional[ParticipantIdentification] = None,
    max_tokens: int = 4096,
    model: Optional[str] = None,
) -> ScoutingResult:
    system = build_scouting_prompt(opponent, match_style)
    prompt = (
        f"Here are the frame-by-frame observations of the opponent:\n\n{observation_text}\n\n"
        "Produce a tactical scouting report with a gameplan to beat this opponent. "
        f"Submit it with the {SCOUTING_SCHEMA_NAME} tool."
    )
    scouting = await _structured_call(
        client, system, prompt, SCOUTING_SCHEMA_NAME, ScoutingResult, max_tokens, model
    )
    logger.info(
        f"[PASS2] scouting complete: {len(scouting.attack_patterns)} attack patterns, "
        f"{len(scouting.defense_patterns)} defense patterns"
    )
    return scouting


def _padding(frame_index: int) -> Dict[str, Any]:
    return {
        "frame_number": frame_index + 1,
        "position": "other",
        "action": "Frame not analyzed",
        "is_key_moment": False,
        "detail": "This frame was not selected as key evidence.",
        "wrestler_visible": False,
        "confidence": 0,
    }


def normalize_athlete_output(
    assessment: ScoredAssessment,
    frame_count: int,
    display_frames: Optional[Sequence[int]] = None,
    model_name: str = "",
) -> Dict[str, Any]:
    """Client document: one annotation per frame, flat drill strings, enriched detail."""

    shown = set(display_frames) if display_frames is not None else None
    by_frame: Dict[int, Dict[str, Any]] = {}
    for evidence in assessment.frame_evidence:
        if evidence.frame_index in by_frame:
            continue
        if shown is not None and evidence.frame_index not in shown:
            continue
        entry: Dict[str, Any] = {
            "frame_number": evidence.frame_index + 1,
            "position": evidence.position,
            "action": evidence.action,
            "is_key_moment": evidence.is_key_moment,
            "detail": evidence.detail,
            "wrestler_visible": evidence.wrestler_visible,
            "confidence": assessment.confidence if evidence.wrestler_visible else assessment.confidence * 0.5,
        }
        if evidence.key_moment_type:
            entry["key_moment_type"] = evidence.key_moment_type
        if evidence.rubric_impact:
            entry["rubric_impact"] = evidence.rubric_impact
        by_frame[evidence.frame_index] = entry

    annotations = [by_frame.get(i) or _padding(i) for i in range(frame_count)]

    return {
        "mode": "athlete",
        "overall_score": assessment.overall_score,
        "position_scores": assessment.position_scores.model_dump(),
        "position_reasoning": assessment.position_reasoning.model_dump(),
        "frame_annotations": annotations,
        "strengths": list(assessment.strengths),
        "weaknesses": list(assessment.weaknesses),
        "drills": [f"{d.name}: {d.reps} - {d.description}" for d in assessment.drills],
        "summary": assessment.summary,
        "model": model_name,
        "frames_analyzed": frame_count,
        "match_result": assessment.match_result.model_dump(),
        "match_stats": assessment.match_stats.model_dump(),
        "interpretation": interpret_score(assessment.overall_score),
        "enriched": {
            "confidence": assessment.confidence,
            "sub_scores": assessment.sub_scores.model_dump(),
            "frame_evidence": [e.model_dump() for e in assessment.frame_evidence],
            "drills": [d.model_dump() for d in assessment.drills],
            "fatigue_analysis": assessment.fatigue_analysis.model_dump(),
        },
    }


def normalize_scouting_output(scouting: ScoutingResult, frame_count: int, model_name: str = "") -> Dict[str, Any]:
    return {
        "mode": "opponent",
        "overall_score": 0,
        "position_scores": {"standing": 0, "top": 0, "bottom": 0},
        "position_reasoning": scouting.position_tendencies.model_dump(),
        "frame_annotations": [],
        "strengths": [f"{a.technique} ({a.frequency})" for a in scouting.attack_patterns],
        "weaknesses": [d.vulnerability for d in scouting.defense_patterns],
        "drills": list(scouting.gameplan.key_techniques),
        "summary": scouting.summary,
        "model": model_name,
        "frames_analyzed": frame_count,
        "scouting": scouting.model_dump(),
    }
