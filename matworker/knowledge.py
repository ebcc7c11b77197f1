"""Wrestling knowledge base: scoring rules, technique taxonomy, rubric and drills.

Everything here is static reference data injected into the Pass 2 prompt or used to
check and enrich model output.
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional

__all__ = [
    "SCORING_RULES",
    "TECHNIQUE_TAXONOMY",
    "ANALYSIS_RUBRIC",
    "POSITION_WEIGHTS",
    "SUBSCORE_MAX",
    "SCORE_INTERPRETATION",
    "DRILL_DATABASE",
    "KNOWN_TECHNIQUE_TERMS",
    "compute_overall",
    "interpret_score",
    "recommend_drills",
    "build_knowledge_base_prompt",
    "rules_key_for_style",
]

SCORING_RULES: Dict[str, Dict[str, Dict[str, object]]] = {
    "folkstyle": {
        "takedown": {"points": 2, "description": "Control opponent on mat from neutral; pass behind hips, 3 pts of contact"},
        "escape": {"points": 1, "description": "Return to neutral standing from bottom/par terre"},
        "reversal": {"points": 2, "description": "Go from bottom/defensive to top/offensive control"},
        "near_fall_2": {"points": 2, "description": "Expose opponent's back at <45 degrees for 2-4 seconds"},
        "near_fall_3": {"points": 3, "description": "Expose opponent's back at <45 degrees for 5+ seconds"},
        "penalty": {"points": 1, "description": "Awarded to opponent for stalling, false start, illegal hold"},
        "riding_time": {"points": 1, "description": "1 point for 1+ minute net riding time advantage"},
        "technical_fall": {"margin": 15, "description": "Match ends when lead reaches 15 points"},
    },
    "freestyle": {
        "takedown": {"points": 2, "description": "Control opponent on mat from standing; pass behind hips"},
        "exposure_2": {"points": 2, "description": "Expose back at <90 degrees to mat; head/shoulder/elbow contacts mat"},
        "exposure_4": {"points": 4, "description": "Feet-to-danger: standing to immediate back exposure, continuous motion"},
        "grand_amplitude_4": {"points": 4, "description": "Sweeping arc throw from standing, no danger landing"},
        "grand_amplitude_5": {"points": 5, "description": "Sweeping arc throw from standing, landing in danger"},
        "push_out": {"points": 1, "description": "Force opponent out of bounds with an attack"},
        "passivity": {"points": 0, "description": "Warning, then opponent gets choice of par terre position"},
        "technical_superiority": {"margin": 10, "description": "Match ends at 10-point lead"},
    },
    "greco_roman": {
        "takedown": {"points": 2, "description": "Control opponent on mat; no leg attacks allowed"},
        "exposure_2": {"points": 2, "description": "Back exposure at <90 degrees for brief duration"},
        "exposure_4": {"points": 4, "description": "Grand amplitude or feet-to-danger without landing in danger"},
        "grand_amplitude_5": {"points": 5, "description": "Grand amplitude throw landing directly in danger"},
        "push_out": {"points": 1, "description": "Force opponent out of bounds"},
        "passivity": {"points": 0, "description": "Warning, then par terre advantage for opponent"},
        "technical_superiority": {"margin": 8, "description": "Match ends at 8-point lead"},
    },
}

TECHNIQUE_TAXONOMY: Dict[str, Dict[str, object]] = {
    "standing": {
        "offense": {
            "single_leg": ["high crotch finish", "sweep single", "low single", "snatch single", "head-inside single"],
            "double_leg": ["blast double", "inside-step double", "misdirection double"],
            "upper_body": ["duck under", "arm drag", "snap down", "front headlock series", "Russian tie"],
            "throws": ["hip toss", "head-and-arm throw", "lateral drop", "fireman's carry", "body lock throw"],
            "greco_specific": ["arm spin", "body lock lift", "gut wrench from standing", "suplex"],
        },
        "defense": {
            "sprawl": ["hip sprawl", "cross-face sprawl", "whizzer sprawl"],
            "counter_attack": ["front headlock counter", "go-behind off failed shot", "knee tap off tie-up"],
            "positioning": ["hand fighting", "collar tie", "underhook battle", "two-on-one control"],
        },
    },
    "top": {
        "breakdowns": ["chop and tight waist", "ankle breakdown", "spiral ride", "tight waist and half nelson", "cross-body ride"],
        "turns": ["half nelson", "tilt series", "cradle (near/far/cross-face)", "arm bar", "Turk ride", "bow-and-arrow"],
        "rides": ["leg ride", "cross-body ride", "tight waist", "chest-to-back pressure", "wrist control ride"],
        "mat_returns": ["mat return off standup", "lift and return", "ankle pick return", "inside trip return"],
    },
    "bottom": {
        "escapes": ["standup", "sit-out", "hip heist", "granby roll", "Peterson roll"],
        "reversals": ["switch", "roll-through", "Peterson reversal", "hip heist to reversal"],
        "defense": ["base building", "wrist control", "elbow control", "head position management"],
    },
}

POSITION_WEIGHTS: Dict[str, float] = {"standing": 0.4, "top": 0.3, "bottom": 0.3}

SUBSCORE_MAX: Dict[str, int] = {"standing": 20, "top": 25, "bottom": 25}

ANALYSIS_RUBRIC: Dict[str, List[Dict[str, object]]] = {
    "standing": [
        {"key": "stance_motion", "name": "Stance & Motion", "max": 20, "evaluate": "Level, balance, hand fighting, circle movement, head position"},
        {"key": "shot_selection", "name": "Shot Selection", "max": 20, "evaluate": "Penetration step depth, level change speed, setup quality (fakes, ties)"},
        {"key": "shot_finishing", "name": "Shot Finishing", "max": 20, "evaluate": "Drive through, corner pressure, chain wrestling, trip/sweep combos"},
        {"key": "sprawl_defense", "name": "Sprawl & Defense", "max": 20, "evaluate": "Reaction time, hip pressure, whizzer, re-positioning after sprawl"},
        {"key": "reattacks_chains", "name": "Re-attacks & Chains", "max": 20, "evaluate": "Second/third effort, scramble offense, scoring off failed first shot"},
    ],
    "top": [
        {"key": "ride_tightness", "name": "Ride Tightness", "max": 25, "evaluate": "Waist control, chest-to-back pressure, hip-to-hip contact, leg rides"},
        {"key": "breakdowns", "name": "Breakdowns", "max": 25, "evaluate": "Chop, tight-waist/half, ankle breakdown execution, spiral rides"},
        {"key": "turns_nearfalls", "name": "Turns & Near Falls", "max": 25, "evaluate": "Tilt series, half nelson, cradle attempts, arm bars, back exposure"},
        {"key": "mat_returns", "name": "Mat Returns", "max": 25, "evaluate": "Returning the opponent to the mat after stand-up or escape attempts"},
    ],
    "bottom": [
        {"key": "base_posture", "name": "Base & Posture", "max": 25, "evaluate": "Tripod position, head up, elbows tight, wrist control"},
        {"key": "standups", "name": "Stand-ups", "max": 25, "evaluate": "Timing, hand control clearing, posture during rise, stepping away"},
        {"key": "sitouts_switches", "name": "Sit-outs & Switches", "max": 25, "evaluate": "Hip heist speed, switch execution, granby rolls"},
        {"key": "reversals", "name": "Reversals", "max": 25, "evaluate": "Gaining control from bottom position, roll-throughs"},
    ],
}

SCORE_INTERPRETATION = [
    (90, 100, "Elite", "State/national caliber technique"),
    (80, 89, "Advanced", "Very clean execution, minor areas to polish"),
    (70, 79, "Solid", "Good fundamentals, some clear areas to improve"),
    (60, 69, "Developing", "Inconsistent technique, clear weaknesses"),
    (0, 59, "Beginner", "Focus on fundamental positions and movements"),
]

# Terms a well-grounded evidence action is expected to use.
KNOWN_TECHNIQUE_TERMS = (
    "takedown", "escape", "reversal", "near fall", "sprawl", "shot", "single leg", "double leg",
    "high crotch", "duck under", "arm drag", "snap down", "front headlock", "half nelson",
    "tilt", "cradle", "standup", "sit-out", "switch", "granby", "leg ride", "tight waist",
    "breakdown", "mat return", "whizzer", "hand fighting", "neutral", "transition", "scramble",
    "fireman", "hip toss", "body lock", "suplex", "gut wrench", "ankle pick", "head-and-arm",
)

DRILL_DATABASE: List[Dict[str, object]] = [
    # standing offense
    {"name": "Shadow shot penetration steps", "description": "Practice level change and penetration step without partner. Focus on knee touching mat, head up, back straight.", "reps": "3x10 each side", "target_weakness": ["shot_selection", "shot_finishing"], "position": "standing"},
    {"name": "Partner shot-and-finish drill", "description": "Shoot on live partner, finish through to two points. Rotate single/double/high crotch.", "reps": "3x8 each side", "target_weakness": ["shot_finishing", "reattacks"], "position": "standing"},
    {"name": "Chain wrestling series", "description": "Start with a single leg; if defended, switch to double; if stuffed, go to high crotch. Never stop on first attempt.", "reps": "5x5 minute rounds", "target_weakness": ["reattacks", "shot_selection"], "position": "standing"},
    {"name": "Set-up to shot drill", "description": "Fake, snap, arm drag, or collar tie, then immediately shoot. No shots without a setup.", "reps": "3x10", "target_weakness": ["shot_selection"], "position": "standing"},
    # standing defense
    {"name": "Sprawl reaction drill", "description": "Partner shoots at random; react with hip sprawl, cross-face, and circle away. Focus on hip speed.", "reps": "3x12", "target_weakness": ["sprawl_defense"], "position": "standing"},
    {"name": "Hand fighting circle drill", "description": "Continuous hand fighting with partner. Maintain position, fight for inside ties, work angles.", "reps": "3x2 minute rounds", "target_weakness": ["stance_motion", "sprawl_defense"], "position": "standing"},
    {"name": "Whizzer-to-go-behind", "description": "From whizzer position after sprawl, transition to go-behind and score.", "reps": "3x8 each side", "target_weakness": ["sprawl_defense", "reattacks"], "position": "standing"},
    # top
    {"name": "Tight waist + half nelson breakdown drill", "description": "From referee's position, chop arm and drive half nelson to flatten opponent.", "reps": "3x8", "target_weakness": ["breakdowns", "ride_tightness"], "position": "top"},
    {"name": "Tilt series from top", "description": "From tight waist ride, execute tilt series: near-side tilt, far-side tilt, bar arm tilt.", "reps": "3x6 each direction", "target_weakness": ["turns_nearfalls"], "position": "top"},
    {"name": "Cradle drill (near/far/cross-face)", "description": "Lock up cradle from multiple entries. Squeeze and walk opponent to back.", "reps": "3x6 each variation", "target_weakness": ["turns_nearfalls"], "position": "top"},
    {"name": "Mat return drill", "description": "Partner stands up from bottom; lift and return to mat. Emphasize chest pressure and hip control.", "reps": "3x8", "target_weakness": ["mat_returns"], "position": "top"},
    {"name": "Leg ride series", "description": "Insert leg ride, transition to cross-body, work for turns while maintaining leg control.", "reps": "3x5 minute rounds", "target_weakness": ["ride_tightness", "turns_nearfalls"], "position": "top"},
    # bottom
    {"name": "Standup drill with hand clearing", "description": "From referee's position, explode to feet, clear wrist control, step away. Partner provides resistance.", "reps": "3x10", "target_weakness": ["standups"], "position": "bottom"},
    {"name": "Sit-out turn-in drill", "description": "From bottom, sit out to hip, turn in to face partner. Work both directions.", "reps": "3x8 each side", "target_weakness": ["sitouts_switches"], "position": "bottom"},
    {"name": "Switch drill", "description": "From bottom, execute switch: clear near hand, sit and switch hips, secure go-behind.", "reps": "3x8 each side", "target_weakness": ["sitouts_switches", "reversals"], "position": "bottom"},
    {"name": "Granby roll series", "description": "Execute granby roll from bottom when opponent breaks you down. Chain into standup if first attempt fails.", "reps": "3x6 each direction", "target_weakness": ["sitouts_switches", "reversals"], "position": "bottom"},
    {"name": "Base-building drill", "description": "Partner tries to break you down from top; maintain tripod base, keep elbows tight, head up.", "reps": "3x30 second rounds", "target_weakness": ["base_posture"], "position": "bottom"},
    # general
    {"name": "Live wrestling with position starts", "description": "Start from specific positions (neutral, top, bottom) and wrestle live for short bursts. Rotate positions.", "reps": "6x1 minute rounds", "target_weakness": ["general_conditioning", "scramble_offense"], "position": "general"},
    {"name": "Scramble drill", "description": "Start in scramble positions; both wrestlers fight for control. Focus on hip movement and re-attacks.", "reps": "4x1 minute rounds", "target_weakness": ["reattacks", "scramble_offense"], "position": "general"},
]

_STYLE_RULES = {
    "folkstyle": "folkstyle",
    "hs_folkstyle": "folkstyle",
    "college_folkstyle": "folkstyle",
    "freestyle": "freestyle",
    "greco_roman": "greco_roman",
}


def rules_key_for_style(style: str) -> str:
    return _STYLE_RULES.get(style, "folkstyle")


def compute_overall(standing: float, top: float, bottom: float) -> int:
    """Weighted overall score, rounded half-up."""

    raw = (
        standing * POSITION_WEIGHTS["standing"]
        + top * POSITION_WEIGHTS["top"]
        + bottom * POSITION_WEIGHTS["bottom"]
    )
    # 1e-9 keeps 84.5 from landing on 84.49999 after float weighting
    return int(math.floor(raw + 0.5 + 1e-9))


def interpret_score(score: float) -> Dict[str, str]:
    for low, high, level, description in SCORE_INTERPRETATION:
        if low <= score <= high or (level == "Elite" and score > high):
            return {"level": level, "description": description}
    return {"level": "Beginner", "description": SCORE_INTERPRETATION[-1][3]}


def _weakness_matches(target: str, weaknesses: List[str]) -> bool:
    spaced = target.replace("_", " ")
    for weakness in weaknesses:
        lowered = weakness.lower()
        if spaced in lowered or lowered.replace(" ", "_") in target:
            return True
    return False


def recommend_drills(weaknesses: List[str], position: Optional[str] = None) -> List[Dict[str, object]]:
    """Drills whose target weaknesses match ``weaknesses``; general drills when none do."""

    matched = []
    for drill in DRILL_DATABASE:
        targets = drill["target_weakness"]  # type: ignore[assignment]
        if not any(_weakness_matches(t, weaknesses) for t in targets):  # type: ignore[union-attr]
            continue
        if position and drill["position"] not in (position, "general"):
            continue
        matched.append(drill)
    if matched:
        return matched
    return [d for d in DRILL_DATABASE if d["position"] == "general"]


def _label(key: str) -> str:
    return key.replace("_", " ").upper()


def build_knowledge_base_prompt(match_style: str = "folkstyle") -> str:
    rules_key = rules_key_for_style(match_style)
    rules = SCORING_RULES[rules_key]
    rule_lines = []
    for action, rule in rules.items():
        if "points" in rule:
            value = f"{rule['points']} pts"
        else:
            value = f"{rule['margin']}-pt lead"
        rule_lines.append(f"- {_label(action)}: {value}: {rule['description']}")

    rubric_blocks = []
    for position, criteria in ANALYSIS_RUBRIC.items():
        lines = [f"  - {c['name']} [{c['key']}] (0-{c['max']}): {c['evaluate']}" for c in criteria]
        weight = int(POSITION_WEIGHTS[position] * 100)
        rubric_blocks.append(f"{position.upper()} (weight: {weight}%, total 100 pts):\n" + "\n".join(lines))

    bands = "\n".join(f"- {low}-{high}: {level}: {desc}" for low, high, level, desc in SCORE_INTERPRETATION)

    return (
        f"SCORING RULES ({rules_key.replace('_', ' ')}):\n"
        + "\n".join(rule_lines)
        + "\n\nGRADING RUBRIC:\n"
        + "\n\n".join(rubric_blocks)
        + "\n\nOVERALL = Standing (40%) + Top (30%) + Bottom (30%)\n\nScore interpretation:\n"
        + bands
    )
