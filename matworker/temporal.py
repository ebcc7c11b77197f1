"""Group observations into action windows and summarize the match structure."""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence

from .schemas import ActionWindow, MatchPhase, Observation, TempoChange, TemporalSummary

logger = logging.getLogger(__name__)

SIGNIFICANCE_WEIGHT: Dict[str, int] = {"CRITICAL": 4, "IMPORTANT": 2, "CONTEXT": 1, "SKIP": 0}

ACTION_KEYWORDS: Dict[str, List[str]] = {
    "takedown_attempt": [
        "shot", "takedown", "single leg", "double leg", "high crotch", "fireman",
        "ankle pick", "duck under", "arm drag", "snap down", "level change",
    ],
    "takedown_defense": ["sprawl", "whizzer", "front headlock", "crossface", "defense"],
    "riding_sequence": [
        "ride", "riding", "tight waist", "half nelson", "leg ride", "breakdown", "chest-to-back", "spiral",
    ],
    "escape_attempt": ["escape", "standup", "stand-up", "sit-out", "switch", "granby", "hand control"],
    "reversal_attempt": ["reversal", "roll-through", "peterson"],
    "scramble": ["scramble", "chaos", "transition", "both wrestlers"],
    "neutral_exchange": ["circling", "hand fight", "tie", "collar tie", "underhook", "neutral"],
    "near_fall": ["near fall", "back points", "tilt", "cradle", "pin", "back exposure"],
    "transition": ["getting up", "moving", "position change"],
    "reset": ["reset", "referee", "whistle", "center", "break"],
}

SCORING_KEYWORDS = ("takedown", "escape", "reversal", "near fall", "pin", "points")

POSITION_FALLBACK = {
    "top": "riding_sequence",
    "bottom": "escape_attempt",
    "standing": "neutral_exchange",
    "transition": "scramble",
}

ACTION_LABELS = {
    "takedown_attempt": "Takedown attempt",
    "takedown_defense": "Takedown defense",
    "riding_sequence": "Riding/control sequence",
    "escape_attempt": "Escape attempt",
    "reversal_attempt": "Reversal attempt",
    "scramble": "Scramble sequence",
    "neutral_exchange": "Neutral exchange",
    "near_fall": "Near fall attempt",
    "transition": "Position transition",
    "reset": "Reset/break",
    "unknown": "Wrestling action",
}

MAX_KEY_WINDOWS = 15


def classify_action_type(text: str, position: str) -> str:
    best, best_score = None, 0
    for action_type, keywords in ACTION_KEYWORDS.items():
        score = sum(1 for keyword in keywords if keyword in text)
        if score > best_score:
            best, best_score = action_type, score
    if best is not None:
        return best
    return POSITION_FALLBACK.get(position, "unknown")


def _describe(action_type: str, techniques: List[str], frame_count: int, scoring: bool) -> str:
    text = f"{ACTION_LABELS[action_type]} ({frame_count} frames)"
    if techniques:
        text += ": " + ", ".join(techniques[:3])
    if scoring:
        text += " [SCORING]"
    return text


def _build_window(frames: List[Observation], position: str) -> ActionWindow:
    peak, peak_weight = frames[0].frame_index, 0
    for obs in frames:
        weight = SIGNIFICANCE_WEIGHT[obs.significance]
        if weight > peak_weight:
            peak, peak_weight = obs.frame_index, weight

    actions = " ".join(obs.action.lower() for obs in frames)
    contacts = " ".join(obs.contact_points.lower() for obs in frames)
    combined = f"{actions} {contacts}"
    action_type = classify_action_type(combined, position)

    techniques: List[str] = []
    for obs in frames:
        if obs.action and obs.action != "unknown" and obs.action not in techniques:
            techniques.append(obs.action)

    max_weight = max(SIGNIFICANCE_WEIGHT[obs.significance] for obs in frames)
    if max_weight >= 4:
        significance = "critical"
    elif max_weight >= 2:
        significance = "important"
    else:
        significance = "context"

    scoring = any(keyword in combined for keyword in SCORING_KEYWORDS)

    return ActionWindow(
        start_frame=frames[0].frame_index,
        end_frame=frames[-1].frame_index,
        peak_frame=peak,
        frame_indices=[obs.frame_index for obs in frames],
        position=position,
        action_type=action_type,
        significance=significance,
        techniques=techniques,
        is_scoring_event=scoring,
        description=_describe(action_type, techniques, len(frames), scoring),
    )


def detect_action_windows(observations: Sequence[Observation]) -> List[ActionWindow]:
    """Partition observations (in frame order) into contiguous action windows.

    A new window starts on a position change, a gap of more than two frames, or a
    CRITICAL frame following a non-CRITICAL one. Every observation lands in exactly one
    window.
    """

    windows: List[ActionWindow] = []
    current: List[Observation] = []
    position = ""

    for obs in sorted(observations, key=lambda o: o.frame_index):
        last = current[-1] if current else None
        start_new = (
            last is None
            or obs.athlete_position != position
            or obs.frame_index - last.frame_index > 2
            or (obs.significance == "CRITICAL" and last.significance != "CRITICAL")
        )
        if start_new:
            if current:
                windows.append(_build_window(current, position))
            current, position = [obs], obs.athlete_position
        else:
            current.append(obs)

    if current:
        windows.append(_build_window(current, position))
    return windows


def _phases(windows: Sequence[ActionWindow]) -> List[MatchPhase]:
    total = len(windows)
    if total < 3:
        return []
    bounds = [p * total // 3 for p in range(4)]
    phases = []
    for p in range(3):
        chunk = windows[bounds[p] : bounds[p + 1]]
        frames_by_position: Dict[str, int] = {}
        for w in chunk:
            frames_by_position[w.position] = frames_by_position.get(w.position, 0) + w.frame_count
        dominant = max(frames_by_position, key=frames_by_position.get) if frames_by_position else "standing"
        critical = sum(1 for w in chunk if w.significance == "critical")
        if critical >= len(chunk) * 0.4:
            intensity = "high"
        elif critical >= len(chunk) * 0.15:
            intensity = "medium"
        else:
            intensity = "low"
        phases.append(
            MatchPhase(
                phase=p + 1,
                start_frame=chunk[0].start_frame,
                end_frame=chunk[-1].end_frame,
                window_count=len(chunk),
                dominant_position=dominant,
                intensity=intensity,
                scoring_events=sum(1 for w in chunk if w.is_scoring_event),
            )
        )
    return phases


def build_temporal_summary(
    windows: Sequence[ActionWindow],
    observations: Sequence[Observation] = (),
) -> TemporalSummary:
    distribution: Dict[str, Dict[str, int]] = {}
    counts: Dict[str, int] = {}
    for w in windows:
        entry = distribution.setdefault(w.position, {"windows": 0, "total_frames": 0})
        entry["windows"] += 1
        entry["total_frames"] += w.frame_count
        counts[w.action_type] = counts.get(w.action_type, 0) + 1

    scoring = sum(1 for w in windows if w.is_scoring_event)
    total = len(windows)
    if total and scoring >= total * 0.3:
        tempo = "high"
    elif total and scoring >= total * 0.1:
        tempo = "medium"
    else:
        tempo = "low"

    changes = []
    for prev, curr in zip(windows, windows[1:]):
        if prev.significance != curr.significance and "critical" in (prev.significance, curr.significance):
            changes.append(TempoChange(frame=curr.start_frame, from_level=prev.significance, to_level=curr.significance))

    summary = TemporalSummary(
        windows=list(windows),
        position_distribution=distribution,
        action_type_counts=counts,
        phases=_phases(windows),
        tempo=tempo,
        tempo_changes=changes,
        scoring_event_count=scoring,
    )
    logger.info(
        f"[TEMPORAL] {total} windows over {len(observations)} observations, "
        f"{scoring} scoring, tempo={tempo}"
    )
    return summary


def format_temporal_context(summary: TemporalSummary) -> str:
    lines = ["TEMPORAL ACTION ANALYSIS:"]
    lines.append(
        f"Match tempo: {summary.tempo} | {summary.total_windows} action windows | "
        f"{summary.scoring_event_count} scoring events"
    )
    ordered = sorted(summary.position_distribution.items(), key=lambda kv: -kv[1]["total_frames"])
    lines.append(
        "Position distribution: "
        + ", ".join(f"{pos}: {d['total_frames']} frames ({d['windows']} sequences)" for pos, d in ordered)
    )
    for phase in summary.phases:
        lines.append(f"  {phase.description}")

    key_windows = [w for w in summary.windows if w.significance in ("critical", "important")][:MAX_KEY_WINDOWS]
    if key_windows:
        lines.append("")
        lines.append("Key action sequences:")
        for w in key_windows:
            lines.append(f"  Frames {w.start_frame}-{w.end_frame} (peak: {w.peak_frame}): {w.description}")

    if summary.tempo_changes:
        lines.append("")
        lines.append("Tempo shifts:")
        for change in summary.tempo_changes:
            lines.append(f"  Frame {change.frame}: intensity {change.from_level} -> {change.to_level}")

    return "\n".join(lines)
