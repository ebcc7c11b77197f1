"""Compress long observation lists for the Pass 2 prompt.

Key (CRITICAL/IMPORTANT) observations are kept verbatim; runs of CONTEXT/SKIP frames in
the same position collapse into one summary line.
"""

from __future__ import annotations

from typing import List, Literal, Sequence

from pydantic import BaseModel, Field

from .schemas import Observation

_KEY_LEVELS = ("CRITICAL", "IMPORTANT")


class ObservationSegment(BaseModel):
    start_frame: int
    end_frame: int
    frame_count: int
    position: str
    actions: List[str] = Field(default_factory=list)
    key_observation: Observation | None = None
    context_summary: str = ""
    significance: Literal["CRITICAL", "IMPORTANT", "CONTEXT"]


class SummarizedObservations(BaseModel):
    segments: List[ObservationSegment] = Field(default_factory=list)
    total_frames: int = 0
    compressed_frames: int = 0
    compression_ratio: float = 1.0
    critical_count: int = 0
    important_count: int = 0

    @property
    def key_count(self) -> int:
        return self.critical_count + self.important_count


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _context_segment(observations: List[Observation]) -> ObservationSegment:
    position = observations[0].athlete_position
    actions: List[str] = []
    for obs in observations:
        if obs.action not in actions:
            actions.append(obs.action)
    visible = sum(1 for obs in observations if obs.wrestler_visible)

    parts = [f"{len(observations)} frames in {position}"]
    if len(actions) <= 3:
        parts.append("actions: " + ", ".join(actions))
    else:
        parts.append(f"{len(actions)} distinct actions including " + ", ".join(actions[:2]))
    if visible < len(observations):
        parts.append(f"wrestler visible in {visible}/{len(observations)} frames")

    heights: List[str] = []
    for obs in observations:
        if obs.estimated_stance_height and obs.estimated_stance_height not in heights:
            heights.append(obs.estimated_stance_height)
    if heights:
        parts.append("stance: " + " -> ".join(heights))

    return ObservationSegment(
        start_frame=observations[0].frame_index,
        end_frame=observations[-1].frame_index,
        frame_count=len(observations),
        position=position,
        actions=actions,
        context_summary="; ".join(parts),
        significance="CONTEXT",
    )


def summarize_observations(observations: Sequence[Observation]) -> SummarizedObservations:
    if not observations:
        return SummarizedObservations()

    segments: List[ObservationSegment] = []
    pending: List[Observation] = []

    for obs in observations:
        if obs.significance in _KEY_LEVELS:
            if pending:
                segments.append(_context_segment(pending))
                pending = []
            segments.append(
                ObservationSegment(
                    start_frame=obs.frame_index,
                    end_frame=obs.frame_index,
                    frame_count=1,
                    position=obs.athlete_position,
                    actions=[obs.action],
                    key_observation=obs,
                    significance=obs.significance,
                )
            )
            continue
        if pending and obs.athlete_position != pending[-1].athlete_position:
            segments.append(_context_segment(pending))
            pending = []
        pending.append(obs)

    if pending:
        segments.append(_context_segment(pending))

    return SummarizedObservations(
        segments=segments,
        total_frames=len(observations),
        compressed_frames=sum(s.frame_count for s in segments if s.significance == "CONTEXT"),
        compression_ratio=round(len(segments) / max(len(observations), 1), 3),
        critical_count=sum(1 for s in segments if s.significance == "CRITICAL"),
        important_count=sum(1 for s in segments if s.significance == "IMPORTANT"),
    )


def format_summarized_for_pass2(summary: SummarizedObservations) -> str:
    if not summary.segments:
        return "No observations available."

    lines = [
        f"Match observations ({summary.total_frames} frames, {len(summary.segments)} segments, "
        f"{summary.critical_count} critical moments, {summary.important_count} important moments):",
        "",
    ]
    for seg in summary.segments:
        obs = seg.key_observation
        if obs is None:
            lines.append(f"[CONTEXT] Frames {seg.start_frame}-{seg.end_frame}: {seg.context_summary}")
            continue
        line = (
            f"[{seg.significance}] Frame {obs.frame_index}: position={obs.athlete_position}, "
            f"body={obs.athlete_body}, opponent={obs.opponent_body}, "
            f"contact={obs.contact_points}, action={obs.action}, visible={_flag(obs.wrestler_visible)}"
        )
        if obs.estimated_stance_height:
            line += f", stance={obs.estimated_stance_height}"
        if obs.estimated_knee_angle:
            line += f", knees={obs.estimated_knee_angle}"
        if obs.weight_distribution:
            line += f", weight={obs.weight_distribution}"
        lines.append(line)
    return "\n".join(lines)


def format_raw_observations(observations: Sequence[Observation]) -> str:
    return "\n".join(
        f"Frame {obs.frame_index}: position={obs.athlete_position}, "
        f"body={obs.athlete_body}, opponent={obs.opponent_body}, "
        f"contact={obs.contact_points}, action={obs.action}, "
        f"visible={_flag(obs.wrestler_visible)}, significance={obs.significance}"
        for obs in observations
    )
