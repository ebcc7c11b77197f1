"""Numeric pose proxies and fatigue trends.

Metrics come either from real COCO keypoints (when a pose estimator is available) or from
the qualitative descriptors Pass 1 already emits. They are prompt context only; nothing
here feeds a score directly.
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel

from .schemas import Observation, PoseMetrics, PoseTrends

COCO_KEYPOINTS = (
    "nose", "left_eye", "right_eye", "left_ear", "right_ear",
    "left_shoulder", "right_shoulder", "left_elbow", "right_elbow",
    "left_wrist", "right_wrist", "left_hip", "right_hip",
    "left_knee", "right_knee", "left_ankle", "right_ankle",
)

MIN_KEYPOINT_CONFIDENCE = 0.3
MIN_TREND_SAMPLES = 6

HIP_HEIGHT_BY_STANCE = {"low": 0.35, "medium": 0.5, "high": 0.65}
KNEE_ANGLE_BY_BEND = {"deep_bend": 90.0, "moderate": 130.0, "straight": 170.0}
PROXIMITY_BY_RELATIVE = {"tied_up": 0.05, "on_mat": 0.08, "scramble": 0.1, "separated": 0.3}
ENTANGLEMENT_BY_RELATIVE = {"tied_up": 0.7, "scramble": 0.5, "on_mat": 0.4, "separated": 0.0}

_TORSO = ("left_shoulder", "right_shoulder", "left_hip", "right_hip")


class Keypoint(BaseModel):
    name: str
    x: float
    y: float
    confidence: float


def _points(keypoints: Sequence[Keypoint]) -> Dict[str, np.ndarray]:
    return {
        k.name: np.array([k.x, k.y], dtype=float)
        for k in keypoints
        if k.confidence > MIN_KEYPOINT_CONFIDENCE
    }


def _angle(a: np.ndarray, vertex: np.ndarray, c: np.ndarray) -> float:
    ba, bc = a - vertex, c - vertex
    norms = np.linalg.norm(ba) * np.linalg.norm(bc)
    if norms == 0:
        return 180.0
    cos = float(np.clip(np.dot(ba, bc) / norms, -1.0, 1.0))
    return math.degrees(math.acos(cos))


def _bbox(points: Dict[str, np.ndarray]) -> Optional[Tuple[float, float, float, float]]:
    if len(points) < 2:
        return None
    stacked = np.vstack(list(points.values()))
    x1, y1 = stacked.min(axis=0)
    x2, y2 = stacked.max(axis=0)
    return float(x1), float(y1), float(x2), float(y2)


def _iou(a: Tuple[float, float, float, float], b: Tuple[float, float, float, float]) -> float:
    ix = max(0.0, min(a[2], b[2]) - max(a[0], b[0]))
    iy = max(0.0, min(a[3], b[3]) - max(a[1], b[1]))
    inter = ix * iy
    union = (a[2] - a[0]) * (a[3] - a[1]) + (b[2] - b[0]) * (b[3] - b[1]) - inter
    return inter / union if union > 0 else 0.0


def compute_pose_metrics(
    keypoints: Sequence[Keypoint],
    frame_index: int,
    opponent_keypoints: Optional[Sequence[Keypoint]] = None,
) -> PoseMetrics:
    """Wrestling metrics from one athlete's COCO keypoints (normalized 0-1 coordinates)."""

    pts = _points(keypoints)
    values: Dict[str, Optional[float]] = {}

    if "left_ankle" in pts and "right_ankle" in pts:
        values["athlete_stance_width"] = float(np.linalg.norm(pts["left_ankle"] - pts["right_ankle"]))

    for side in ("left", "right"):
        hip, knee, ankle = (f"{side}_hip", f"{side}_knee", f"{side}_ankle")
        if hip in pts and knee in pts and ankle in pts:
            values["knee_angle"] = _angle(pts[hip], pts[knee], pts[ankle])
            break

    if "left_hip" in pts and "right_hip" in pts:
        values["hip_height"] = float((pts["left_hip"][1] + pts["right_hip"][1]) / 2)

    if "left_shoulder" in pts and "right_shoulder" in pts:
        dx, dy = pts["right_shoulder"] - pts["left_shoulder"]
        values["shoulder_angle"] = abs(math.degrees(math.atan2(dy, dx)))

    torso = [pts[name] for name in _TORSO if name in pts]
    if len(torso) >= 2:
        values["center_of_mass_y"] = float(np.mean([p[1] for p in torso]))

    if opponent_keypoints:
        opp = _points(opponent_keypoints)
        opp_torso = [opp[name] for name in _TORSO if name in opp]
        if len(torso) >= 2 and len(opp_torso) >= 2:
            values["opponent_proximity"] = float(
                np.linalg.norm(np.mean(torso, axis=0) - np.mean(opp_torso, axis=0))
            )
        mine, theirs = _bbox(pts), _bbox(opp)
        if mine and theirs:
            values["entanglement_score"] = _iou(mine, theirs)

    return PoseMetrics(frame_index=frame_index, **values)


def extract_soft_pose_metrics(observations: Sequence[Observation]) -> List[PoseMetrics]:
    """Map Pass 1 qualitative descriptors to numeric proxies. Invisible frames are skipped."""

    metrics = []
    for obs in observations:
        if not obs.wrestler_visible:
            continue
        relative = obs.relative_position or ""
        metrics.append(
            PoseMetrics(
                frame_index=obs.frame_index,
                knee_angle=KNEE_ANGLE_BY_BEND.get(obs.estimated_knee_angle or ""),
                hip_height=HIP_HEIGHT_BY_STANCE.get(obs.estimated_stance_height or ""),
                opponent_proximity=PROXIMITY_BY_RELATIVE.get(relative),
                entanglement_score=ENTANGLEMENT_BY_RELATIVE.get(relative),
            )
        )
    return metrics


def _half_delta(values: List[float]) -> Optional[float]:
    if len(values) < MIN_TREND_SAMPLES:
        return None
    half = len(values) // 2
    return float(np.mean(values[half:]) - np.mean(values[:half]))


def compute_pose_trends(metrics: Sequence[PoseMetrics]) -> PoseTrends:
    """Compare first-half and second-half averages of each metric."""

    hips = [m.hip_height for m in metrics if m.hip_height is not None]
    stances = [m.athlete_stance_width for m in metrics if m.athlete_stance_width is not None]
    knees = [m.knee_angle for m in metrics if m.knee_angle is not None]
    trends = PoseTrends(sample_count=len(metrics))

    delta = _half_delta(hips)
    if delta is not None:
        if delta > 0.03:
            trends.hip_height_trend = "rising"
            trends.fatigue_indicators.append(
                f"Hip height rising (+{delta * 100:.1f}%): wrestler getting more upright, possible fatigue"
            )
        elif delta < -0.03:
            trends.hip_height_trend = "falling"
        else:
            trends.hip_height_trend = "stable"

    delta = _half_delta(stances)
    if delta is not None:
        if delta < -0.02:
            trends.stance_width_trend = "narrowing"
            trends.fatigue_indicators.append(
                f"Stance narrowing ({delta * 100:.1f}%): possible balance or fatigue issue"
            )
        elif delta > 0.02:
            trends.stance_width_trend = "widening"
        else:
            trends.stance_width_trend = "stable"

    delta = _half_delta(knees)
    if delta is not None:
        if delta > 5:
            trends.knee_angle_trend = "straightening"
            trends.fatigue_indicators.append(
                f"Knee angle straightening (+{delta:.0f} deg): legs less bent, possible fatigue"
            )
        elif delta < -5:
            trends.knee_angle_trend = "deepening"
        else:
            trends.knee_angle_trend = "stable"

    return trends


def format_pose_context(metrics: Sequence[PoseMetrics], trends: Optional[PoseTrends] = None) -> str:
    if not metrics:
        return ""
    lines = []
    for m in metrics:
        parts = [f"Frame {m.frame_index}:"]
        if m.athlete_stance_width is not None:
            parts.append(f"stance_width={m.athlete_stance_width:.3f}")
        if m.knee_angle is not None:
            parts.append(f"knee_angle={round(m.knee_angle)}deg")
        if m.hip_height is not None:
            parts.append(f"hip_height={m.hip_height:.3f}")
        if m.shoulder_angle is not None:
            parts.append(f"shoulder_tilt={round(m.shoulder_angle)}deg")
        if m.opponent_proximity is not None:
            parts.append(f"opponent_dist={m.opponent_proximity:.3f}")
        if m.entanglement_score is not None:
            parts.append(f"entanglement={m.entanglement_score:.2f}")
        if len(parts) > 1:
            lines.append(" ".join(parts))
    if not lines:
        return ""

    text = (
        "STRUCTURED POSE DATA (numeric proxies):\n"
        + "\n".join(lines)
        + "\nStance width <0.1 = narrow stance. Hip height >0.6 = upright. Knee angle >160 = straight legs."
    )
    if trends is not None:
        text += (
            f"\nPOSE TRENDS: hip_height={trends.hip_height_trend}, stance_width={trends.stance_width_trend}, "
            f"knee_angle={trends.knee_angle_trend}"
        )
        if trends.fatigue_indicators:
            text += "\nFATIGUE INDICATORS:\n" + "\n".join(f"- {item}" for item in trends.fatigue_indicators)
    return text
