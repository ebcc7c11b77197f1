"""Calibration of AI scores and confidence against coach ground truth."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Sequence

import numpy as np
from pydantic import BaseModel, Field

from .correlation import pearson_correlation

SOLID_THRESHOLD = 70


class PositionTriple(BaseModel):
    standing: float = 0
    top: float = 0
    bottom: float = 0


class AIScore(BaseModel):
    analysis_id: str
    overall_score: float
    position_scores: PositionTriple
    confidence: float


class CoachScore(BaseModel):
    analysis_id: str
    coach_id: str = ""
    overall_score: float
    position_scores: PositionTriple
    notes: str = ""


class CalibrationMetric(BaseModel):
    analysis_id: str
    overall_mae: float
    standing_mae: float
    top_mae: float
    bottom_mae: float
    overall_direction: bool
    ai_confidence: float
    confidence_calibrated: bool
    bias: float


class CalibrationSummary(BaseModel):
    total_comparisons: int
    avg_overall_mae: float = 0
    avg_position_mae: Dict[str, float] = Field(default_factory=lambda: {"standing": 0, "top": 0, "bottom": 0})
    avg_bias: float = 0
    direction_accuracy: float = 1
    confidence_correlation: float = 0
    calibration_score: int = 0
    recommendations: List[str] = Field(default_factory=list)
    computed_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def _expected_max_error(confidence: float) -> float:
    if confidence > 0.8:
        return 10
    if confidence > 0.6:
        return 15
    if confidence > 0.4:
        return 20
    return 30


def compute_calibration_metric(ai: AIScore, coach: CoachScore) -> CalibrationMetric:
    overall_mae = abs(ai.overall_score - coach.overall_score)
    return CalibrationMetric(
        analysis_id=ai.analysis_id,
        overall_mae=overall_mae,
        standing_mae=abs(ai.position_scores.standing - coach.position_scores.standing),
        top_mae=abs(ai.position_scores.top - coach.position_scores.top),
        bottom_mae=abs(ai.position_scores.bottom - coach.position_scores.bottom),
        overall_direction=(ai.overall_score >= SOLID_THRESHOLD) == (coach.overall_score >= SOLID_THRESHOLD),
        ai_confidence=ai.confidence,
        confidence_calibrated=overall_mae <= _expected_max_error(ai.confidence),
        bias=ai.overall_score - coach.overall_score,
    )


def compute_calibration_summary(metrics: Sequence[CalibrationMetric]) -> CalibrationSummary:
    if not metrics:
        return CalibrationSummary(
            total_comparisons=0,
            recommendations=["No calibration data yet. Submit coach scores to begin calibration."],
        )

    n = len(metrics)
    overall_mae = float(np.mean([m.overall_mae for m in metrics]))
    position_mae = {
        "standing": float(np.mean([m.standing_mae for m in metrics])),
        "top": float(np.mean([m.top_mae for m in metrics])),
        "bottom": float(np.mean([m.bottom_mae for m in metrics])),
    }
    bias = float(np.mean([m.bias for m in metrics]))
    direction_accuracy = sum(1 for m in metrics if m.overall_direction) / n

    # confidence should track inverse error; +1 keeps a perfect score finite
    correlation = pearson_correlation(
        [m.ai_confidence for m in metrics],
        [1 / (m.overall_mae + 1) for m in metrics],
    )

    mae_score = (1 - min(1.0, overall_mae / 20)) * 50
    calibrated = sum(1 for m in metrics if m.confidence_calibrated) / n
    score = int(round(mae_score + direction_accuracy * 25 + calibrated * 25))

    recommendations: List[str] = []
    if overall_mae > 15:
        recommendations.append(
            f"High average error ({overall_mae:.1f} points). Consider reviewing scoring prompts or adding more rubric examples."
        )
    if abs(bias) > 8:
        label = "over-scoring" if bias > 0 else "under-scoring"
        recommendations.append(
            f"Systematic {label} detected (avg bias: {bias:+.1f}). Adjust baseline calibration in the reasoning prompt."
        )
    if direction_accuracy < 0.8:
        recommendations.append(
            f"Direction accuracy {direction_accuracy * 100:.0f}%: solid and developing wrestlers are being confused. Review score thresholds."
        )
    if position_mae["standing"] > position_mae["top"] + 5 or position_mae["standing"] > position_mae["bottom"] + 5:
        recommendations.append(
            "Standing position has higher error than other positions. May need more standing-specific rubric examples."
        )
    if correlation < 0.3:
        recommendations.append(
            f"Low confidence-error correlation ({correlation:.2f}). Confidence scores are not well-calibrated to actual accuracy."
        )
    if n < 10:
        recommendations.append(f"Only {n} calibration samples. Need at least 20-30 for reliable metrics.")
    if not recommendations:
        recommendations.append("Calibration looks good! Continue collecting coach scores to maintain quality.")

    return CalibrationSummary(
        total_comparisons=n,
        avg_overall_mae=overall_mae,
        avg_position_mae=position_mae,
        avg_bias=bias,
        direction_accuracy=direction_accuracy,
        confidence_correlation=correlation,
        calibration_score=score,
        recommendations=recommendations,
    )


def adjust_confidence(raw_confidence: float, summary: CalibrationSummary) -> float:
    """Blend model confidence with historical calibration accuracy."""

    if summary.total_comparisons < 5:
        return max(0.0, raw_confidence - 0.1)
    mae_factor = max(0.0, 1 - summary.avg_overall_mae / 30)
    adjusted = raw_confidence * 0.6 + mae_factor * 0.2 + summary.direction_accuracy * 0.2
    return max(0.0, min(1.0, adjusted))
