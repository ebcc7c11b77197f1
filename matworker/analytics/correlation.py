"""Agreement between AI scores and expert coach scores."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import numpy as np
from pydantic import BaseModel, Field

from .longitudinal import SUB_SCORE_KEYS

MIN_PAIRS = 3
AGREEMENT_TOLERANCE = 10


class ScoreSet(BaseModel):
    overall: float = 0
    standing: float = 0
    top: float = 0
    bottom: float = 0
    sub_scores: Dict[str, Dict[str, float]] = Field(default_factory=dict)


class ValidationPair(BaseModel):
    analysis_id: str
    coach_name: str = ""
    ai: ScoreSet
    coach: ScoreSet


class MetricCorrelation(BaseModel):
    correlation: float
    ai_avg: float
    coach_avg: float
    n: int


class CorrelationReport(BaseModel):
    total_validations: int
    unique_coaches: int
    avg_absolute_error: float
    agreement_rate: int
    correlations: Dict[str, MetricCorrelation] = Field(default_factory=dict)
    sub_score_correlations: Dict[str, MetricCorrelation] = Field(default_factory=dict)
    interpretation: Dict[str, str] = Field(default_factory=dict)


def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson r; 0 for fewer than three points or zero variance."""

    if len(x) != len(y) or len(x) < MIN_PAIRS:
        return 0.0
    a = np.asarray(x, dtype=float) - np.mean(x)
    b = np.asarray(y, dtype=float) - np.mean(y)
    denominator = float(np.sqrt(np.sum(a * a) * np.sum(b * b)))
    if denominator == 0:
        return 0.0
    return float(np.sum(a * b)) / denominator


def interpret_correlation(r: float) -> str:
    strength = abs(r)
    if strength >= 0.9:
        return "Very strong agreement"
    if strength >= 0.8:
        return "Strong agreement"
    if strength >= 0.6:
        return "Moderate agreement"
    if strength >= 0.4:
        return "Weak agreement"
    return "Poor agreement, calibration needed"


def _metric(ai: List[float], coach: List[float]) -> MetricCorrelation:
    return MetricCorrelation(
        correlation=round(pearson_correlation(ai, coach), 3),
        ai_avg=round(float(np.mean(ai)), 1),
        coach_avg=round(float(np.mean(coach)), 1),
        n=len(ai),
    )


def compute_validation_correlation(pairs: Sequence[ValidationPair]) -> Optional[CorrelationReport]:
    """Correlation report, or None when fewer than three pairs exist."""

    if len(pairs) < MIN_PAIRS:
        return None

    correlations = {
        metric: _metric([getattr(p.ai, metric) for p in pairs], [getattr(p.coach, metric) for p in pairs])
        for metric in ("overall", "standing", "top", "bottom")
    }

    sub_correlations: Dict[str, MetricCorrelation] = {}
    for position, keys in SUB_SCORE_KEYS.items():
        for key in keys:
            ai_values: List[float] = []
            coach_values: List[float] = []
            for pair in pairs:
                ai_value = pair.ai.sub_scores.get(position, {}).get(key)
                coach_value = pair.coach.sub_scores.get(position, {}).get(key)
                if ai_value is not None and coach_value is not None:
                    ai_values.append(ai_value)
                    coach_values.append(coach_value)
            if len(ai_values) >= MIN_PAIRS:
                sub_correlations[f"{position}_{key}"] = _metric(ai_values, coach_values)

    errors = np.abs(np.asarray([p.coach.overall - p.ai.overall for p in pairs], dtype=float))
    agreement = int(round(float(np.mean(errors <= AGREEMENT_TOLERANCE)) * 100))

    return CorrelationReport(
        total_validations=len(pairs),
        unique_coaches=len({p.coach_name for p in pairs}),
        avg_absolute_error=round(float(errors.mean()), 1),
        agreement_rate=agreement,
        correlations=correlations,
        sub_score_correlations=sub_correlations,
        interpretation={name: interpret_correlation(m.correlation) for name, m in correlations.items()},
    )
