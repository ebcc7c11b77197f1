"""Score trends across an athlete's analysis history."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Literal, Optional, Sequence

import numpy as np
from pydantic import BaseModel, Field

SUB_SCORE_KEYS: Dict[str, List[str]] = {
    "standing": ["stance_motion", "shot_selection", "shot_finishing", "sprawl_defense", "reattacks_chains"],
    "top": ["ride_tightness", "breakdowns", "turns_nearfalls", "mat_returns"],
    "bottom": ["base_posture", "standups", "sitouts_switches", "reversals"],
}

IMPROVING_SLOPE = 1.5


class HistoryEntry(BaseModel):
    """One stored analysis, as returned by ``AnalysisStore.list_analyses``."""

    id: str
    created_at: str
    overall_score: float
    standing: float = 0
    top: float = 0
    bottom: float = 0
    sub_scores: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)


class ScoreTrend(BaseModel):
    category: str
    scores: List[float]
    dates: List[str] = Field(default_factory=list)
    analysis_ids: List[str] = Field(default_factory=list)
    slope: float
    direction: Literal["improving", "declining", "stable"]
    recent_avg: int
    all_time_avg: int
    personal_best: float
    personal_worst: float


class Improvement(BaseModel):
    category: str
    delta: int


class LongitudinalReport(BaseModel):
    athlete_id: str
    match_count: int = 0
    date_range: Dict[str, str] = Field(default_factory=lambda: {"first": "", "last": ""})
    trends: Dict[str, ScoreTrend] = Field(default_factory=dict)
    recurring_weaknesses: List[str] = Field(default_factory=list)
    biggest_improvement: Optional[Improvement] = None
    best_position: str = "standing"
    consistency_score: int = 0


def linear_slope(values: Sequence[float]) -> float:
    """Least-squares slope of ``values`` against their index."""

    if len(values) < 2:
        return 0.0
    y = np.asarray(values, dtype=float)
    x = np.arange(len(y), dtype=float)
    denominator = len(y) * float(np.sum(x * x)) - float(np.sum(x)) ** 2
    if denominator == 0:
        return 0.0
    return (len(y) * float(np.sum(x * y)) - float(np.sum(x)) * float(np.sum(y))) / denominator


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_trend(
    category: str,
    scores: Sequence[float],
    dates: Sequence[str] = (),
    analysis_ids: Sequence[str] = (),
) -> ScoreTrend:
    values = [float(s) for s in scores]
    slope = linear_slope(values)
    if slope > IMPROVING_SLOPE:
        direction = "improving"
    elif slope < -IMPROVING_SLOPE:
        direction = "declining"
    else:
        direction = "stable"

    return ScoreTrend(
        category=category,
        scores=values,
        dates=list(dates),
        analysis_ids=list(analysis_ids),
        slope=round(slope, 2),
        direction=direction,
        recent_avg=_round_half_up(float(np.mean(values[-3:]))) if values else 0,
        all_time_avg=_round_half_up(float(np.mean(values))) if values else 0,
        personal_best=max(values) if values else 0,
        personal_worst=min(values) if values else 0,
    )


def build_longitudinal_report(athlete_id: str, history: Sequence[HistoryEntry]) -> LongitudinalReport:
    if not history:
        return LongitudinalReport(athlete_id=athlete_id)

    ordered = sorted(history, key=lambda entry: entry.created_at)
    dates = [entry.created_at for entry in ordered]
    ids = [entry.id for entry in ordered]

    trends: Dict[str, ScoreTrend] = {
        "overall": compute_trend("overall", [e.overall_score for e in ordered], dates, ids),
        "standing": compute_trend("standing", [e.standing for e in ordered], dates, ids),
        "top": compute_trend("top", [e.top for e in ordered], dates, ids),
        "bottom": compute_trend("bottom", [e.bottom for e in ordered], dates, ids),
    }
    for position, keys in SUB_SCORE_KEYS.items():
        for key in keys:
            values = [e.sub_scores.get(position, {}).get(key, 0) for e in ordered]
            if any(v > 0 for v in values):
                name = f"{position}_{key}"
                trends[name] = compute_trend(name, values, dates, ids)

    counts: Dict[str, int] = {}
    for entry in ordered:
        for weakness in entry.weaknesses:
            normalized = weakness.lower().strip()
            counts[normalized] = counts.get(normalized, 0) + 1
    floor = math.ceil(len(ordered) * 0.5)
    recurring = [w for w, c in sorted(counts.items(), key=lambda kv: -kv[1]) if c >= floor]

    improvement: Optional[Improvement] = None
    best_slope = 0.0
    for name, trend in trends.items():
        if trend.slope > best_slope and len(trend.scores) >= 3:
            best_slope = trend.slope
            improvement = Improvement(category=name, delta=round(trend.scores[-1] - trend.scores[0]))

    averages = {pos: trends[pos].all_time_avg for pos in ("standing", "top", "bottom")}
    best_position = max(averages, key=averages.get)

    overall = np.asarray([e.overall_score for e in ordered], dtype=float)
    mean = float(overall.mean())
    cv = float(overall.std()) / mean if mean > 0 else 1.0
    consistency = _round_half_up(max(0.0, min(100.0, (1 - cv) * 100)))

    return LongitudinalReport(
        athlete_id=athlete_id,
        match_count=len(ordered),
        date_range={"first": dates[0], "last": dates[-1]},
        trends=trends,
        recurring_weaknesses=recurring,
        biggest_improvement=improvement,
        best_position=best_position,
        consistency_score=consistency,
    )


def format_trends_for_storage(report: LongitudinalReport) -> List[Dict[str, Any]]:
    """One row per (category, match) for the trend history table."""

    rows: List[Dict[str, Any]] = []
    for category, trend in report.trends.items():
        for i, score in enumerate(trend.scores):
            rows.append(
                {
                    "athlete_id": report.athlete_id,
                    "category": category,
                    "match_sequence": i + 1,
                    "score": score,
                    "match_date": trend.dates[i] if i < len(trend.dates) else None,
                    "analysis_id": trend.analysis_ids[i] if i < len(trend.analysis_ids) else None,
                }
            )
    return rows
