from __future__ import annotations

import asyncio
from typing import List

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..analytics.calibration import (
    AIScore,
    CoachScore,
    compute_calibration_metric,
    compute_calibration_summary,
)
from ..analytics.correlation import ValidationPair, compute_validation_correlation
from ..analytics.longitudinal import HistoryEntry, build_longitudinal_report, format_trends_for_storage

router = APIRouter()


class TrendsBody(BaseModel):
    athlete_id: str
    history: List[HistoryEntry] = Field(default_factory=list)


class CorrelationBody(BaseModel):
    pairs: List[ValidationPair] = Field(default_factory=list)


class Comparison(BaseModel):
    ai: AIScore
    coach: CoachScore


class CalibrationBody(BaseModel):
    comparisons: List[Comparison] = Field(default_factory=list)


@router.post("/analytics/trends")
def trends(body: TrendsBody):
    report = build_longitudinal_report(body.athlete_id, body.history)
    return {"report": report.model_dump(), "rows": format_trends_for_storage(report)}


@router.post("/analytics/correlation")
def correlation(body: CorrelationBody):
    report = compute_validation_correlation(body.pairs)
    if report is None:
        return {
            "total_validations": len(body.pairs),
            "message": f"Only {len(body.pairs)} paired validations. Need at least 3 for correlation.",
        }
    return report.model_dump()


@router.post("/analytics/calibration")
def calibration(body: CalibrationBody):
    metrics = [compute_calibration_metric(c.ai, c.coach) for c in body.comparisons]
    summary = compute_calibration_summary(metrics)
    return {"metrics": [m.model_dump() for m in metrics], "summary": summary.model_dump()}


@router.get("/athletes/{athlete_id}/progress")
async def athlete_progress(request: Request, athlete_id: str):
    store = request.app.state.store
    records, badges = await asyncio.gather(
        asyncio.to_thread(store.list_analyses, athlete_id),
        asyncio.to_thread(store.load_badges, athlete_id),
    )
    history = [HistoryEntry.model_validate(record) for record in records]
    report = build_longitudinal_report(athlete_id, history)
    return {"report": report.model_dump(), "badges": badges}
