from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..errors import AnalysisError, ErrorCode, build_analysis_error
from ..schemas import AnalysisRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def _error_response(exc: AnalysisError) -> JSONResponse:
    return JSONResponse(exc.to_payload(), status_code=exc.http_status)


@router.post("/analyze")
async def analyze(request: Request, async_query: Optional[bool] = Query(default=None, alias="async")):
    return await _analyze(request, async_query)


@router.post("/analyze/quick")
async def analyze_quick(request: Request, async_query: Optional[bool] = Query(default=None, alias="async")):
    """Tournament turnaround: a few sampled frames, one Pass 1 call, compressed scoring."""
    return await _analyze(request, async_query, quick=True)


async def _analyze(request: Request, async_query: Optional[bool], quick: bool = False):
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse(build_analysis_error(ErrorCode.INVALID_INPUT, "Invalid JSON body"), status_code=400)
    if quick and isinstance(payload, dict):
        payload["quick"] = True

    try:
        analysis_request = AnalysisRequest.model_validate(payload)
    except ValidationError as exc:
        reasons = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        return JSONResponse(
            build_analysis_error(ErrorCode.INVALID_INPUT, "Request failed validation", reasons),
            status_code=400,
        )

    if not analysis_request.frames:
        return _error_response(AnalysisError(ErrorCode.NO_FRAMES, "no frames provided"))

    if async_query if async_query is not None else analysis_request.async_mode:
        job_id = request.app.state.runner.enqueue(analysis_request)
        return JSONResponse({"job_id": job_id, "status": "processing"}, status_code=status.HTTP_202_ACCEPTED)

    started = time.time()
    try:
        outcome = await request.app.state.pipeline.run(analysis_request)
    except AnalysisError as exc:
        logger.warning("analysis_failed", extra={"code": exc.code.value, "error": exc.detail})
        return _error_response(exc)
    logger.info(
        "analysis_complete",
        extra={"mode": outcome.mode, "frames": outcome.frames_analyzed, "elapsed": round(time.time() - started, 2)},
    )
    return outcome.document


@router.get("/analyze/status")
def analyze_status(request: Request, job_id: Optional[str] = Query(default=None)):
    if not job_id:
        raise HTTPException(status_code=400, detail="job_id is required")
    doc = request.app.state.runner.status_document(job_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Not found")
    return doc


@router.get("/jobs/{job_id}")
def get_job(request: Request, job_id: str) -> Dict[str, Any]:
    job = request.app.state.runner.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Not found")
    now = time.time()
    last = job.get("last_heartbeat_at")
    created = job.get("created_at")
    return {
        "job_id": job_id,
        "status": job.get("status"),
        "stage": job.get("stage"),
        "pct": job.get("pct"),
        "detail": job.get("detail"),
        "created_at": created,
        "updated_at": job.get("updated_at"),
        "last_heartbeat_at": last,
        "idle_seconds": None if last is None else round(now - last),
        "elapsed_seconds": None if created is None else round(now - created),
        "stages": job.get("stages") or [],
        "progress": job.get("progress") or {},
        "error": job.get("error"),
        "error_code": job.get("error_code"),
        "result": job.get("result"),
    }
