"""Persistence backends for jobs, analyses, badges and athlete history."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Set

import boto3
from botocore.client import BaseClient
from botocore.exceptions import ClientError

from .analytics.badges import check_badges
from .schemas import MatchContext, ScoredAssessment
from .settings import settings

logger = logging.getLogger(__name__)

# keeps fire-and-forget tasks referenced until they finish
_BACKGROUND: Set[asyncio.Task] = set()

# read-modify-write of badges and history is serialized per athlete within the process
_ATHLETE_LOCKS: Dict[str, threading.Lock] = {}
_ATHLETE_LOCKS_GUARD = threading.Lock()


def _athlete_lock(athlete_id: str) -> threading.Lock:
    with _ATHLETE_LOCKS_GUARD:
        return _ATHLETE_LOCKS.setdefault(athlete_id, threading.Lock())


class AnalysisStore(Protocol):
    """Interface for persisting pipeline jobs and finished analyses."""

    def save_job(self, job: Dict[str, Any]) -> None:
        """Persist a job record keyed by its ``job_id``."""

    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored job record or None."""

    def save_analysis(self, record: Dict[str, Any]) -> None:
        """Persist one analysis record keyed by ``athlete_id`` and ``id``."""

    def list_analyses(self, athlete_id: str) -> List[Dict[str, Any]]:
        """Return every stored analysis for ``athlete_id``."""

    def save_badges(self, athlete_id: str, badges: List[Dict[str, Any]]) -> None:
        """Upsert earned badges for ``athlete_id`` (keyed by badge key)."""

    def load_badges(self, athlete_id: str) -> List[Dict[str, Any]]:
        """Return the badges earned so far by ``athlete_id``."""

    def save_drill_assignments(self, athlete_id: str, analysis_id: str, drills: List[Dict[str, Any]]) -> None:
        """Persist drills assigned from one analysis."""

    def append_level_history(self, athlete_id: str, entry: Dict[str, Any]) -> None:
        """Append one entry to the athlete's level history."""


class _JsonStore:
    """Record layout shared by the backends; subclasses supply raw key access."""

    def _write(self, key: str, data: Any) -> None:
        raise NotImplementedError

    def _read(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def _keys(self, prefix: str) -> List[str]:
        raise NotImplementedError

    def save_job(self, job: Dict[str, Any]) -> None:
        self._write(f"jobs/{job['job_id']}.json", job)

    def load_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._read(f"jobs/{job_id}.json")

    def save_analysis(self, record: Dict[str, Any]) -> None:
        self._write(f"analyses/{record['athlete_id']}/{record['id']}.json", record)

    def list_analyses(self, athlete_id: str) -> List[Dict[str, Any]]:
        records = []
        for key in self._keys(f"analyses/{athlete_id}/"):
            record = self._read(key)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.get("created_at", ""))

    def load_badges(self, athlete_id: str) -> List[Dict[str, Any]]:
        return self._read(f"badges/{athlete_id}.json") or []

    def save_badges(self, athlete_id: str, badges: List[Dict[str, Any]]) -> None:
        merged = {badge["key"]: badge for badge in self.load_badges(athlete_id)}
        for badge in badges:
            merged.setdefault(badge["key"], badge)
        self._write(f"badges/{athlete_id}.json", list(merged.values()))

    def save_drill_assignments(self, athlete_id: str, analysis_id: str, drills: List[Dict[str, Any]]) -> None:
        self._write(f"drills/{athlete_id}/{analysis_id}.json", drills)

    def append_level_history(self, athlete_id: str, entry: Dict[str, Any]) -> None:
        key = f"history/{athlete_id}.json"
        history = self._read(key) or []
        history.append(entry)
        self._write(key, history)


class LocalAnalysisStore(_JsonStore):
    """JSON files rooted at the provided base directory."""

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        relative = path.lstrip("/").lstrip("\\")
        return self.base_dir / relative

    def _write(self, key: str, data: Any) -> None:
        destination = self._resolve(key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(json.dumps(data, default=str), encoding="utf-8")

    def _read(self, key: str) -> Optional[Any]:
        path = self._resolve(key)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _keys(self, prefix: str) -> List[str]:
        folder = self._resolve(prefix)
        if not folder.is_dir():
            return []
        return [str(p.relative_to(self.base_dir)) for p in sorted(folder.glob("*.json"))]


class S3AnalysisStore(_JsonStore):
    """Amazon S3 backed store; one JSON object per record."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        *,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        region_name: Optional[str] = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 bucket name is required for S3AnalysisStore")
        self.bucket = bucket
        self.prefix = prefix.strip("/").strip("\\")
        self._client: BaseClient = boto3.client(
            "s3",
            region_name=region_name,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
        )

    def _object_key(self, path: str) -> str:
        normalized = path.lstrip("/").lstrip("\\")
        if self.prefix:
            return f"{self.prefix}/{normalized}"
        return normalized

    def _write(self, key: str, data: Any) -> None:
        body = json.dumps(data, default=str).encode("utf-8")
        self._client.put_object(
            Bucket=self.bucket, Key=self._object_key(key), Body=body, ContentType="application/json"
        )

    def _read(self, key: str) -> Optional[Any]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=self._object_key(key))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise
        return json.loads(response["Body"].read())

    def _keys(self, prefix: str) -> List[str]:
        full_prefix = self._object_key(prefix)
        strip = len(self.prefix) + 1 if self.prefix else 0
        keys: List[str] = []
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=full_prefix):
            for item in page.get("Contents", []):
                keys.append(item["Key"][strip:])
        return keys


@lru_cache()
def get_store(default_local_base_dir: Optional[str] = None) -> AnalysisStore:
    """Instantiate the configured storage backend."""

    backend = settings.storage_backend.lower()
    if backend == "local":
        base_dir = default_local_base_dir or settings.local_storage_dir
        return LocalAnalysisStore(base_dir)
    if backend == "s3":
        return S3AnalysisStore(
            bucket=settings.s3_bucket or "",
            prefix=settings.s3_prefix,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )
    raise RuntimeError(f"Unsupported storage backend: {settings.storage_backend}")


def build_analysis_record(
    athlete_id: str,
    assessment: ScoredAssessment,
    match_style: str,
    match_context: Optional[MatchContext] = None,
    analysis_id: Optional[str] = None,
) -> Dict[str, Any]:
    context = match_context or MatchContext()
    return {
        "id": analysis_id or uuid.uuid4().hex,
        "athlete_id": athlete_id,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "match_style": match_style,
        "overall_score": assessment.overall_score,
        "standing": assessment.position_scores.standing,
        "top": assessment.position_scores.top,
        "bottom": assessment.position_scores.bottom,
        "confidence": assessment.confidence,
        "sub_scores": assessment.sub_scores.model_dump(),
        "match_result": assessment.match_result.result,
        "result_type": assessment.match_result.result_type,
        "match_duration_sec": assessment.match_result.match_duration_seconds,
        "match_stats": assessment.match_stats.model_dump(),
        "fatigue_analysis": assessment.fatigue_analysis.model_dump(),
        "strengths": list(assessment.strengths),
        "weaknesses": list(assessment.weaknesses),
        "weight_class": context.weight_class,
        "competition_name": context.competition_name,
        "round_number": context.round_number,
        "days_from_weigh_in": context.days_from_weigh_in,
    }


def persist_analysis(
    store: AnalysisStore,
    athlete_id: str,
    assessment: ScoredAssessment,
    match_style: str,
    match_context: Optional[MatchContext] = None,
) -> Dict[str, Any]:
    """Save the analysis, its drills, newly earned badges and a level history entry.

    Saves for one athlete run one at a time so the analysis count, badge set and
    history list are never read stale.
    """

    with _athlete_lock(athlete_id):
        return _persist(store, athlete_id, assessment, match_style, match_context)


def _persist(
    store: AnalysisStore,
    athlete_id: str,
    assessment: ScoredAssessment,
    match_style: str,
    match_context: Optional[MatchContext],
) -> Dict[str, Any]:
    record = build_analysis_record(athlete_id, assessment, match_style, match_context)
    store.save_analysis(record)

    if assessment.drills:
        store.save_drill_assignments(
            athlete_id,
            record["id"],
            [
                {
                    "analysis_id": record["id"],
                    "drill_name": drill.name,
                    "description": drill.description,
                    "reps": drill.reps,
                    "priority": drill.priority,
                    "addresses": drill.addresses,
                    "completed": False,
                }
                for drill in assessment.drills
            ],
        )

    count = len(store.list_analyses(athlete_id))
    held = {badge["key"] for badge in store.load_badges(athlete_id)}
    earned = [b for b in check_badges(assessment, count) if b.key not in held]
    if earned:
        now = record["created_at"]
        store.save_badges(athlete_id, [{**b.as_dict(), "earned_at": now, "analysis_id": record["id"]} for b in earned])

    store.append_level_history(
        athlete_id,
        {
            "analysis_id": record["id"],
            "created_at": record["created_at"],
            "score": record["overall_score"],
            "reason": f"Scored {round(assessment.overall_score)}",
            "detail": f"{match_style} analysis completed",
        },
    )
    logger.info(
        "analysis_saved",
        extra={"athlete_id": athlete_id, "analysis_id": record["id"], "badges": [b.key for b in earned]},
    )
    return record


def persist_analysis_in_background(
    store: AnalysisStore,
    athlete_id: str,
    assessment: ScoredAssessment,
    match_style: str,
    match_context: Optional[MatchContext] = None,
) -> asyncio.Task:
    """Schedule ``persist_analysis`` off the event loop; failures are logged only."""

    async def _save() -> None:
        try:
            await asyncio.to_thread(persist_analysis, store, athlete_id, assessment, match_style, match_context)
        except Exception:  # noqa: BLE001 - persistence never affects the response
            logger.exception("analysis_save_failed", extra={"athlete_id": athlete_id})

    task = asyncio.create_task(_save())
    _BACKGROUND.add(task)
    task.add_done_callback(_BACKGROUND.discard)
    return task


async def wait_for_background_saves() -> None:
    if _BACKGROUND:
        await asyncio.gather(*list(_BACKGROUND), return_exceptions=True)
