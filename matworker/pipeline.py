"""Two-pass analysis pipeline.

preprocessing (dedup, triage) -> perception (Pass 1) -> augmentation (pose, temporal,
summarization) -> reasoning (Pass 2) -> validating -> persisted

Both the synchronous endpoint and the background runner call ``AnalysisPipeline.run``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .dedup import apply_dedup, deduplicate_frames
from .errors import AnalysisError, ErrorCode
from .inference import build_inference_client
from .perception import run_perception, select_display_frames, select_quick_frames
from .pose import compute_pose_trends, extract_soft_pose_metrics, format_pose_context
from .reasoning import (
    normalize_athlete_output,
    normalize_scouting_output,
    run_athlete_reasoning,
    run_scouting_reasoning,
)
from .schemas import (
    AnalysisRequest,
    AthleteOutcome,
    Frame,
    Observation,
    OpponentOutcome,
    QualityFlag,
)
from .settings import Settings, settings as default_settings
from .stats import extract_match_stats
from .storage import AnalysisStore, persist_analysis_in_background
from .summarizer import format_raw_observations, format_summarized_for_pass2, summarize_observations
from .telemetry import PipelineLogger
from .temporal import build_temporal_summary, detect_action_windows, format_temporal_context
from .triage import apply_triage, triage_frames
from .validation import validate_assessment

logger = logging.getLogger(__name__)

StageCallback = Callable[[str, float, str], None]
ProgressCallback = Callable[[Dict[str, Any]], None]

# stage -> progress percentage reported to the job record
STAGE_PCT: Dict[str, float] = {
    "received": 0.0,
    "preprocessing": 5.0,
    "perception": 20.0,
    "augmentation": 60.0,
    "reasoning": 70.0,
    "validating": 90.0,
    "persisted": 100.0,
}


class AnalysisPipeline:
    def __init__(
        self,
        inference_factory: Optional[Callable[[], Any]] = None,
        store: Optional[AnalysisStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.inference_factory = inference_factory or (lambda: build_inference_client(self.settings))
        self.store = store

    async def run(
        self,
        request: AnalysisRequest,
        on_stage: Optional[StageCallback] = None,
        job_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AthleteOutcome | OpponentOutcome:
        frames = request.build_frames()
        if not frames:
            raise AnalysisError(ErrorCode.NO_FRAMES, "no frames provided")

        telemetry = PipelineLogger(job_id)
        budget = float(self.settings.PIPELINE_TIMEOUT_SECONDS)
        deadline = time.monotonic() + budget
        try:
            return await asyncio.wait_for(
                self._run(request, frames, telemetry, deadline, on_stage, on_progress),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            telemetry.warn("error", code=ErrorCode.ANALYSIS_TIMEOUT.value, budget_sec=budget)
            raise AnalysisError(
                ErrorCode.ANALYSIS_TIMEOUT, f"analysis exceeded {budget:g}s budget"
            ) from None
        except AnalysisError as exc:
            telemetry.warn("error", code=exc.code.value, detail=exc.detail)
            raise

    def _stage(self, on_stage: Optional[StageCallback], stage: str, detail: str = "") -> None:
        if on_stage is not None:
            on_stage(stage, STAGE_PCT.get(stage, 0.0), detail)

    def _batch_progress(self, on_progress: Optional[ProgressCallback]) -> Optional[Callable[[int, int], None]]:
        if on_progress is None:
            return None

        def _on_batch(done: int, total: int) -> None:
            on_progress({"pass1_batches_done": done, "pass1_batches_total": total})

        return _on_batch

    def _checkpoint(self, deadline: float, stage: str) -> None:
        if time.monotonic() > deadline:
            raise AnalysisError(
                ErrorCode.ANALYSIS_TIMEOUT,
                f"analysis exceeded {self.settings.PIPELINE_TIMEOUT_SECONDS:g}s budget before {stage}",
            )

    async def _run(
        self,
        request: AnalysisRequest,
        frames: List[Frame],
        telemetry: PipelineLogger,
        deadline: float,
        on_stage: Optional[StageCallback],
        on_progress: Optional[ProgressCallback] = None,
    ) -> AthleteOutcome | OpponentOutcome:
        cfg = self.settings
        submitted = len(frames)
        client = self.inference_factory()
        try:
            self._stage(on_stage, "preprocessing", f"{submitted} frames received")
            frames, pre_labels, flags = await self._preprocess(client, frames, telemetry, quick=request.quick)
            self._checkpoint(deadline, "perception")

            self._stage(on_stage, "perception", f"observing {len(frames)} frames")
            telemetry.log("pass1_start", frames=len(frames))
            perception = await run_perception(
                client,
                frames,
                athlete=request.athlete_identification,
                opponent=request.opponent_identification,
                id_frame=request.id_frame,
                pre_labels=pre_labels,
                batch_size=len(frames) if request.quick else cfg.PERCEPTION_BATCH_SIZE,
                max_batches=1 if request.quick else cfg.PERCEPTION_MAX_BATCHES,
                model=cfg.PERCEPTION_MODEL,
                max_tokens=cfg.QUICK_PERCEPTION_MAX_TOKENS if request.quick else cfg.PERCEPTION_MAX_TOKENS,
                coverage_min_ratio=cfg.COVERAGE_MIN_RATIO,
                identity_min_confidence=cfg.IDENTITY_MIN_CONFIDENCE,
                telemetry=telemetry,
                on_batch=self._batch_progress(on_progress),
            )
            observations = perception.observations
            telemetry.log(
                "pass1_complete",
                observations=len(observations),
                batches=perception.batches_submitted,
                failed=perception.batches_failed,
                coverage=perception.coverage,
            )
            flags.extend(perception.warnings)
            if not observations:
                # parse failures degrade; upstream-only failure already raised PASS1_FAILED
                flags.append(
                    QualityFlag(
                        check="pass1_empty",
                        severity="error",
                        detail="Perception returned no usable observations; scoring has no frame evidence",
                    )
                )
            telemetry.log(
                "identity_check",
                identity_confidence=perception.identity_confidence,
                position_confidence=perception.position_confidence,
            )
            self._checkpoint(deadline, "augmentation")

            self._stage(on_stage, "augmentation", f"{len(observations)} observations")
            observation_text, temporal_context, pose_context, pose_trends, compact = self._augment(
                observations, telemetry
            )
            self._checkpoint(deadline, "reasoning")

            self._stage(on_stage, "reasoning")
            reasoning_tokens = cfg.QUICK_REASONING_MAX_TOKENS if request.quick else cfg.REASONING_MAX_TOKENS
            telemetry.log("pass2_start", mode=request.mode, quick=request.quick, prompt_chars=len(observation_text))
            if request.mode == "opponent":
                scouting = await run_scouting_reasoning(
                    client,
                    observation_text,
                    match_style=request.match_style,
                    opponent=request.opponent_identification,
                    max_tokens=reasoning_tokens,
                    model=cfg.REASONING_MODEL,
                )
                telemetry.log("pass2_complete", attack_patterns=len(scouting.attack_patterns))
                document = normalize_scouting_output(scouting, len(frames), cfg.REASONING_MODEL)
                summary = self._finish(document, flags, telemetry, client, request.quick)
                self._stage(on_stage, "persisted")
                return OpponentOutcome(
                    scouting=scouting,
                    quality_flags=flags,
                    frames_submitted=submitted,
                    frames_analyzed=len(frames),
                    observation_count=len(observations),
                    telemetry=summary,
                    document=document,
                )

            assessment = await run_athlete_reasoning(
                client,
                observations,
                observation_text,
                len(frames),
                match_style=request.match_style,
                athlete=request.athlete_identification,
                match_context=request.match_context,
                temporal_context=temporal_context,
                pose_context=pose_context,
                compact_halves=compact,
                max_tokens=reasoning_tokens,
                model=cfg.REASONING_MODEL,
                quick=request.quick,
            )
            telemetry.log(
                "pass2_complete",
                overall=assessment.overall_score,
                evidence=len(assessment.frame_evidence),
            )
            self._checkpoint(deadline, "validation")

            self._stage(on_stage, "validating")
            corrected, quality = validate_assessment(assessment, observations, len(frames), len(observations))
            corrected.match_stats = extract_match_stats(corrected)
            flags.extend(quality)
            telemetry.log(
                "validation",
                flags=len(quality),
                errors=sum(1 for f in quality if f.severity == "error"),
                overall=corrected.overall_score,
            )

            display = select_display_frames(observations, cfg.DISPLAY_MAX_FRAMES, cfg.DISPLAY_MIN_FRAMES)
            document = normalize_athlete_output(corrected, len(frames), display, cfg.REASONING_MODEL)
            document["identity_confidence"] = perception.identity_confidence
            document["position_confidence"] = perception.position_confidence

            if self.store is not None and request.athlete_id:
                persist_analysis_in_background(
                    self.store, request.athlete_id, corrected, request.match_style, request.match_context
                )
                telemetry.log("save", athlete_id=request.athlete_id)

            summary = self._finish(document, flags, telemetry, client, request.quick)
            self._stage(on_stage, "persisted")
            return AthleteOutcome(
                assessment=corrected,
                quality_flags=flags,
                identity_confidence=perception.identity_confidence,
                position_confidence=perception.position_confidence,
                display_frames=display,
                frames_submitted=submitted,
                frames_analyzed=len(frames),
                observation_count=len(observations),
                pose_trends=pose_trends,
                telemetry=summary,
                document=document,
            )
        finally:
            await client.aclose()

    async def _preprocess(
        self,
        client: Any,
        frames: List[Frame],
        telemetry: PipelineLogger,
        quick: bool = False,
    ) -> Tuple[List[Frame], Dict[int, Any], List[QualityFlag]]:
        """Dedup then triage (or quick sampling); returned frames are re-indexed 0..n-1."""

        cfg = self.settings
        flags: List[QualityFlag] = []
        pre_labels: Dict[int, Any] = {}

        if cfg.DEDUP_ENABLE:
            dedup = deduplicate_frames(
                frames,
                length_threshold_pct=cfg.DEDUP_LENGTH_THRESHOLD_PCT,
                header_compare_length=cfg.DEDUP_HEADER_COMPARE_LENGTH,
                min_frames=cfg.DEDUP_MIN_FRAMES,
                max_consecutive_removal=cfg.DEDUP_MAX_CONSECUTIVE_REMOVAL,
                method=cfg.DEDUP_METHOD,
                phash_max_distance=cfg.DEDUP_PHASH_MAX_DISTANCE,
            )
            frames = apply_dedup(frames, dedup)
            telemetry.log(
                "dedup_complete",
                original=dedup.original_count,
                kept=dedup.kept_count,
                removed=len(dedup.removed_indices),
                groups=len(dedup.duplicate_groups),
                duration_ms=dedup.duration_ms,
            )

        if quick:
            sampled = select_quick_frames(frames, cfg.QUICK_MAX_FRAMES)
            telemetry.log("quick_select", frames=len(frames), kept=len(sampled))
            frames = sampled
        elif cfg.TRIAGE_ENABLE and len(frames) > cfg.TRIAGE_MIN_FRAMES:
            telemetry.log("triage_start", frames=len(frames))
            result = await triage_frames(
                client,
                frames,
                min_intensity=cfg.TRIAGE_MIN_INTENSITY,
                always_include_edge_frames=cfg.TRIAGE_EDGE_FRAMES,
                max_output_frames=cfg.TRIAGE_MAX_OUTPUT_FRAMES,
                batch_size=cfg.TRIAGE_BATCH_SIZE,
                model=cfg.TRIAGE_MODEL,
                max_tokens=cfg.TRIAGE_MAX_TOKENS,
            )
            applied = apply_triage(frames, result)
            floor = math.ceil(len(frames) * cfg.TRIAGE_MIN_SURVIVAL)
            if len(applied.frames) >= floor:
                pre_labels = {
                    position: applied.pre_labels[original]
                    for position, original in enumerate(applied.original_indices)
                }
                frames = applied.frames
                telemetry.log(
                    "triage_complete",
                    included=len(applied.frames),
                    filtered=result.summary.filtered_frames,
                    counts=result.summary.classification_counts,
                )
            else:
                flags.append(
                    QualityFlag(
                        check="triage_overfiltered",
                        severity="info",
                        detail=f"Triage kept {len(applied.frames)}/{len(frames)} frames (floor {floor}); using all frames",
                    )
                )
                telemetry.warn("triage_complete", included=len(frames), skipped=True)

        reindexed = [Frame(index=i, data=frame.data) for i, frame in enumerate(frames)]
        return reindexed, pre_labels, flags

    def _augment(
        self,
        observations: List[Observation],
        telemetry: PipelineLogger,
    ) -> Tuple[str, str, str, Any, bool]:
        metrics = extract_soft_pose_metrics(observations)
        trends = compute_pose_trends(metrics)
        pose_context = format_pose_context(metrics, trends)
        telemetry.log(
            "pose_estimation",
            samples=len(metrics),
            fatigue_indicators=len(trends.fatigue_indicators),
        )

        windows = detect_action_windows(observations)
        temporal = build_temporal_summary(windows, observations)
        temporal_context = format_temporal_context(temporal)
        telemetry.log(
            "temporal_analysis",
            windows=len(windows),
            scoring_events=temporal.scoring_event_count,
            tempo=temporal.tempo,
        )

        if len(observations) > self.settings.SUMMARIZE_MIN_OBSERVATIONS:
            summary = summarize_observations(observations)
            text = format_summarized_for_pass2(summary)
            telemetry.log(
                "summarization",
                segments=len(summary.segments),
                key=summary.key_count,
                compression_ratio=summary.compression_ratio,
            )
            return text, temporal_context, pose_context, trends, True
        return format_raw_observations(observations), temporal_context, pose_context, trends, False

    def _finish(
        self,
        document: Dict[str, Any],
        flags: List[QualityFlag],
        telemetry: PipelineLogger,
        client: Any,
        quick: bool = False,
    ) -> Dict[str, Any]:
        summary = telemetry.summary()
        summary["usage"] = client.usage()
        document["quality_flags"] = [flag.model_dump() for flag in flags]
        document["telemetry"] = summary
        document["analysis_profile"] = "quick" if quick else "full"
        return summary
