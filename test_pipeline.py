#!/usr/bin/env python3
"""
End-to-end pipeline runs against a scripted inference client.
No network: triage, perception and reasoning replies all come from FakeInference.
"""
import asyncio
import base64
import re
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from matworker.errors import AnalysisError, ErrorCode
from matworker.inference import InferenceResult
from matworker.pipeline import AnalysisPipeline
from matworker.schemas import AnalysisRequest, AthleteOutcome, OpponentOutcome
from matworker.settings import settings

FRAME_RE = re.compile(r"^\[Frame (\d+)\]")


def distinct_frames(count: int):
    return [base64.b64encode(bytes([(i * 37 + 11) % 256]) * 600).decode() for i in range(count)]


def observation_for(index: int):
    if index == 5:
        return {
            "frame_index": 5,
            "athlete_position": "standing",
            "athlete_body": "low level change, head up",
            "opponent_body": "upright, hands high",
            "contact_points": "both arms around both legs",
            "action": "ATHLETE: Takedown (double leg)",
            "wrestler_visible": True,
            "estimated_stance_height": "low",
            "significance": "CRITICAL",
        }
    position = "standing" if index < 6 else ("top" if index < 9 else "bottom")
    action = {"standing": "hand fighting in neutral", "top": "tight waist ride", "bottom": "base on hands and knees"}
    return {
        "frame_index": index,
        "athlete_position": position,
        "action": action[position],
        "wrestler_visible": True,
        "estimated_stance_height": "medium",
        "significance": "CONTEXT",
    }


def assessment_payload():
    reasoning = (
        "The athlete kept a compact stance, changed levels with purpose and finished the double leg by "
        "driving through the hips and turning the corner."
    )
    return {
        "overall_score": 67,
        "confidence": 0.7,
        "position_scores": {"standing": 70, "top": 70, "bottom": 60},
        "sub_scores": {
            "standing": {
                "stance_motion": 15,
                "shot_selection": 14,
                "shot_finishing": 16,
                "sprawl_defense": 13,
                "reattacks_chains": 12,
            },
            "top": {"ride_tightness": 18, "breakdowns": 17, "turns_nearfalls": 16, "mat_returns": 19},
            "bottom": {"base_posture": 15, "standups": 16, "sitouts_switches": 17, "reversals": 12},
        },
        "position_reasoning": {"standing": reasoning, "top": reasoning, "bottom": reasoning},
        "frame_evidence": [
            {
                "frame_index": 5,
                "position": "standing",
                "action": "ATHLETE: Takedown (double leg)",
                "is_key_moment": True,
                "key_moment_type": "takedown",
                "detail": "Clean double leg finished through the hips.",
                "wrestler_visible": True,
                "rubric_impact": "+3 Shot Finishing for driving through the finish",
            },
            {
                "frame_index": 7,
                "position": "top",
                "action": "tight waist ride",
                "is_key_moment": False,
                "detail": "Chest stays on the back while riding.",
                "wrestler_visible": True,
                "rubric_impact": "+2 Ride Tightness",
            },
        ],
        "strengths": ["Double leg finish"],
        "weaknesses": ["Bottom base"],
        "drills": [
            {
                "name": "Stance and base",
                "description": "Hold base against pressure",
                "reps": "3x30s",
                "priority": "high",
                "addresses": "Bottom base",
            }
        ],
        "summary": "Strong on the feet, needs work on bottom.",
    }


def scouting_payload():
    return {
        "opponent_profile": {"estimated_skill_level": "Solid", "primary_style": "Funk", "stance": "Orthodox"},
        "attack_patterns": [
            {
                "technique": "Low single",
                "frequency": "primary",
                "setup": "Collar tie snap",
                "effectiveness": "medium",
                "counter_recommendation": "Heavy hips and whizzer",
            }
        ],
        "defense_patterns": [
            {"situation": "Double leg", "typical_response": "Sprawl", "vulnerability": "Slow to re-square"}
        ],
        "position_tendencies": {"standing": "Circles left", "top": "Rides legs", "bottom": "Sits out"},
        "conditioning_indicators": "Fades late",
        "gameplan": {
            "period1": "Push pace",
            "period2": "Choose bottom",
            "if_ahead": "Stay in good position",
            "if_behind": "Attack the left side",
            "key_techniques": ["Snap down", "Go behind"],
        },
        "summary": "Beatable with pace.",
    }


class FakeInference:
    """Drop-in for InferenceClient that answers from canned payloads."""

    def __init__(self, assessment=None, delay: float = 0.0):
        self.assessment = assessment if assessment is not None else assessment_payload()
        self.delay = delay
        self.calls = []
        self.closed = False

    async def complete_json(self, system, prompt, images=(), max_tokens=2000, label="inference", model=None):
        self.calls.append(label)
        if self.delay:
            await asyncio.sleep(self.delay)
        indices = []
        for caption, _frame in images:
            match = FRAME_RE.match(caption)
            if match:
                indices.append(int(match.group(1)))
        if label == "triage":
            data = {
                "classifications": [
                    {
                        "frame_index": i,
                        "classification": "wrestling_action",
                        "position": "standing",
                        "action_intensity": "high",
                    }
                    for i in indices
                ]
            }
        else:
            data = {"observations": [observation_for(i) for i in indices]}
        return InferenceResult(data, "", 100, 50, 0.01)

    async def complete_structured(
        self, system, prompt, schema_name, schema, max_tokens=4096, label="structured", model=None
    ):
        self.calls.append(label)
        data = scouting_payload() if schema_name == "opponent_scouting" else self.assessment
        return InferenceResult(data, "", 200, 100, 0.01)

    def usage(self):
        return {"calls": len(self.calls), "input_tokens": 0, "output_tokens": 0, "estimated_cost_usd": 0.0}

    async def aclose(self):
        self.closed = True


def build_pipeline(fake: FakeInference, **overrides) -> AnalysisPipeline:
    cfg = settings.model_copy(update=overrides) if overrides else settings
    return AnalysisPipeline(inference_factory=lambda: fake, settings=cfg)


def test_takedown_frame_becomes_key_moment():
    fake = FakeInference()
    pipeline = build_pipeline(fake)
    request = AnalysisRequest(frames=distinct_frames(12))

    outcome = asyncio.run(pipeline.run(request))

    assert isinstance(outcome, AthleteOutcome)
    assert outcome.frames_analyzed == 12
    assert outcome.observation_count == 12
    assert outcome.assessment.match_stats.takedowns_scored == 1
    assert outcome.assessment.overall_score == 67
    assert 5 in outcome.display_frames

    annotations = outcome.document["frame_annotations"]
    assert len(annotations) == 12
    frame6 = annotations[5]
    assert frame6["frame_number"] == 6
    assert frame6["is_key_moment"] is True
    assert frame6["action"] == "ATHLETE: Takedown (double leg)"
    assert outcome.document["drills"] == ["Stance and base: 3x30s - Hold base against pressure"]
    assert outcome.document["match_stats"]["takedowns_scored"] == 1
    assert "telemetry" in outcome.document
    assert fake.closed
    # 12 frames never trigger triage
    assert "triage" not in fake.calls
    print("✅ Test passed: takedown frame is counted and surfaced as a key moment")


def test_stage_callbacks_in_order():
    fake = FakeInference()
    pipeline = build_pipeline(fake)
    seen = []

    asyncio.run(
        pipeline.run(AnalysisRequest(frames=distinct_frames(12)), on_stage=lambda s, pct, d: seen.append((s, pct)))
    )

    stages = [s for s, _ in seen]
    assert stages == ["preprocessing", "perception", "augmentation", "reasoning", "validating", "persisted"]
    pcts = [pct for _, pct in seen]
    assert pcts == sorted(pcts)
    print("✅ Test passed: stage callbacks are monotonic")


def test_triage_runs_on_long_clips():
    fake = FakeInference()
    pipeline = build_pipeline(fake)

    outcome = asyncio.run(pipeline.run(AnalysisRequest(frames=distinct_frames(20))))

    assert "triage" in fake.calls
    assert outcome.frames_analyzed == 20
    print("✅ Test passed: triage runs above the frame threshold")


def test_opponent_mode_returns_scouting():
    fake = FakeInference()
    pipeline = build_pipeline(fake)

    outcome = asyncio.run(pipeline.run(AnalysisRequest(frames=distinct_frames(12), mode="opponent")))

    assert isinstance(outcome, OpponentOutcome)
    assert outcome.document["mode"] == "opponent"
    assert outcome.document["drills"] == ["Snap down", "Go behind"]
    assert outcome.scouting.opponent_profile.primary_style == "Funk"
    print("✅ Test passed: opponent mode yields a scouting report")


def test_no_frames():
    pipeline = build_pipeline(FakeInference())
    try:
        asyncio.run(pipeline.run(AnalysisRequest(frames=[])))
    except AnalysisError as exc:
        assert exc.code == ErrorCode.NO_FRAMES
        assert exc.http_status == 400
    else:
        raise AssertionError("expected NO_FRAMES")
    print("✅ Test passed: empty frame list is rejected")


def test_timeout_budget():
    fake = FakeInference(delay=2.0)
    pipeline = build_pipeline(fake, PIPELINE_TIMEOUT_SECONDS=0.2)
    try:
        asyncio.run(pipeline.run(AnalysisRequest(frames=distinct_frames(12))))
    except AnalysisError as exc:
        assert exc.code == ErrorCode.ANALYSIS_TIMEOUT
        assert exc.can_retry
    else:
        raise AssertionError("expected ANALYSIS_TIMEOUT")
    assert fake.closed
    print("✅ Test passed: slow analyses time out")


def test_invalid_reasoning_output_fails_after_retry():
    fake = FakeInference(assessment={"overall_score": "high"})
    pipeline = build_pipeline(fake)
    try:
        asyncio.run(pipeline.run(AnalysisRequest(frames=distinct_frames(12))))
    except AnalysisError as exc:
        assert exc.code == ErrorCode.PASS2_FAILED
        assert len(exc.reasons) == 2
    else:
        raise AssertionError("expected PASS2_FAILED")
    assert fake.calls.count("pass2") == 2
    print("✅ Test passed: malformed Pass 2 output fails after one retry")


class UnreadablePerception(FakeInference):
    """Pass 1 replies are prose, never JSON."""

    async def complete_json(self, system, prompt, images=(), max_tokens=2000, label="inference", model=None):
        if label == "pass1":
            self.calls.append(label)
            return InferenceResult(None, "sorry, I cannot")
        return await super().complete_json(system, prompt, images, max_tokens, label, model)


class QuietTriage(FakeInference):
    """Triage labels the listed positions as no_action."""

    def __init__(self, quiet, **kwargs):
        super().__init__(**kwargs)
        self.quiet = set(quiet)

    async def complete_json(self, system, prompt, images=(), max_tokens=2000, label="inference", model=None):
        result = await super().complete_json(system, prompt, images, max_tokens, label, model)
        if label == "triage":
            for row in result.data["classifications"]:
                if row["frame_index"] in self.quiet:
                    row["classification"] = "no_action"
                    row["action_intensity"] = "none"
        return result


def test_unparseable_perception_still_scores():
    fake = UnreadablePerception()
    pipeline = build_pipeline(fake)

    outcome = asyncio.run(pipeline.run(AnalysisRequest(frames=distinct_frames(12))))

    assert isinstance(outcome, AthleteOutcome)
    assert outcome.observation_count == 0
    assert "pass2" in fake.calls
    flags = {f.check: f.severity for f in outcome.quality_flags}
    assert flags["pass1_empty"] == "error"
    assert flags["pass1_batches_failed"] == "warning"
    assert flags["pass1_coverage"] == "warning"
    assert "pass1_empty" in [f["check"] for f in outcome.document["quality_flags"]]
    print("✅ Test passed: unreadable Pass 1 replies degrade instead of failing the run")


def test_triage_overfiltering_falls_back_to_all_frames():
    fake = QuietTriage(quiet=range(2, 18))
    pipeline = build_pipeline(fake)

    outcome = asyncio.run(pipeline.run(AnalysisRequest(frames=distinct_frames(20))))

    # only the 4 edge frames survive, below the 60% floor of 12
    assert outcome.frames_analyzed == 20
    flag = next(f for f in outcome.quality_flags if f.check == "triage_overfiltered")
    assert flag.severity == "info"
    assert "4/20" in flag.detail
    print("✅ Test passed: triage that drops too much is ignored")


def test_triage_within_floor_is_applied():
    fake = QuietTriage(quiet=range(5, 9))
    pipeline = build_pipeline(fake)

    outcome = asyncio.run(pipeline.run(AnalysisRequest(frames=distinct_frames(20))))

    assert outcome.frames_analyzed == 16
    assert "triage_overfiltered" not in {f.check for f in outcome.quality_flags}
    print("✅ Test passed: triage output above the floor is used")


class TokenRecorder(FakeInference):
    """Records (label, max_tokens, frame count) for every call."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.budgets = []

    async def complete_json(self, system, prompt, images=(), max_tokens=2000, label="inference", model=None):
        self.budgets.append((label, max_tokens, len(images)))
        return await super().complete_json(system, prompt, images, max_tokens, label, model)

    async def complete_structured(
        self, system, prompt, schema_name, schema, max_tokens=4096, label="structured", model=None
    ):
        self.budgets.append((label, max_tokens, 0))
        return await super().complete_structured(system, prompt, schema_name, schema, max_tokens, label, model)


def test_quick_mode_samples_frames_and_skips_triage():
    fake = TokenRecorder()
    pipeline = build_pipeline(fake)

    outcome = asyncio.run(pipeline.run(AnalysisRequest(frames=distinct_frames(40), quickMode=True)))

    assert "triage" not in fake.calls
    assert fake.calls.count("pass1") == 1
    assert ("pass1", settings.QUICK_PERCEPTION_MAX_TOKENS, 8) in fake.budgets
    assert ("pass2", settings.QUICK_REASONING_MAX_TOKENS, 0) in fake.budgets
    assert outcome.frames_submitted == 40
    assert outcome.frames_analyzed == 8
    assert len(outcome.document["frame_annotations"]) == 8
    assert outcome.document["analysis_profile"] == "quick"
    assert outcome.assessment.fatigue_analysis.conditioning_notes == "Quick mode - fatigue analysis skipped"
    assert not outcome.assessment.fatigue_analysis.conditioning_flag
    print("✅ Test passed: quick mode runs one Pass 1 call over 8 frames")


def test_full_mode_profile():
    fake = TokenRecorder()
    pipeline = build_pipeline(fake)

    outcome = asyncio.run(pipeline.run(AnalysisRequest(frames=distinct_frames(12))))

    assert outcome.document["analysis_profile"] == "full"
    assert ("pass2", settings.REASONING_MAX_TOKENS, 0) in fake.budgets
    assert fake.calls.count("pass1") == 3
    print("✅ Test passed: full analyses keep the default budgets")


def test_missing_api_key_propagates():
    def factory():
        raise AnalysisError(ErrorCode.INVALID_API_KEY, "ANTHROPIC_API_KEY is not configured")

    pipeline = AnalysisPipeline(inference_factory=factory, settings=settings)
    try:
        asyncio.run(pipeline.run(AnalysisRequest(frames=distinct_frames(3))))
    except AnalysisError as exc:
        assert exc.code == ErrorCode.INVALID_API_KEY
        assert exc.http_status == 401
    else:
        raise AssertionError("expected INVALID_API_KEY")
    print("✅ Test passed: missing credentials surface as INVALID_API_KEY")


if __name__ == "__main__":
    try:
        test_takedown_frame_becomes_key_moment()
        test_stage_callbacks_in_order()
        test_triage_runs_on_long_clips()
        test_opponent_mode_returns_scouting()
        test_no_frames()
        test_timeout_budget()
        test_invalid_reasoning_output_fails_after_retry()
        test_unparseable_perception_still_scores()
        test_triage_overfiltering_falls_back_to_all_frames()
        test_triage_within_floor_is_applied()
        test_quick_mode_samples_frames_and_skips_triage()
        test_full_mode_profile()
        test_missing_api_key_propagates()
        print("\n🎉 ALL PIPELINE TESTS PASSED!")
        sys.exit(0)
    except AssertionError as e:
        print(f"\n❌ TEST FAILED: {e}")
        sys.exit(1)
