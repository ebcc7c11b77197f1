#!/usr/bin/env python3
"""
Quality gate on Pass 2 output: corrections land on a copy, and every finding is a
severity-tagged flag rather than an exception.
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from matworker.knowledge import compute_overall
from matworker.schemas import Observation, ScoredAssessment
from matworker.validation import validate_assessment

LONG_REASONING = (
    "Level changes were crisp and the finishes came off real setups, but the athlete stood too tall "
    "between attacks and gave up inside ties."
)


def evidence(index, position, action="single leg shot", key=False):
    return {
        "frame_index": index,
        "position": position,
        "action": action,
        "is_key_moment": key,
        "detail": "Observed in frame.",
        "wrestler_visible": True,
        "rubric_impact": "+1 Shot Selection",
    }


def make_assessment(**overrides):
    data = {
        "overall_score": 67,
        "confidence": 0.6,
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
        "position_reasoning": {"standing": LONG_REASONING, "top": LONG_REASONING, "bottom": LONG_REASONING},
        "frame_evidence": [
            evidence(0, "standing", key=True),
            evidence(1, "standing", "double leg takedown", key=True),
            evidence(4, "top", "tight waist ride", key=True),
            evidence(5, "top", "half nelson turn"),
            evidence(8, "bottom", "standup escape"),
            evidence(9, "bottom", "sit-out switch"),
        ],
    }
    data.update(overrides)
    return ScoredAssessment.model_validate(data)


def observations(count, critical=()):
    return [
        Observation(frame_index=i, athlete_position="standing", significance="CRITICAL" if i in critical else "CONTEXT")
        for i in range(count)
    ]


def checks(flags):
    return {f.check for f in flags}


def test_clean_assessment_has_no_warnings():
    corrected, flags = validate_assessment(make_assessment(), observations(12, critical=(1,)), 12, 12)

    assert corrected.overall_score == 67
    assert not [f for f in flags if f.severity in ("warning", "error")], flags
    print("✅ Test passed: consistent output passes cleanly")


def test_scoring_inflation():
    assessment = make_assessment(match_stats={"takedowns_scored": 6})

    _, flags = validate_assessment(assessment, observations(12, critical=(1,)), 12, 12)

    inflation = [f for f in flags if f.check == "scoring_inflation"]
    assert len(inflation) == 1
    assert inflation[0].severity == "warning"
    assert "6 scoring events" in inflation[0].detail
    print("✅ Test passed: six claimed scores against one critical frame is inflation")


def test_short_clip_skips_sparse_evidence():
    assessment = make_assessment(
        position_reasoning={"standing": "Good.", "top": LONG_REASONING, "bottom": LONG_REASONING},
        frame_evidence=[evidence(0, "standing", key=True)],
    )

    _, flags = validate_assessment(assessment, observations(8), 8, 8)

    names = checks(flags)
    assert "sparse_evidence" not in names
    assert "few_key_frames" not in names
    assert "reasoning_depth" in names
    assert "shallow_reasoning" in names
    assert "evidence_density" in names
    print("✅ Test passed: under ten frames only depth checks fire")


def test_out_of_range_evidence_is_clamped_on_copy():
    assessment = make_assessment(frame_evidence=[evidence(15, "standing"), evidence(-2, "top")])

    corrected, flags = validate_assessment(assessment, observations(12), 12, 12)

    assert [e.frame_index for e in corrected.frame_evidence] == [11, 0]
    assert [e.frame_index for e in assessment.frame_evidence] == [15, -2]
    names = checks(flags)
    assert "evidence_index_clamped" in names
    errors = [f for f in flags if f.check == "evidence_out_of_bounds"]
    assert errors and errors[0].severity == "error"
    print("✅ Test passed: invalid evidence indices are clamped and reported")


def test_overall_always_matches_weighting():
    assessment = make_assessment(overall_score=95)

    corrected, flags = validate_assessment(assessment, observations(12, critical=(1,)), 12, 12)

    ps = corrected.position_scores
    assert corrected.overall_score == compute_overall(ps.standing, ps.top, ps.bottom) == 67
    names = checks(flags)
    assert "overall_mismatch" in names
    assert "score_calculation" not in names
    assert assessment.overall_score == 95
    print("✅ Test passed: overall is recomputed from position scores")


def test_subscore_corrections():
    assessment = make_assessment(position_scores={"standing": 90, "top": 70, "bottom": 60})
    assessment.sub_scores.top.ride_tightness = 31

    corrected, flags = validate_assessment(assessment, observations(12, critical=(1,)), 12, 12)

    names = checks(flags)
    assert "subscore_out_of_range" in names
    assert "position_subscore_mismatch" in names
    assert corrected.sub_scores.top.ride_tightness == 25
    assert corrected.position_scores.standing == 70
    assert corrected.position_scores.top == 77
    assert corrected.overall_score == compute_overall(70, 77, 60)
    print("✅ Test passed: sub-scores are clamped and position scores follow them")


def test_identical_scores_and_missing_evidence():
    assessment = make_assessment(
        position_scores={"standing": 70, "top": 70, "bottom": 70},
        confidence=0.95,
        frame_evidence=[],
        sub_scores={
            "standing": {
                "stance_motion": 15,
                "shot_selection": 15,
                "shot_finishing": 15,
                "sprawl_defense": 15,
                "reattacks_chains": 10,
            },
            "top": {"ride_tightness": 20, "breakdowns": 20, "turns_nearfalls": 15, "mat_returns": 15},
            "bottom": {"base_posture": 20, "standups": 20, "sitouts_switches": 15, "reversals": 15},
        },
    )

    _, flags = validate_assessment(assessment, observations(12), 12, 12)

    severities = {f.check: f.severity for f in flags}
    assert severities["identical_position_scores"] == "warning"
    assert severities["uniform_round_subscores"] == "info"
    assert severities["no_frame_evidence"] == "warning"
    assert severities["overconfident"] == "warning"
    assert severities["no_evidence"] == "error"
    print("✅ Test passed: hallucination heuristics")


def test_low_observation_coverage():
    _, flags = validate_assessment(make_assessment(), observations(5, critical=(1,)), 12, 5)

    assert "observation_coverage" in checks(flags)
    print("✅ Test passed: thin Pass 1 coverage is flagged")


if __name__ == "__main__":
    try:
        test_clean_assessment_has_no_warnings()
        test_scoring_inflation()
        test_short_clip_skips_sparse_evidence()
        test_out_of_range_evidence_is_clamped_on_copy()
        test_overall_always_matches_weighting()
        test_subscore_corrections()
        test_identical_scores_and_missing_evidence()
        test_low_observation_coverage()
        print("\n🎉 ALL VALIDATION TESTS PASSED!")
        sys.exit(0)
    except AssertionError as e:
        print(f"\n❌ TEST FAILED: {e}")
        sys.exit(1)
