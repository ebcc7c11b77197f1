#!/usr/bin/env python3
"""
Observation summarization keeps every key frame verbatim and folds context runs.
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from matworker.schemas import Observation
from matworker.summarizer import (
    format_raw_observations,
    format_summarized_for_pass2,
    summarize_observations,
)


def long_match():
    observations = []
    for i in range(40):
        position = "standing" if i < 20 else "top"
        significance = "CONTEXT"
        action = "circling" if position == "standing" else "riding"
        if i == 12:
            significance, action = "CRITICAL", "ATHLETE: Takedown (single leg)"
        if i == 25:
            significance, action = "IMPORTANT", "half nelson attempt"
        observations.append(
            Observation(
                frame_index=i,
                athlete_position=position,
                action=action,
                significance=significance,
                estimated_stance_height="medium" if i < 10 else "low",
            )
        )
    return observations


def test_key_frames_kept_verbatim():
    summary = summarize_observations(long_match())

    keys = [s for s in summary.segments if s.key_observation is not None]
    assert [s.key_observation.frame_index for s in keys] == [12, 25]
    assert summary.critical_count == 1
    assert summary.important_count == 1
    assert summary.key_count == 2
    print("✅ Test passed: CRITICAL and IMPORTANT frames survive as their own segments")


def test_context_runs_fold_by_position():
    summary = summarize_observations(long_match())

    context = [s for s in summary.segments if s.significance == "CONTEXT"]
    assert [(s.start_frame, s.end_frame) for s in context] == [(0, 11), (13, 19), (20, 24), (26, 39)]
    assert summary.compressed_frames == 38
    assert summary.total_frames == 40
    assert summary.compression_ratio == round(6 / 40, 3)
    assert "stance: medium -> low" in context[0].context_summary
    print("✅ Test passed: context runs collapse per position")


def test_pass2_text():
    observations = long_match()
    text = format_summarized_for_pass2(summarize_observations(observations))

    assert "[CRITICAL] Frame 12" in text
    assert "[CONTEXT] Frames 0-11" in text
    assert len(text) < len(format_raw_observations(observations))
    assert format_summarized_for_pass2(summarize_observations([])) == "No observations available."
    print("✅ Test passed: summarized prompt text is shorter than the raw corpus")


if __name__ == "__main__":
    try:
        test_key_frames_kept_verbatim()
        test_context_runs_fold_by_position()
        test_pass2_text()
        print("\n🎉 ALL SUMMARIZER TESTS PASSED!")
        sys.exit(0)
    except AssertionError as e:
        print(f"\n❌ TEST FAILED: {e}")
        sys.exit(1)
