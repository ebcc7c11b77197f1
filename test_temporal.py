#!/usr/bin/env python3
"""
Temporal windows partition the observations; phases and tempo summarize them.
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from matworker.schemas import Observation
from matworker.temporal import (
    build_temporal_summary,
    classify_action_type,
    detect_action_windows,
    format_temporal_context,
)


def obs(index, position, action="", significance="CONTEXT", contact=""):
    return Observation(
        frame_index=index,
        athlete_position=position,
        action=action,
        significance=significance,
        contact_points=contact,
    )


def sample_match():
    return [
        obs(0, "standing", "hand fight"),
        obs(1, "standing", "collar tie"),
        obs(2, "standing", "double leg shot", "CRITICAL"),
        obs(3, "standing", "takedown finish", "CRITICAL"),
        obs(4, "top", "tight waist ride", "IMPORTANT"),
        obs(5, "top", "half nelson", "IMPORTANT"),
        obs(9, "top", "breakdown"),
        obs(10, "bottom", "standup", "CRITICAL"),
        obs(11, "bottom", "escape", "IMPORTANT"),
    ]


def test_windows_partition_observations():
    observations = sample_match()

    windows = detect_action_windows(observations)

    covered = [i for w in windows for i in w.frame_indices]
    assert sorted(covered) == [o.frame_index for o in observations]
    assert len(covered) == len(set(covered))
    # position change, CRITICAL after non-CRITICAL, and a gap > 2 all split
    assert [w.frame_indices for w in windows] == [[0, 1], [2, 3], [4, 5], [9], [10, 11]]
    assert windows[1].significance == "critical"
    assert windows[1].action_type == "takedown_attempt"
    assert windows[1].is_scoring_event
    assert windows[2].significance == "important"
    assert windows[0].significance == "context"
    print("✅ Test passed: windows partition every observation exactly once")


def test_unordered_input_is_sorted():
    observations = list(reversed(sample_match()))

    windows = detect_action_windows(observations)

    assert windows[0].start_frame == 0
    assert windows[-1].end_frame == 11
    print("✅ Test passed: windows are built in frame order")


def test_summary_phases_and_tempo():
    observations = sample_match()
    windows = detect_action_windows(observations)

    summary = build_temporal_summary(windows, observations)

    assert summary.total_windows == 5
    assert len(summary.phases) == 3
    assert [p.phase for p in summary.phases] == [1, 2, 3]
    assert summary.phases[0].start_frame == 0
    assert summary.phases[-1].end_frame == 11
    assert sum(p.window_count for p in summary.phases) == 5
    assert summary.position_distribution["top"] == {"windows": 2, "total_frames": 3}
    assert summary.scoring_event_count == 2
    assert summary.tempo == "high"
    assert summary.tempo_changes[0].frame == 2
    assert "TEMPORAL ACTION ANALYSIS" in format_temporal_context(summary)
    print("✅ Test passed: three phases and a tempo summary")


def test_no_phases_below_three_windows():
    observations = [obs(0, "standing", "hand fight"), obs(1, "top", "ride")]

    summary = build_temporal_summary(detect_action_windows(observations), observations)

    assert summary.total_windows == 2
    assert summary.phases == []
    print("✅ Test passed: short matches have no phases")


def test_position_fallback_classification():
    assert classify_action_type("", "bottom") == "escape_attempt"
    assert classify_action_type("", "not_visible") == "unknown"
    assert classify_action_type("sprawl and whizzer", "standing") == "takedown_defense"
    print("✅ Test passed: action type classification")


if __name__ == "__main__":
    try:
        test_windows_partition_observations()
        test_unordered_input_is_sorted()
        test_summary_phases_and_tempo()
        test_no_phases_below_three_windows()
        test_position_fallback_classification()
        print("\n🎉 ALL TEMPORAL TESTS PASSED!")
        sys.exit(0)
    except AssertionError as e:
        print(f"\n❌ TEST FAILED: {e}")
        sys.exit(1)
