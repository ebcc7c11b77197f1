#!/usr/bin/env python3
"""
Match stats: the model's own counts win, otherwise counts come from ATHLETE:/OPPONENT:
prefixed evidence matched on whole words.
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from matworker.stats import extract_match_stats
from test_validation import evidence, make_assessment


def test_counts_from_prefixed_evidence():
    assessment = make_assessment(
        frame_evidence=[
            evidence(1, "standing", "ATHLETE: Takedown (double leg)", key=True),
            evidence(4, "top", "ATHLETE: Near fall off a half nelson", key=True),
            evidence(6, "top", "ATHLETE: Pinned with a cradle", key=True),
            evidence(8, "bottom", "ATHLETE: Escaped with a standup", key=True),
            evidence(9, "bottom", "ATHLETE: Reversal from a switch", key=True),
            evidence(10, "standing", "OPPONENT: takedown off a snap down", key=True),
            evidence(11, "standing", "takedown attempt, no prefix"),
        ]
    )

    stats = extract_match_stats(assessment)

    assert stats.takedowns_scored == 1
    assert stats.near_falls_scored == 1
    assert stats.pins_scored == 1
    assert stats.escapes_scored == 1
    assert stats.reversals_scored == 1
    assert stats.takedowns_allowed == 1
    print("✅ Test passed: prefixed evidence actions are counted")


def test_words_inside_other_words_do_not_count():
    assessment = make_assessment(
        frame_evidence=[
            evidence(1, "standing", "ATHLETE: Takedown (spin behind)", key=True),
            evidence(2, "standing", "ATHLETE: Pinch headlock attempt"),
            evidence(5, "top", "ATHLETE: Spiral ride, opponent flattened"),
        ]
    )

    stats = extract_match_stats(assessment)

    assert stats.takedowns_scored == 1
    assert stats.pins_scored == 0
    print("✅ Test passed: 'spin' and 'pinch' are not pins")


def test_model_counts_take_precedence():
    assessment = make_assessment(
        match_stats={"takedowns_scored": 3, "pins_scored": 0},
        frame_evidence=[evidence(1, "standing", "ATHLETE: Takedown (double leg)", key=True)],
    )

    stats = extract_match_stats(assessment)

    assert stats.takedowns_scored == 3
    print("✅ Test passed: non-zero model stats are kept as reported")


if __name__ == "__main__":
    try:
        test_counts_from_prefixed_evidence()
        test_words_inside_other_words_do_not_count()
        test_model_counts_take_precedence()
        print("\n🎉 ALL STATS TESTS PASSED!")
        sys.exit(0)
    except AssertionError as e:
        print(f"\n❌ TEST FAILED: {e}")
        sys.exit(1)
