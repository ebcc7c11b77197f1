#!/usr/bin/env python3
"""
Pass 1 perception: batch planning, degraded batches, coverage and identity flags, and
the choice of frames shown to the user.
"""
import asyncio
import re
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from matworker.errors import AnalysisError, ErrorCode
from matworker.inference import InferenceResult
from matworker.perception import (
    identity_confidence,
    plan_batches,
    run_perception,
    select_display_frames,
    select_quick_frames,
)
from matworker.schemas import Frame, Observation, ParticipantIdentification

FRAME_RE = re.compile(r"^\[Frame (\d+)\]")


def make_frames(count):
    return [Frame(index=i, data=f"frame-{i}") for i in range(count)]


class ScriptedPerception:
    """Answers each Pass 1 batch from ``reply(indices)``; None means an unparseable reply."""

    def __init__(self, reply=None, fail_with=None):
        self.reply = reply or (lambda indices: [{"frame_index": i, "athlete_position": "standing"} for i in indices])
        self.fail_with = fail_with
        self.calls = []

    async def complete_json(self, system, prompt, images=(), max_tokens=2000, label="inference", model=None):
        captions = [caption for caption, _frame in images]
        self.calls.append(captions)
        if self.fail_with is not None:
            raise AnalysisError(self.fail_with, "scripted failure")
        indices = [int(m.group(1)) for m in (FRAME_RE.match(c) for c in captions) if m]
        rows = self.reply(indices)
        if rows is None:
            return InferenceResult(None, "Sorry, I can't describe these frames.")
        return InferenceResult({"observations": rows})


def test_plan_batches_keeps_first_and_last():
    batches = plan_batches(make_frames(100), batch_size=5, max_batches=15)

    assert len(batches) == 15
    assert [f.index for f in batches[0]] == [0, 1, 2, 3, 4]
    assert [f.index for f in batches[-1]] == [95, 96, 97, 98, 99]
    starts = [b[0].index for b in batches]
    assert starts == sorted(set(starts))

    assert len(plan_batches(make_frames(12), batch_size=5)) == 3
    print("✅ Test passed: batch cap keeps the first and last batch")


def test_quick_frames_keep_edges():
    picked = [f.index for f in select_quick_frames(make_frames(20), max_frames=8)]

    assert len(picked) == 8
    assert picked[0] == 0 and picked[-1] == 19
    assert picked == sorted(set(picked))
    assert [f.index for f in select_quick_frames(make_frames(5), max_frames=8)] == [0, 1, 2, 3, 4]
    print("✅ Test passed: quick sampling keeps the first and last frame")


def test_unparseable_batch_degrades_to_no_observations():
    client = ScriptedPerception(
        reply=lambda indices: None if 0 in indices else [{"frame_index": i, "athlete_position": "top"} for i in indices]
    )

    result = asyncio.run(run_perception(client, make_frames(10), batch_size=5))

    assert [o.frame_index for o in result.observations] == [5, 6, 7, 8, 9]
    assert result.batches_submitted == 2
    assert result.batches_failed == 1
    assert result.coverage == 0.5
    checks = {f.check for f in result.warnings}
    assert checks == {"pass1_batches_failed", "pass1_coverage"}
    print("✅ Test passed: unparseable batches degrade and are flagged")


def test_coverage_above_floor_is_not_flagged():
    # one frame per batch missing: 8/10 observed
    client = ScriptedPerception(reply=lambda indices: [{"frame_index": i} for i in indices[:-1]])

    result = asyncio.run(run_perception(client, make_frames(10), batch_size=5))

    assert result.coverage == 0.8
    assert not result.warnings
    print("✅ Test passed: 80% coverage raises no flag")


def test_batch_local_indices_are_remapped():
    client = ScriptedPerception(reply=lambda indices: [{"frame_index": n} for n in range(len(indices))])

    result = asyncio.run(run_perception(client, make_frames(10), batch_size=5))

    assert [o.frame_index for o in result.observations] == list(range(10))
    print("✅ Test passed: 0-based per-batch indices map back to frame indices")


def test_every_batch_failing_upstream_raises():
    client = ScriptedPerception(fail_with=ErrorCode.RATE_LIMITED)
    try:
        asyncio.run(run_perception(client, make_frames(10), batch_size=5))
    except AnalysisError as exc:
        assert exc.code == ErrorCode.PASS1_FAILED
        assert exc.reasons == ["RATE_LIMITED"]
    else:
        raise AssertionError("expected PASS1_FAILED")

    try:
        asyncio.run(run_perception(ScriptedPerception(fail_with=ErrorCode.INVALID_API_KEY), make_frames(5)))
    except AnalysisError as exc:
        assert exc.code == ErrorCode.INVALID_API_KEY
    else:
        raise AssertionError("expected INVALID_API_KEY")
    print("✅ Test passed: upstream-only failure raises, bad credentials propagate")


def test_identity_confidence_math():
    observations = [
        Observation(frame_index=0, athlete_identity_consistent=True),
        Observation(frame_index=1, athlete_identity_consistent=True),
        Observation(frame_index=2, athlete_identity_consistent=False),
        Observation(frame_index=3),
        Observation(frame_index=4, wrestler_visible=False, athlete_identity_consistent=False),
    ]

    confidence, visible = identity_confidence(observations)

    assert visible == 4
    assert confidence == 0.5
    assert identity_confidence([Observation(frame_index=0)]) == (None, 1)
    print("✅ Test passed: identity confidence counts confirmed visible frames")


def test_identity_low_flag():
    def reply(indices):
        return [
            {"frame_index": i, "athlete_position": "standing", "athlete_identity_consistent": i % 4 == 0}
            for i in indices
        ]

    athlete = ParticipantIdentification(uniform_description="red singlet", initial_side="left")
    client = ScriptedPerception(reply=reply)

    result = asyncio.run(
        run_perception(client, make_frames(8), athlete=athlete, id_frame="reference", batch_size=4)
    )

    assert result.identity_confidence == 0.25
    assert "identity_low" in {f.check for f in result.warnings}
    assert client.calls[0][0].startswith("[Reference photo")
    assert not client.calls[1][0].startswith("[Reference photo")

    untracked = asyncio.run(run_perception(ScriptedPerception(reply=reply), make_frames(8), batch_size=4))
    assert untracked.identity_confidence is None
    assert "identity_low" not in {f.check for f in untracked.warnings}
    print("✅ Test passed: low identity confidence is flagged only when tracking")


def test_display_frame_limits():
    critical = [Observation(frame_index=i, significance="CRITICAL") for i in range(30)]
    assert select_display_frames(critical) == list(range(20))

    context = [Observation(frame_index=i, significance="CONTEXT") for i in range(15)]
    assert select_display_frames(context) == list(range(8))

    mixed = (
        [Observation(frame_index=i, significance="SKIP") for i in range(10)]
        + [Observation(frame_index=10, significance="CRITICAL")]
    )
    # one critical, then filled from any frame up to the floor of 8
    assert select_display_frames(mixed) == [0, 1, 2, 3, 4, 5, 6, 10]

    assert select_display_frames([Observation(frame_index=0, significance="SKIP")]) == []
    print("✅ Test passed: display frames respect the cap and the floor")


if __name__ == "__main__":
    try:
        test_plan_batches_keeps_first_and_last()
        test_quick_frames_keep_edges()
        test_unparseable_batch_degrades_to_no_observations()
        test_coverage_above_floor_is_not_flagged()
        test_batch_local_indices_are_remapped()
        test_every_batch_failing_upstream_raises()
        test_identity_confidence_math()
        test_identity_low_flag()
        test_display_frame_limits()
        print("\n🎉 ALL PERCEPTION TESTS PASSED!")
        sys.exit(0)
    except AssertionError as e:
        print(f"\n❌ TEST FAILED: {e}")
        sys.exit(1)
