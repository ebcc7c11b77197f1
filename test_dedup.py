#!/usr/bin/env python3
"""
Frame deduplication: near-identical runs collapse, edges and the frame floor survive,
and a second pass over the output removes nothing.
"""
import base64
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

import cv2
import numpy as np

from matworker.dedup import apply_dedup, deduplicate_frames, difference_hash
from matworker.schemas import Frame


def near_identical_frames(count: int):
    base = "A" * 1000
    return [Frame(index=i, data=f"{base}{i:03d}") for i in range(count)]


def encoded_png(image) -> str:
    ok, buf = cv2.imencode(".png", image)
    assert ok
    return base64.b64encode(buf.tobytes()).decode()


def test_static_run_collapses_to_floor():
    frames = near_identical_frames(25)

    result = deduplicate_frames(frames, min_frames=8, max_consecutive_removal=3)

    assert result.original_count == 25
    assert result.kept_count == 8, result.kept_indices
    assert result.kept_indices[0] == 0
    assert result.kept_indices[-1] == 24
    assert result.kept_indices == sorted(result.kept_indices)
    assert not set(result.kept_indices) & set(result.removed_indices)
    assert isinstance(result.duration_ms, int) and result.duration_ms >= 0
    print(f"✅ Test passed: 25 static frames -> {result.kept_indices}")


def test_consecutive_removal_cap():
    frames = near_identical_frames(25)

    result = deduplicate_frames(frames, min_frames=2, max_consecutive_removal=3)

    assert result.kept_indices == [0, 4, 8, 12, 16, 20, 24]
    gaps = [b - a for a, b in zip(result.kept_indices, result.kept_indices[1:])]
    assert max(gaps) <= 4
    print("✅ Test passed: at most 3 consecutive frames are ever dropped")


def test_second_pass_is_idempotent():
    frames = near_identical_frames(25)
    first = apply_dedup(frames, deduplicate_frames(frames, min_frames=2))

    second = deduplicate_frames(first, min_frames=2)

    assert second.kept_count == len(first)
    assert second.removed_indices == []
    print("✅ Test passed: deduplicating deduplicated output changes nothing")


def test_distinct_frames_untouched():
    frames = [Frame(index=i, data=chr(65 + i) * 400) for i in range(12)]

    result = deduplicate_frames(frames)

    assert result.kept_indices == list(range(12))
    print("✅ Test passed: distinct frames are all kept")


def test_short_input_returned_whole():
    frames = near_identical_frames(5)

    result = deduplicate_frames(frames, min_frames=8)

    assert result.kept_indices == [0, 1, 2, 3, 4]
    print("✅ Test passed: inputs at or below the floor are untouched")


def test_phash_method():
    gradient = np.tile(np.arange(0, 256, 4, dtype=np.uint8), (64, 1))
    flipped = gradient[:, ::-1].copy()
    frames = [
        Frame(index=0, data=encoded_png(gradient)),
        Frame(index=1, data=encoded_png(gradient)),
        Frame(index=2, data=encoded_png(flipped)),
        Frame(index=3, data=encoded_png(flipped)),
    ]
    assert difference_hash(frames[0]) == difference_hash(frames[1])
    assert difference_hash(Frame(index=0, data="not-an-image")) is None

    result = deduplicate_frames(frames, min_frames=2, method="phash")

    assert result.method == "phash"
    assert result.removed_indices == [1]
    assert result.kept_indices == [0, 2, 3]
    print("✅ Test passed: perceptual hash collapses visually identical frames")


if __name__ == "__main__":
    try:
        test_static_run_collapses_to_floor()
        test_consecutive_removal_cap()
        test_second_pass_is_idempotent()
        test_distinct_frames_untouched()
        test_short_input_returned_whole()
        test_phash_method()
        print("\n🎉 ALL DEDUP TESTS PASSED!")
        sys.exit(0)
    except AssertionError as e:
        print(f"\n❌ TEST FAILED: {e}")
        sys.exit(1)
