"""Drop near-identical consecutive frames before any inference is spent on them."""

from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Dict, List, Literal, Optional, Sequence

import cv2
import numpy as np
from pydantic import BaseModel, Field

from .schemas import Frame

logger = logging.getLogger(__name__)

HEADER_MATCH_RATIO = 0.95


class DuplicateGroup(BaseModel):
    kept_index: int
    removed: List[int] = Field(default_factory=list)


class DedupResult(BaseModel):
    """Positions (into the input list) of kept and removed frames."""

    kept_indices: List[int] = Field(default_factory=list)
    removed_indices: List[int] = Field(default_factory=list)
    duplicate_groups: List[DuplicateGroup] = Field(default_factory=list)
    original_count: int = 0
    method: str = "header"
    duration_ms: int = 0

    @property
    def kept_count(self) -> int:
        return len(self.kept_indices)


def _length_similar(a: str, b: str, threshold_pct: float) -> bool:
    longest = max(len(a), len(b))
    if longest == 0:
        return True
    return abs(len(a) - len(b)) / longest * 100.0 < threshold_pct


def _header_similar(a: str, b: str, compare_length: int) -> bool:
    compare = min(compare_length, len(a), len(b))
    if compare <= 0:
        return False
    matches = sum(1 for x, y in zip(a[:compare], b[:compare]) if x == y)
    return matches / compare > HEADER_MATCH_RATIO


def difference_hash(frame: Frame) -> Optional[int]:
    """64-bit difference hash of the decoded frame, or None when it cannot be decoded."""

    try:
        raw = base64.b64decode(frame.payload, validate=False)
    except (binascii.Error, ValueError):
        return None
    image = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
    if image is None:
        return None
    small = cv2.resize(image, (9, 8), interpolation=cv2.INTER_AREA)
    bits = (small[:, 1:] > small[:, :-1]).flatten()
    value = 0
    for bit in bits:
        value = (value << 1) | int(bit)
    return value


def _hamming(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


def _restore_floor(kept: List[int], total: int, min_frames: int) -> List[int]:
    kept_set = set(kept)
    for i in range(min_frames):
        if len(kept_set) >= min_frames:
            break
        candidate = min(int(i * total / min_frames + 0.5), total - 1)
        kept_set.add(candidate)
    # even spacing can collide on short inputs; fill from the front
    for position in range(total):
        if len(kept_set) >= min_frames:
            break
        kept_set.add(position)
    return sorted(kept_set)


def deduplicate_frames(
    frames: Sequence[Frame],
    length_threshold_pct: float = 2.0,
    header_compare_length: int = 200,
    min_frames: int = 8,
    max_consecutive_removal: int = 3,
    method: Literal["header", "phash"] = "header",
    phash_max_distance: int = 6,
) -> DedupResult:
    """Compare each frame against the last kept frame and drop it when both are similar.

    The removal cap is measured in source frame indices, so rerunning the function on its
    own output never removes anything further.
    """

    started = time.time()
    total = len(frames)
    if total <= min_frames:
        return DedupResult(kept_indices=list(range(total)), original_count=total, method=method)

    hashes: Dict[int, Optional[int]] = {}
    if method == "phash":
        hashes = {i: difference_hash(frame) for i, frame in enumerate(frames)}

    def similar(i: int, j: int) -> bool:
        if method == "phash":
            left, right = hashes.get(i), hashes.get(j)
            if left is None or right is None:
                return False
            return _hamming(left, right) <= phash_max_distance
        a, b = frames[i].payload, frames[j].payload
        return _length_similar(a, b, length_threshold_pct) and _header_similar(a, b, header_compare_length)

    kept = [0]
    removed: List[int] = []
    groups: Dict[int, List[int]] = {}
    last_kept = 0

    for i in range(1, total - 1):
        run = frames[i].index - frames[last_kept].index
        if run <= max_consecutive_removal and similar(last_kept, i):
            removed.append(i)
            groups.setdefault(last_kept, []).append(i)
            continue
        kept.append(i)
        last_kept = i

    kept.append(total - 1)

    if len(kept) < min_frames:
        restored = _restore_floor(kept, total, min_frames)
        logger.info(f"[DEDUP] floor restore {len(kept)} -> {len(restored)} frames")
        kept = restored
        kept_set = set(kept)
        removed = [i for i in removed if i not in kept_set]
        groups = {k: [i for i in v if i not in kept_set] for k, v in groups.items()}

    result = DedupResult(
        kept_indices=kept,
        removed_indices=removed,
        duplicate_groups=[DuplicateGroup(kept_index=k, removed=v) for k, v in sorted(groups.items()) if v],
        original_count=total,
        method=method,
        duration_ms=int((time.time() - started) * 1000),
    )
    logger.info(
        f"[DEDUP] {total} -> {result.kept_count} frames ({len(removed)} removed, method={method}, {result.duration_ms}ms)"
    )
    return result


def apply_dedup(frames: Sequence[Frame], result: DedupResult) -> List[Frame]:
    return [frames[i] for i in result.kept_indices if 0 <= i < len(frames)]
