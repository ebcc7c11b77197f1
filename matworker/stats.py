from __future__ import annotations

import re

from .schemas import MatchStats, ScoredAssessment

# whole-word matches so "spin behind" is not a pin and "escaped" still counts
TAKEDOWN_RE = re.compile(r"\btake\s?downs?\b")
REVERSAL_RE = re.compile(r"\breversals?\b|\breversed\b")
ESCAPE_RE = re.compile(r"\bescapes?\b|\bescaped\b")
NEAR_FALL_RE = re.compile(r"\bnear[\s_-]?falls?\b")
PIN_RE = re.compile(r"\bpin(?:s|ned|fall)?\b")


def extract_match_stats(assessment: ScoredAssessment) -> MatchStats:
    """Scoring-action counts for ``assessment``.

    The model's own ``match_stats`` win when they report anything; otherwise the counts
    are rebuilt from ATHLETE:/OPPONENT: prefixed evidence actions.
    """

    if assessment.match_stats.total() > 0:
        return assessment.match_stats.model_copy()

    counts = MatchStats()
    for evidence in assessment.frame_evidence:
        action = evidence.action.strip().lower()
        if action.startswith("athlete:"):
            if TAKEDOWN_RE.search(action):
                counts.takedowns_scored += 1
            if REVERSAL_RE.search(action):
                counts.reversals_scored += 1
            if ESCAPE_RE.search(action):
                counts.escapes_scored += 1
            if NEAR_FALL_RE.search(action):
                counts.near_falls_scored += 1
            if PIN_RE.search(action):
                counts.pins_scored += 1
        elif action.startswith("opponent:") and TAKEDOWN_RE.search(action):
            counts.takedowns_allowed += 1
    return counts
