"""Achievement badges awarded from a finished analysis."""

from __future__ import annotations

from typing import Callable, Dict, List

from ..schemas import ScoredAssessment

BadgeCheck = Callable[[ScoredAssessment, int], bool]


class BadgeDefinition:
    def __init__(self, key: str, label: str, icon: str, check: BadgeCheck):
        self.key = key
        self.label = label
        self.icon = icon
        self.check = check

    def as_dict(self) -> Dict[str, str]:
        return {"key": self.key, "label": self.label, "icon": self.icon}


BADGE_DEFINITIONS: List[BadgeDefinition] = [
    # score
    BadgeDefinition("elite_score", "Elite Performer", "trophy", lambda a, _: a.overall_score >= 90),
    BadgeDefinition("advanced_score", "Advanced Wrestler", "star", lambda a, _: a.overall_score >= 80),
    BadgeDefinition("solid_score", "Solid Fundamentals", "shield", lambda a, _: a.overall_score >= 70),
    # position
    BadgeDefinition("standing_master", "Standing Master", "zap", lambda a, _: a.position_scores.standing >= 85),
    BadgeDefinition("top_dominator", "Top Dominator", "crown", lambda a, _: a.position_scores.top >= 85),
    BadgeDefinition("escape_artist", "Escape Artist", "wind", lambda a, _: a.position_scores.bottom >= 85),
    # stats
    BadgeDefinition("takedown_machine", "Takedown Machine", "target", lambda a, _: a.match_stats.takedowns_scored >= 3),
    BadgeDefinition("pin_artist", "Pin Artist", "lock", lambda a, _: a.match_stats.pins_scored >= 1),
    BadgeDefinition("near_fall_threat", "Near Fall Threat", "flame", lambda a, _: a.match_stats.near_falls_scored >= 2),
    # milestones
    BadgeDefinition("first_analysis", "First Upload", "upload", lambda _, n: n >= 1),
    BadgeDefinition("five_analyses", "5 Videos Analyzed", "film", lambda _, n: n >= 5),
    BadgeDefinition("ten_analyses", "10 Videos Analyzed", "award", lambda _, n: n >= 10),
    BadgeDefinition("twenty_analyses", "Dedicated Wrestler", "medal", lambda _, n: n >= 20),
    # conditioning
    BadgeDefinition(
        "iron_lungs",
        "Iron Lungs",
        "heart",
        lambda a, _: not a.fatigue_analysis.conditioning_flag and a.fatigue_analysis.score_delta >= -3,
    ),
    BadgeDefinition("high_confidence", "Crystal Clear", "eye", lambda a, _: a.confidence >= 0.85),
]


def check_badges(assessment: ScoredAssessment, analysis_count: int) -> List[BadgeDefinition]:
    """Badges earned by ``assessment``; ``analysis_count`` includes this analysis."""

    return [badge for badge in BADGE_DEFINITIONS if badge.check(assessment, analysis_count)]
