"""Engagement scoring.

The only scoring arithmetic in the system. One call per scored user turn:

    engagement' = clamp(engagement + delta - decay - stagnant_streak, 0, 100)
    stagnant'   = 0 if delta > 0 else stagnant + 1
    zero'       = 0 if engagement' > 0 else zero + 1
"""

from __future__ import annotations

from typing import NamedTuple

from rapport.config import ENGAGEMENT_DECAY_PER_TURN, MAX_ZERO_ENGAGEMENT_STREAK


class EngagementScore(NamedTuple):
    engagement: int
    stagnant_streak: int
    zero_engagement_streak: int


def clamp(value: int, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, value))


def apply_delta(
    engagement: int,
    stagnant_streak: int,
    zero_engagement_streak: int,
    delta: int,
    decay: int = ENGAGEMENT_DECAY_PER_TURN,
) -> EngagementScore:
    """Score one user turn. The stagnant penalty uses the streak *before* this turn."""
    new_engagement = clamp(engagement + delta - decay - stagnant_streak)
    return EngagementScore(
        engagement=new_engagement,
        stagnant_streak=0 if delta > 0 else stagnant_streak + 1,
        zero_engagement_streak=0 if new_engagement > 0 else zero_engagement_streak + 1,
    )


def should_end_for_low_engagement(
    score: EngagementScore, threshold: int = MAX_ZERO_ENGAGEMENT_STREAK
) -> bool:
    return score.engagement <= 0 and score.zero_engagement_streak >= threshold
