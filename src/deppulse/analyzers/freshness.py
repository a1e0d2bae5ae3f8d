"""Freshness model: staleness decay, hard caps and score categories."""

import math
from typing import Sequence

from pydantic import BaseModel

from deppulse.analyzers.profiles import (
    CategoryThresholds,
    FreshnessStep,
    HardCapRule,
    ScoringProfile,
)
from deppulse.models.schemas import ExpectedActivityTier, ScoreCategory


def lookup_freshness(steps: Sequence[FreshnessStep], days: int | None) -> float:
    """Multiplier of the first step whose ``max_days`` covers ``days``.

    ``days=None`` means no activity was ever recorded and lands on the
    final (floor) step.
    """
    if not steps:
        raise ValueError("freshness table is empty")

    effective = math.inf if days is None else days
    for step in steps:
        if step.max_days >= effective:
            return step.multiplier
    return steps[-1].multiplier


def freshness_multiplier(
    days_since_activity: int | None,
    tier: ExpectedActivityTier,
    profile: ScoringProfile,
) -> float:
    return lookup_freshness(profile.freshness_multipliers.for_tier(tier), days_since_activity)


def apply_hard_caps(
    raw_score: int,
    tier: ExpectedActivityTier,
    days_since_activity: int | None,
    profile: ScoringProfile,
) -> tuple[int, int | None]:
    """Clamp a high-tier score that has gone stale.

    Every rule whose ``after_days`` is exceeded lowers the running score to
    its ``max_score``; no rule ever raises it. Medium and low tiers are
    never capped.

    Args:
        raw_score: Score after the freshness multiplier.
        tier: Expected-activity tier.
        days_since_activity: Days since the last activity, None if never.
        profile: Scoring profile holding the cap rules.

    Returns:
        Tuple of (capped score, the cap that lowered it or None).
    """
    if tier != ExpectedActivityTier.HIGH:
        return raw_score, None

    rules: Sequence[HardCapRule] = profile.hard_caps.high
    effective = math.inf if days_since_activity is None else days_since_activity

    score = raw_score
    applied: int | None = None
    for rule in sorted(rules, key=lambda r: r.after_days):
        if effective > rule.after_days and score > rule.max_score:
            score = rule.max_score
            applied = rule.max_score

    return score, applied


def category_from_score(score: int, thresholds: CategoryThresholds) -> ScoreCategory:
    """Bands are inclusive at their lower edge."""
    if score >= thresholds.healthy:
        return ScoreCategory.HEALTHY
    if score >= thresholds.moderate:
        return ScoreCategory.MODERATE
    if score >= thresholds.declining:
        return ScoreCategory.DECLINING
    return ScoreCategory.INACTIVE


class CategoryInfo(BaseModel):
    """Display metadata for a score category."""

    label: str
    description: str
    recommendation: str


CATEGORY_INFO: dict[ScoreCategory, CategoryInfo] = {
    ScoreCategory.HEALTHY: CategoryInfo(
        label="Healthy",
        description="Actively maintained with regular commits, releases and issue triage.",
        recommendation="Safe to depend on.",
    ),
    ScoreCategory.MODERATE: CategoryInfo(
        label="Moderate",
        description="Maintained, but activity or responsiveness is uneven.",
        recommendation="Usable; check recent activity before adopting.",
    ),
    ScoreCategory.DECLINING: CategoryInfo(
        label="Declining",
        description="Activity has dropped well below what a project of this size usually shows.",
        recommendation="Plan for a fallback or be ready to fork.",
    ),
    ScoreCategory.INACTIVE: CategoryInfo(
        label="Inactive",
        description="No meaningful maintenance activity, or the repository is archived.",
        recommendation="Avoid for new work; look for an alternative.",
    ),
}
