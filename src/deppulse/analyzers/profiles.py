"""Scoring profiles.

A profile is an immutable, versioned bundle of every number the scoring
engine uses. The breakpoints are product decisions tuned against real
repositories; change them by adding a new profile, not by editing one.
"""

import math
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator

from deppulse.models.schemas import ExpectedActivityTier


class ScoringProfileId(str, Enum):
    """Known scoring profiles."""

    STRICT_BALANCED = "strict-balanced"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class CategoryThresholds(_Frozen):
    healthy: int
    moderate: int
    declining: int


class QualityWeights(_Frozen):
    issue_health: float
    release_health: float
    community: float
    maturity: float
    activity_breadth: float


class IssueHealthSplit(_Frozen):
    open_ratio: float
    resolution_speed: float


class ExpectedActivityCriteria(_Frozen):
    """Any single criterion met or exceeded qualifies for the tier."""

    commits_last_90_days: int
    merged_prs_last_90_days: int
    issues_created_last_year: int
    open_prs_count: int
    stars: int


class TierCriteria(_Frozen):
    high: ExpectedActivityCriteria
    medium: ExpectedActivityCriteria


class FreshnessStep(_Frozen):
    max_days: float
    multiplier: float


class HardCapRule(_Frozen):
    after_days: int
    max_score: int


class IssueResolutionDays(_Frozen):
    excellent: float
    good: float
    fair: float
    poor: float


class OpenIssuesRatio(_Frozen):
    excellent: float
    good: float
    fair: float
    poor: float


class PopularityStars(_Frozen):
    excellent: int
    good: int
    fair: int
    poor: int
    minimal: int


class ProjectAgeYears(_Frozen):
    mature: float
    established: float
    growing: float
    newer: float


class ReleaseCadencePerYear(_Frozen):
    excellent: float
    good: float
    fair: float


class ReleaseRecencyDays(_Frozen):
    fresh: int
    aging: int
    stale: int
    abandoned: int


class QualityThresholds(_Frozen):
    issue_resolution_days: IssueResolutionDays
    open_issues_ratio: OpenIssuesRatio
    popularity_stars: PopularityStars
    project_age_years: ProjectAgeYears
    release_cadence_per_year: ReleaseCadencePerYear
    release_recency_days: ReleaseRecencyDays
    activity_breadth_fractions: tuple[float, float, float, float]

    @field_validator("activity_breadth_fractions")
    @classmethod
    def _fractions_in_range(cls, value: tuple[float, ...]) -> tuple[float, ...]:
        if any(f < 0 or f > 1 for f in value):
            raise ValueError("activity breadth fractions must be within [0, 1]")
        return value


class FreshnessTable(_Frozen):
    high: tuple[FreshnessStep, ...]
    medium: tuple[FreshnessStep, ...]
    low: tuple[FreshnessStep, ...]

    def for_tier(self, tier: ExpectedActivityTier) -> tuple[FreshnessStep, ...]:
        return getattr(self, tier.value)


class HardCaps(_Frozen):
    high: tuple[HardCapRule, ...]


class ScoringProfile(_Frozen):
    """Everything the scoring engine needs besides the input and ``now``."""

    id: ScoringProfileId
    version: int
    label: str
    category_thresholds: CategoryThresholds
    quality_weights: QualityWeights
    issue_health_split: IssueHealthSplit
    quality_thresholds: QualityThresholds
    expected_activity_criteria: TierCriteria
    freshness_multipliers: FreshnessTable
    hard_caps: HardCaps


# Largest multiplier drop allowed between two neighbouring freshness steps.
MAX_FRESHNESS_DROP = 0.025


def build_freshness_steps(
    anchors: list[tuple[int, float]],
    max_drop: float = MAX_FRESHNESS_DROP,
) -> tuple[FreshnessStep, ...]:
    """Expand coarse ``(max_days, multiplier)`` anchors into graded steps.

    Each anchor segment is split into enough evenly spaced steps that no
    single step lowers the multiplier by more than ``max_drop``. The last
    anchor's multiplier becomes the open-ended floor step.

    Args:
        anchors: Ascending ``(max_days, multiplier)`` pairs, non-increasing
            in multiplier.
        max_drop: Largest allowed drop between neighbouring steps.

    Returns:
        Steps ordered by ``max_days``, ending with an infinite step.
    """
    if not anchors:
        raise ValueError("at least one freshness anchor is required")

    first_days, first_multiplier = anchors[0]
    steps = [FreshnessStep(max_days=first_days, multiplier=first_multiplier)]

    for (start_days, start_mult), (end_days, end_mult) in zip(anchors, anchors[1:]):
        if end_days <= start_days:
            raise ValueError("freshness anchors must be strictly ascending in days")
        if end_mult > start_mult:
            raise ValueError("freshness anchors must not increase in multiplier")

        drop = start_mult - end_mult
        count = max(1, math.ceil(drop / max_drop - 1e-9))
        count = min(count, end_days - start_days)
        for i in range(1, count + 1):
            steps.append(
                FreshnessStep(
                    max_days=start_days + round((end_days - start_days) * i / count),
                    multiplier=round(start_mult - drop * i / count, 4),
                )
            )

    steps.append(FreshnessStep(max_days=math.inf, multiplier=anchors[-1][1]))
    return tuple(steps)


STRICT_BALANCED_PROFILE = ScoringProfile(
    id=ScoringProfileId.STRICT_BALANCED,
    version=2,
    label="Strict Balanced",
    category_thresholds=CategoryThresholds(healthy=70, moderate=45, declining=25),
    quality_weights=QualityWeights(
        issue_health=0.3,
        release_health=0.25,
        community=0.15,
        maturity=0.1,
        activity_breadth=0.2,
    ),
    issue_health_split=IssueHealthSplit(open_ratio=0.5, resolution_speed=0.5),
    quality_thresholds=QualityThresholds(
        issue_resolution_days=IssueResolutionDays(excellent=7, good=14, fair=30, poor=60),
        open_issues_ratio=OpenIssuesRatio(excellent=20, good=40, fair=60, poor=80),
        popularity_stars=PopularityStars(
            excellent=25_000, good=5_000, fair=500, poor=50, minimal=10
        ),
        project_age_years=ProjectAgeYears(mature=5, established=3, growing=1, newer=0.5),
        release_cadence_per_year=ReleaseCadencePerYear(excellent=6, good=3, fair=1),
        release_recency_days=ReleaseRecencyDays(fresh=0, aging=180, stale=365, abandoned=730),
        activity_breadth_fractions=(0, 0.35, 0.7, 1),
    ),
    expected_activity_criteria=TierCriteria(
        high=ExpectedActivityCriteria(
            commits_last_90_days=15,
            merged_prs_last_90_days=8,
            issues_created_last_year=36,
            open_prs_count=12,
            stars=3000,
        ),
        medium=ExpectedActivityCriteria(
            commits_last_90_days=4,
            merged_prs_last_90_days=2,
            issues_created_last_year=12,
            open_prs_count=4,
            stars=500,
        ),
    ),
    freshness_multipliers=FreshnessTable(
        high=build_freshness_steps(
            [(30, 1.0), (90, 0.75), (180, 0.35), (365, 0.15), (420, 0.05)]
        ),
        medium=build_freshness_steps(
            [(45, 1.0), (120, 0.8), (180, 0.5), (365, 0.22), (540, 0.08)]
        ),
        low=build_freshness_steps(
            [(90, 1.0), (180, 0.8), (365, 0.5), (730, 0.2), (1095, 0.1)]
        ),
    ),
    hard_caps=HardCaps(
        high=(
            HardCapRule(after_days=180, max_score=35),
            HardCapRule(after_days=365, max_score=20),
        )
    ),
)

SCORING_PROFILES: dict[ScoringProfileId, ScoringProfile] = {
    ScoringProfileId.STRICT_BALANCED: STRICT_BALANCED_PROFILE,
}


def get_scoring_profile(profile_id: ScoringProfileId | str) -> ScoringProfile:
    """Look up a profile by id.

    Raises:
        KeyError: If no profile has that id.
    """
    try:
        return SCORING_PROFILES[ScoringProfileId(profile_id)]
    except ValueError as e:
        raise KeyError(f"Unknown scoring profile: {profile_id}") from e


def get_default_scoring_profile() -> ScoringProfile:
    return STRICT_BALANCED_PROFILE


def normalize_quality_weights(weights: QualityWeights) -> dict[str, float]:
    """Scale weights so they sum to 1. Only their ratios matter."""
    raw = weights.model_dump()
    total = sum(raw.values())
    if total <= 0:
        return {name: 1 / len(raw) for name in raw}
    return {name: value / total for name, value in raw.items()}


def normalize_issue_health_split(split: IssueHealthSplit) -> tuple[float, float]:
    """Return ``(open_ratio, resolution_speed)`` scaled to sum to 1."""
    total = split.open_ratio + split.resolution_speed
    if total <= 0:
        return 0.5, 0.5
    return split.open_ratio / total, split.resolution_speed / total
