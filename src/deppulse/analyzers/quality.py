"""Quality model: five weighted sub-signals combined into a 0-100 number.

Each sub-signal is a piecewise-linear interpolation over the anchor
thresholds of the scoring profile, so neighbouring inputs never produce a
jump steeper than the slope between two anchors.
"""

import math
from datetime import datetime
from typing import Sequence

from deppulse.analyzers.profiles import (
    QualityThresholds,
    ScoringProfile,
    normalize_issue_health_split,
    normalize_quality_weights,
)
from deppulse.analyzers.signals import DAY, activity_breadth, days_since
from deppulse.models.schemas import QualityComputation, QualitySignals, ScoringInput

DAYS_PER_YEAR = 365.25

# Score anchors paired with the excellent/good/fair/poor thresholds
OPEN_RATIO_SCORES = (1.0, 0.7, 0.4, 0.15, 0.0)
RESOLUTION_SCORES = (1.0, 0.8, 0.5, 0.25, 0.0)
COMMUNITY_SCORES = (0.1, 0.3, 0.5, 0.7, 0.85, 1.0)
MATURITY_SCORES = (0.1, 0.3, 0.6, 0.8, 1.0)
CADENCE_SCORES = (0.0, 0.4, 0.75, 1.0)
RECENCY_SCORES = (1.0, 0.85, 0.6, 0.3)

NEUTRAL = 0.5


def interpolate(x: float, points: Sequence[tuple[float, float]]) -> float:
    """Piecewise-linear interpolation, clamped to the first and last anchor.

    Args:
        x: Input value.
        points: ``(x, y)`` anchors sorted by ascending x.

    Returns:
        Interpolated y.
    """
    if not points:
        raise ValueError("interpolation needs at least one anchor")

    if x <= points[0][0]:
        return points[0][1]

    for (x0, y0), (x1, y1) in zip(points, points[1:]):
        if x <= x1:
            if x1 == x0:
                return y1
            return y0 + (y1 - y0) * (x - x0) / (x1 - x0)

    return points[-1][1]


def open_ratio_score(open_issues_percent: float | None, thresholds: QualityThresholds) -> float:
    """Score the share of issues still open. Lower is better."""
    if open_issues_percent is None:
        return NEUTRAL

    t = thresholds.open_issues_ratio
    anchors = list(zip((t.excellent, t.good, t.fair, t.poor, 100.0), OPEN_RATIO_SCORES))
    return interpolate(open_issues_percent, anchors)


def resolution_speed_score(
    median_days: float | None,
    open_issues_percent: float | None,
    thresholds: QualityThresholds,
) -> float:
    """Score median issue resolution time. Faster is better.

    Unknown resolution time is bad when issues are open, and neutral when
    there is nothing to resolve.
    """
    if median_days is None:
        if open_issues_percent is not None and open_issues_percent > 0:
            return 0.0
        return NEUTRAL

    t = thresholds.issue_resolution_days
    anchors = list(
        zip((t.excellent, t.good, t.fair, t.poor, t.poor * 2), RESOLUTION_SCORES)
    )
    return interpolate(median_days, anchors)


def issue_health_score(scoring_input: ScoringInput, profile: ScoringProfile) -> float:
    open_weight, resolution_weight = normalize_issue_health_split(profile.issue_health_split)
    thresholds = profile.quality_thresholds
    return open_weight * open_ratio_score(
        scoring_input.open_issues_percent, thresholds
    ) + resolution_weight * resolution_speed_score(
        scoring_input.median_issue_resolution_days,
        scoring_input.open_issues_percent,
        thresholds,
    )


def community_score(stars: int, thresholds: QualityThresholds) -> float:
    """Log-scale score of the star count.

    Going from 10 to 100 stars counts as much as going from 10,000 to
    100,000.
    """
    t = thresholds.popularity_stars
    levels = (1, t.minimal, t.poor, t.fair, t.good, t.excellent)
    anchors = [(math.log10(level), score) for level, score in zip(levels, COMMUNITY_SCORES)]
    return interpolate(math.log10(max(stars, 1)), anchors)


def maturity_score(
    created_at: datetime | None, now: datetime, thresholds: QualityThresholds
) -> float:
    """Score the repository age in years. Unknown age is neutral."""
    if created_at is None:
        return NEUTRAL

    age_years = max(0.0, (now - created_at) / DAY / DAYS_PER_YEAR)
    t = thresholds.project_age_years
    anchors = list(zip((0.0, t.newer, t.growing, t.established, t.mature), MATURITY_SCORES))
    return interpolate(age_years, anchors)


def release_cadence_score(releases_last_year: int, thresholds: QualityThresholds) -> float:
    t = thresholds.release_cadence_per_year
    anchors = list(zip((0.0, t.fair, t.good, t.excellent), CADENCE_SCORES))
    return interpolate(releases_last_year, anchors)


def release_recency_multiplier(
    days_since_release: int | None, thresholds: QualityThresholds
) -> float:
    """Discount for stale releases; no release at all takes the floor."""
    if days_since_release is None:
        return RECENCY_SCORES[-1]

    t = thresholds.release_recency_days
    anchors = list(zip((t.fresh, t.aging, t.stale, t.abandoned), RECENCY_SCORES))
    return interpolate(max(0, days_since_release), anchors)


def regularity_multiplier(regularity: float | None) -> float:
    """Between 0.7 (erratic) and 1.0 (evenly spaced); 1.0 when unknown."""
    if regularity is None:
        return 1.0
    return 0.7 + 0.3 * max(0.0, min(1.0, regularity))


def release_health_score(
    scoring_input: ScoringInput, now: datetime, thresholds: QualityThresholds
) -> float:
    """Cadence times recency times regularity."""
    return (
        release_cadence_score(scoring_input.releases_last_year, thresholds)
        * release_recency_multiplier(days_since(scoring_input.last_release_at, now), thresholds)
        * regularity_multiplier(scoring_input.release_regularity)
    )


def compute_quality_signals(
    scoring_input: ScoringInput, now: datetime, profile: ScoringProfile
) -> QualitySignals:
    thresholds = profile.quality_thresholds
    return QualitySignals(
        issue_health=issue_health_score(scoring_input, profile),
        release_health=release_health_score(scoring_input, now, thresholds),
        community=community_score(scoring_input.stars, thresholds),
        maturity=maturity_score(scoring_input.repository_created_at, now, thresholds),
        activity_breadth=activity_breadth(
            scoring_input, now, thresholds.activity_breadth_fractions
        ),
    )


def compute_quality(
    scoring_input: ScoringInput, now: datetime, profile: ScoringProfile
) -> QualityComputation:
    """Combine the five sub-signals into a quality score.

    Args:
        scoring_input: Signals for one repository.
        now: Reference time for every age and recency calculation.
        profile: Scoring profile with thresholds and weights.

    Returns:
        Quality score in [0, 100] along with the signals and the
        normalized weights that produced it.
    """
    signals = compute_quality_signals(scoring_input, now, profile)
    weights = normalize_quality_weights(profile.quality_weights)
    values = signals.model_dump()

    weighted = sum(values[name] * weight for name, weight in weights.items())
    quality = max(0, min(100, round_half_up(100 * weighted)))

    return QualityComputation(quality=quality, signals=signals, normalized_weights=weights)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values, unlike ``round()``."""
    return math.floor(value + 0.5)
