"""Secondary measures derived from the scoring input."""

import math
import statistics
from datetime import datetime, timedelta
from typing import Sequence

from deppulse.analyzers.profiles import ExpectedActivityCriteria, ScoringProfile
from deppulse.models.schemas import ExpectedActivityTier, ScoringInput

DAY = timedelta(days=1)
ACTIVITY_BREADTH_WINDOW_DAYS = 365

# Weights for the 30/90/365-day commit ratio (recent activity counts most)
COMMIT_RATIO_WEIGHTS = (0.45, 0.35, 0.2)


def most_recent_activity_date(scoring_input: ScoringInput) -> datetime | None:
    """Latest of last commit, last merged PR and last release."""
    dates = [
        d
        for d in (scoring_input.last_commit_at, scoring_input.last_merged_pr_at, scoring_input.last_release_at)
        if d is not None
    ]
    return max(dates) if dates else None


def days_since(date: datetime | None, now: datetime) -> int | None:
    """Whole days elapsed between ``date`` and ``now``, floored."""
    if date is None:
        return None
    return math.floor((now - date) / DAY)


def days_since_most_recent_activity(scoring_input: ScoringInput, now: datetime) -> int | None:
    return days_since(most_recent_activity_date(scoring_input), now)


def count_active_channels(scoring_input: ScoringInput, now: datetime) -> int:
    """How many of commit / merged PR / release happened in the last year (0-3)."""
    cutoff = now - timedelta(days=ACTIVITY_BREADTH_WINDOW_DAYS)
    return sum(
        1
        for d in (scoring_input.last_commit_at, scoring_input.last_merged_pr_at, scoring_input.last_release_at)
        if d is not None and d > cutoff
    )


def activity_breadth(
    scoring_input: ScoringInput,
    now: datetime,
    fractions: Sequence[float],
) -> float:
    """Map the active channel count through a 4-entry fraction table."""
    if len(fractions) != 4:
        raise ValueError("activity breadth table needs exactly 4 entries")
    return fractions[count_active_channels(scoring_input, now)]


def _weighted_commit_ratio(
    scoring_input: ScoringInput, criteria: ExpectedActivityCriteria
) -> float | None:
    if scoring_input.commits_last_30_days is None or scoring_input.commits_last_365_days is None:
        return None

    threshold_30 = max(1, math.ceil(criteria.commits_last_90_days / 3))
    threshold_365 = criteria.commits_last_90_days * 4
    w30, w90, w365 = COMMIT_RATIO_WEIGHTS

    return (
        w30 * (scoring_input.commits_last_30_days / threshold_30)
        + w90 * (scoring_input.commits_last_90_days / criteria.commits_last_90_days)
        + w365 * (scoring_input.commits_last_365_days / threshold_365)
    )


def meets_any(scoring_input: ScoringInput, criteria: ExpectedActivityCriteria) -> bool:
    """True when any single criterion is met or exceeded."""
    if criteria.commits_last_90_days <= 0:
        return True

    ratio = _weighted_commit_ratio(scoring_input, criteria)
    return (
        scoring_input.commits_last_90_days >= criteria.commits_last_90_days
        or (ratio is not None and ratio >= 1)
        or scoring_input.merged_prs_last_90_days >= criteria.merged_prs_last_90_days
        or scoring_input.issues_created_last_year >= criteria.issues_created_last_year
        or scoring_input.open_prs_count >= criteria.open_prs_count
        or scoring_input.stars >= criteria.stars
    )


def expected_activity_tier(
    scoring_input: ScoringInput, profile: ScoringProfile
) -> ExpectedActivityTier:
    """Classify how much activity the repository should be showing.

    A popular repository with no recent commits is still ``high``: each
    tier is an any-of over its criteria, not an all-of.
    """
    criteria = profile.expected_activity_criteria
    if meets_any(scoring_input, criteria.high):
        return ExpectedActivityTier.HIGH
    if meets_any(scoring_input, criteria.medium):
        return ExpectedActivityTier.MEDIUM
    return ExpectedActivityTier.LOW


def release_regularity(release_dates: Sequence[datetime]) -> float | None:
    """Regularity score in [0, 1] from the spacing between releases.

    Uses the coefficient of variation of the gaps between consecutive
    releases: evenly spaced releases score 1, erratic bursts approach 0.
    Returns None with fewer than 3 releases.
    """
    if len(release_dates) < 3:
        return None

    ordered = sorted(release_dates)
    gaps = [(b - a) / DAY for a, b in zip(ordered, ordered[1:])]
    mean_gap = statistics.fmean(gaps)
    if mean_gap <= 0:
        return 0.0

    cv = statistics.pstdev(gaps) / mean_gap
    return max(0.0, min(1.0, 1 - cv / 2))
