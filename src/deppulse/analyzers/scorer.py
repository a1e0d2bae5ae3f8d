"""Maintenance score calculator."""

from datetime import datetime, timedelta

from deppulse.analyzers.freshness import (
    apply_hard_caps,
    category_from_score,
    freshness_multiplier,
)
from deppulse.analyzers.profiles import ScoringProfile, get_default_scoring_profile
from deppulse.analyzers.quality import compute_quality, round_half_up
from deppulse.analyzers.signals import (
    days_since_most_recent_activity,
    expected_activity_tier,
    release_regularity,
)
from deppulse.models.schemas import (
    MetricsSnapshot,
    ScoreBreakdown,
    ScoreCategory,
    ScoreResult,
    ScoringInput,
)

RELEASE_WINDOW = timedelta(days=365)


def calculate_score(
    scoring_input: ScoringInput, now: datetime, profile: ScoringProfile
) -> ScoreResult:
    """Calculate the maintenance score for one repository.

    Pure: the result depends only on the arguments. Archived repositories
    always score 0 (inactive) whatever their other signals say.

    Args:
        scoring_input: Signals for the repository.
        now: Reference time for every age and staleness calculation.
        profile: Scoring profile to apply.

    Returns:
        Score, category and the breakdown behind them.
    """
    tier = expected_activity_tier(scoring_input, profile)
    days = days_since_most_recent_activity(scoring_input, now)

    if scoring_input.is_archived:
        return ScoreResult(
            score=0,
            category=ScoreCategory.INACTIVE,
            breakdown=ScoreBreakdown(
                quality=0,
                freshness_multiplier=0.0,
                expected_activity_tier=tier,
                hard_cap_applied=None,
                days_since_most_recent_activity=days,
            ),
        )

    quality = compute_quality(scoring_input, now, profile).quality
    multiplier = freshness_multiplier(days, tier, profile)
    raw_score = min(100, round_half_up(quality * multiplier))
    final_score, cap = apply_hard_caps(raw_score, tier, days, profile)

    return ScoreResult(
        score=final_score,
        category=category_from_score(final_score, profile.category_thresholds),
        breakdown=ScoreBreakdown(
            quality=quality,
            freshness_multiplier=multiplier,
            expected_activity_tier=tier,
            hard_cap_applied=cap,
            days_since_most_recent_activity=days,
        ),
    )


def to_scoring_input(metrics: MetricsSnapshot, now: datetime) -> ScoringInput:
    """Derive scoring signals from a metrics snapshot.

    Raises:
        ValueError: If the snapshot predates the 90-day counters.
    """
    if metrics.commits_last_90_days is None:
        raise ValueError(
            "Metrics snapshot missing commits_last_90_days. Re-run analysis to compute score."
        )
    if metrics.merged_prs_last_90_days is None:
        raise ValueError(
            "Metrics snapshot missing merged_prs_last_90_days. Re-run analysis to compute score."
        )

    cutoff = now - RELEASE_WINDOW
    recent_release_dates = [
        release.published_at for release in metrics.releases if release.published_at > cutoff
    ]

    return ScoringInput(
        last_commit_at=metrics.last_commit_at,
        last_merged_pr_at=metrics.last_merged_pr_at,
        last_release_at=metrics.last_release_at,
        open_issues_percent=metrics.open_issues_percent,
        median_issue_resolution_days=metrics.median_issue_resolution_days,
        stars=metrics.stars,
        repository_created_at=metrics.repository_created_at,
        releases_last_year=len(recent_release_dates),
        release_regularity=release_regularity(recent_release_dates),
        commits_last_30_days=metrics.commits_last_30_days,
        commits_last_90_days=metrics.commits_last_90_days,
        commits_last_365_days=metrics.commits_last_365_days,
        merged_prs_last_90_days=metrics.merged_prs_last_90_days,
        issues_created_last_year=metrics.issues_created_last_year,
        open_prs_count=metrics.open_prs_count,
        is_archived=metrics.is_archived,
    )


def compute_score_from_metrics(
    metrics: MetricsSnapshot, now: datetime, profile: ScoringProfile
) -> ScoreResult:
    return calculate_score(to_scoring_input(metrics, now), now, profile)


class Scorer:
    """Scores snapshots against one scoring profile.

    The default profile is resolved here, at construction, never inside
    the scoring functions.
    """

    def __init__(self, profile: ScoringProfile | None = None):
        self.profile = profile or get_default_scoring_profile()

    def score(self, scoring_input: ScoringInput, now: datetime) -> ScoreResult:
        return calculate_score(scoring_input, now, self.profile)

    def score_metrics(self, metrics: MetricsSnapshot, now: datetime) -> ScoreResult:
        """Score a metrics snapshot.

        Args:
            metrics: Snapshot attached to a finished run.
            now: Reference time, normally read once by the caller.

        Returns:
            Score result for the snapshot.
        """
        return compute_score_from_metrics(metrics, now, self.profile)
