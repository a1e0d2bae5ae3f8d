"""Confidence estimator: how far a run's score can be trusted.

Starts from 100 and subtracts a fixed penalty for every data gap found in
the run, plus a penalty that grows with the age of the analysis itself.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel

from deppulse.analyzers.quality import round_half_up
from deppulse.models.schemas import (
    AnalysisRun,
    ConfidenceInput,
    ConfidenceLevel,
    ConfidenceMetrics,
    ConfidencePenalty,
    ConfidenceResult,
    RunStatus,
)

HIGH_THRESHOLD = 85
MEDIUM_THRESHOLD = 60

# Counters that stop at the upstream page size
MERGED_PRS_API_LIMIT = 100
RECENT_ISSUES_API_LIMIT = 100

STALENESS_GRACE_DAYS = 7
STALENESS_MAX_PENALTY_DAYS = 30
STALENESS_MAX_PENALTY_POINTS = 25

MULTIPLE_GAPS_SUMMARY = "Score may be approximate due to multiple data gaps"
NO_METRICS_REASON = "No metrics available"

PenaltyCheck = Callable[[ConfidenceInput], ConfidencePenalty | None]


def _level(score: int) -> ConfidenceLevel:
    if score >= HIGH_THRESHOLD:
        return ConfidenceLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def _summary(penalties: list[ConfidencePenalty]) -> str | None:
    if not penalties:
        return None
    if len(penalties) == 1:
        return penalties[0].reason
    return MULTIPLE_GAPS_SUMMARY


def _run_failed(data: ConfidenceInput) -> ConfidencePenalty | None:
    if data.status == RunStatus.FAILED:
        return ConfidencePenalty(id="run_failed", points=40, reason="Analysis failed")
    return None


def _run_partial(data: ConfidenceInput) -> ConfidencePenalty | None:
    if data.status == RunStatus.PARTIAL:
        return ConfidencePenalty(
            id="run_partial", points=20, reason="Analysis completed with partial data"
        )
    return None


def _missing_open_issues_percent(data: ConfidenceInput) -> ConfidencePenalty | None:
    if data.metrics.open_issues_percent is None:
        return ConfidencePenalty(
            id="missing_open_issues_percent",
            points=10,
            reason="Issue health data unavailable",
        )
    return None


def _missing_median_resolution(data: ConfidenceInput) -> ConfidencePenalty | None:
    if data.metrics.median_issue_resolution_days is None:
        return ConfidencePenalty(
            id="missing_median_resolution",
            points=8,
            reason="Issue resolution time unavailable",
        )
    return None


def _missing_commit_history(data: ConfidenceInput) -> ConfidencePenalty | None:
    if data.metrics.last_commit_at is None:
        return ConfidencePenalty(
            id="missing_commit_history", points=12, reason="No commit history found"
        )
    return None


def _no_releases(data: ConfidenceInput) -> ConfidencePenalty | None:
    if data.metrics.release_count == 0:
        return ConfidencePenalty(
            id="no_releases", points=8, reason="No release history available"
        )
    return None


def _merged_prs_capped(data: ConfidenceInput) -> ConfidencePenalty | None:
    if data.metrics.merged_prs_last_90_days >= MERGED_PRS_API_LIMIT:
        return ConfidencePenalty(
            id="merged_prs_capped", points=8, reason="PR data may be incomplete"
        )
    return None


def _issues_capped(data: ConfidenceInput) -> ConfidencePenalty | None:
    if data.metrics.issues_created_last_year >= RECENT_ISSUES_API_LIMIT:
        return ConfidencePenalty(
            id="issues_capped", points=8, reason="Issue data may be sampled"
        )
    return None


PENALTY_CHECKS: tuple[PenaltyCheck, ...] = (
    _run_failed,
    _run_partial,
    _missing_open_issues_percent,
    _missing_median_resolution,
    _missing_commit_history,
    _no_releases,
    _merged_prs_capped,
    _issues_capped,
)


def staleness_penalty(data: ConfidenceInput, now: datetime) -> ConfidencePenalty | None:
    """Penalty growing linearly from the grace period to the maximum horizon.

    Zero up to 7 days after the run finished, 25 points from 30 days on.
    """
    analyzed_at = data.completed_at or data.started_at
    days = (now - analyzed_at) / timedelta(days=1)
    if days <= STALENESS_GRACE_DAYS:
        return None

    span = STALENESS_MAX_PENALTY_DAYS - STALENESS_GRACE_DAYS
    elapsed = min(days - STALENESS_GRACE_DAYS, span)
    points = round_half_up(elapsed / span * STALENESS_MAX_PENALTY_POINTS)
    if points <= 0:
        return None

    rounded_days = round_half_up(days)
    plural = "" if rounded_days == 1 else "s"
    return ConfidencePenalty(
        id="stale_analysis",
        points=points,
        reason=f"Analysis is {rounded_days} day{plural} old",
    )


def compute_confidence(data: ConfidenceInput, now: datetime) -> ConfidenceResult:
    """Rate how much the score of a run can be trusted.

    Args:
        data: Run status, timestamps and reduced metrics.
        now: Reference time for the staleness penalty.

    Returns:
        Confidence level, score, the penalties applied and a summary.
    """
    if data.metrics is None:
        return ConfidenceResult(
            level=ConfidenceLevel.LOW,
            score=0,
            penalties=[ConfidencePenalty(id="no_metrics", points=100, reason=NO_METRICS_REASON)],
            summary=NO_METRICS_REASON,
        )

    penalties = [penalty for check in PENALTY_CHECKS if (penalty := check(data)) is not None]

    stale = staleness_penalty(data, now)
    if stale is not None:
        penalties.append(stale)

    score = max(0, 100 - sum(p.points for p in penalties))
    return ConfidenceResult(
        level=_level(score),
        score=score,
        penalties=penalties,
        summary=_summary(penalties),
    )


def confidence_input_from_run(run: AnalysisRun) -> ConfidenceInput:
    """Reduce a persisted run to what the estimator needs."""
    metrics = None
    if run.metrics is not None:
        snapshot = run.metrics
        metrics = ConfidenceMetrics(
            open_issues_percent=snapshot.open_issues_percent,
            median_issue_resolution_days=snapshot.median_issue_resolution_days,
            last_commit_at=snapshot.last_commit_at,
            release_count=len(snapshot.releases),
            merged_prs_last_90_days=snapshot.merged_prs_last_90_days or 0,
            issues_created_last_year=snapshot.issues_created_last_year,
        )

    return ConfidenceInput(
        status=run.status,
        started_at=run.started_at,
        completed_at=run.completed_at,
        metrics=metrics,
    )


def compute_run_confidence(run: AnalysisRun, now: datetime) -> ConfidenceResult:
    return compute_confidence(confidence_input_from_run(run), now)


class ConfidenceLevelInfo(BaseModel):
    """Display metadata for a confidence level."""

    label: str
    description: str


CONFIDENCE_LEVEL_INFO: dict[ConfidenceLevel, ConfidenceLevelInfo] = {
    ConfidenceLevel.HIGH: ConfidenceLevelInfo(
        label="High confidence",
        description="Complete, recent data. The score reflects the repository well.",
    ),
    ConfidenceLevel.MEDIUM: ConfidenceLevelInfo(
        label="Medium confidence",
        description="Some data is missing or dated. Treat the score as indicative.",
    ),
    ConfidenceLevel.LOW: ConfidenceLevelInfo(
        label="Low confidence",
        description="Significant data gaps. The score may not reflect reality.",
    ),
}
