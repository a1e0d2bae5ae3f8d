"""Pydantic models for repositories, analysis runs and score results."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def _assume_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Timestamps without an offset are read as UTC.
UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


class RunStatus(str, Enum):
    """Coarse outcome of an analysis run, shown to consumers."""

    QUEUED = "queued"
    RUNNING = "running"
    PARTIAL = "partial"  # Base metrics usable, commit activity degraded
    COMPLETE = "complete"
    FAILED = "failed"  # Nothing usable


class RunState(str, Enum):
    """State that drives the run state machine."""

    QUEUED = "queued"
    RUNNING = "running"
    WAITING_RETRY = "waiting_retry"
    COMPLETE = "complete"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATES

    @property
    def is_active(self) -> bool:
        return self not in TERMINAL_RUN_STATES


TERMINAL_RUN_STATES = frozenset({RunState.COMPLETE, RunState.FAILED, RunState.PARTIAL})


class ProgressStep(str, Enum):
    """Coarse pipeline cursor used by pollers."""

    BOOTSTRAP = "bootstrap"
    METRICS = "metrics"
    COMMIT_ACTIVITY = "commit_activity"
    FINALIZE = "finalize"


class TriggerSource(str, Enum):
    """What asked for the analysis."""

    HOMEPAGE = "homepage"
    DIRECT_VISIT = "direct_visit"
    MANUAL_REFRESH = "manual_refresh"
    PAGE_VISIT = "page_visit"
    SYSTEM = "system"


class ErrorCode(str, Enum):
    """Stable error tokens stored on partial/failed runs."""

    COMMIT_ACTIVITY_UNAVAILABLE = "commit_activity_unavailable"
    COMMIT_ACTIVITY_RETRY_LIMIT = "commit_activity_retry_limit"
    METRICS_FETCH_FAILED = "metrics_fetch_failed"
    ANALYSIS_FAILED = "analysis_failed"


class CommitActivityState(str, Enum):
    """Lifecycle of the commit activity dataset."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class ActivityHistoryStatus(str, Enum):
    """Outcome of one commit activity fetch.

    COMPUTING and ERROR are both retried; UNAVAILABLE is permanent.
    """

    READY = "ready"
    COMPUTING = "computing"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


class ScoreCategory(str, Enum):
    """Maintenance category derived from the final score."""

    HEALTHY = "healthy"
    MODERATE = "moderate"
    DECLINING = "declining"
    INACTIVE = "inactive"


class ExpectedActivityTier(str, Enum):
    """How much activity a repository of its size should show."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ConfidenceLevel(str, Enum):
    """How far a score can be trusted."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# --- Repository and snapshot models ---


class RepositoryRecord(BaseModel):
    """A repository known to the system, shared by many runs."""

    id: int | None = None
    owner: str
    name: str
    full_name: str
    default_branch: str | None = None
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None


class ReleaseInfo(BaseModel):
    """A published release."""

    model_config = ConfigDict(frozen=True)

    tag_name: str
    name: str | None = None
    published_at: UtcDatetime


class CommitActivityWeek(BaseModel):
    """Commit totals for one week, Sunday first."""

    model_config = ConfigDict(frozen=True)

    week_start: UtcDatetime
    total_commits: int = 0
    daily_breakdown: tuple[int, int, int, int, int, int, int] = (0, 0, 0, 0, 0, 0, 0)


class CommitActivity(BaseModel):
    """Commit activity embedded in a metrics snapshot."""

    model_config = ConfigDict(frozen=True)

    state: CommitActivityState = CommitActivityState.PENDING
    attempts: int = 0
    last_attempted_at: UtcDatetime | None = None
    error_message: str | None = None
    weekly: tuple[CommitActivityWeek, ...] = ()


class MetricsSnapshot(BaseModel):
    """Point-in-time repository metrics.

    Frozen: updates go through ``model_copy(update=...)`` so a persisted
    snapshot is always replaced as a whole.
    """

    model_config = ConfigDict(frozen=True)

    # Repository facts
    full_name: str | None = None
    description: str | None = None
    stars: int = 0
    forks: int = 0
    avatar_url: str | None = None
    html_url: str | None = None
    default_branch: str | None = None
    license: str | None = None
    language: str | None = None
    is_archived: bool = False
    repository_created_at: UtcDatetime | None = None

    # Activity timestamps
    last_commit_at: UtcDatetime | None = None
    last_release_at: UtcDatetime | None = None
    last_merged_pr_at: UtcDatetime | None = None
    last_closed_issue_at: UtcDatetime | None = None

    # Issue and PR counters
    open_issues_percent: float | None = None
    open_issues_count: int = 0
    closed_issues_count: int = 0
    median_issue_resolution_days: float | None = None
    open_prs_count: int = 0

    # Volume counters over fixed windows
    commits_last_30_days: int | None = None
    commits_last_90_days: int | None = None
    commits_last_365_days: int | None = None
    merged_prs_last_90_days: int | None = None
    issues_created_last_year: int = 0

    releases: tuple[ReleaseInfo, ...] = ()
    readme_content: str | None = None

    commit_activity: CommitActivity | None = None

    def with_commit_activity(self, **updates) -> "MetricsSnapshot":
        """Return a copy with the commit activity sub-record updated."""
        previous = self.commit_activity or CommitActivity()
        return self.model_copy(
            update={"commit_activity": previous.model_copy(update=updates)}
        )


class ActivityHistoryResult(BaseModel):
    """Result of fetching the weekly commit activity dataset."""

    status: ActivityHistoryStatus
    weeks: list[CommitActivityWeek] = Field(default_factory=list)
    message: str | None = None


# --- Run models ---


class AnalysisRun(BaseModel):
    """One attempt to assess one repository."""

    id: int | None = None
    repository_id: int
    status: RunStatus = RunStatus.QUEUED
    run_state: RunState = RunState.QUEUED
    progress_step: ProgressStep = ProgressStep.BOOTSTRAP
    attempt_count: int = 0
    next_retry_at: UtcDatetime | None = None
    lock_token: str | None = None
    locked_at: UtcDatetime | None = None
    trigger_source: TriggerSource = TriggerSource.SYSTEM
    metrics: MetricsSnapshot | None = None
    started_at: UtcDatetime
    updated_at: UtcDatetime
    completed_at: UtcDatetime | None = None
    error_code: ErrorCode | None = None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.run_state.is_terminal


class ProjectView(BaseModel):
    """Read model kept in sync with the latest run of a repository."""

    repository_id: int
    full_name: str
    latest_run_id: int
    run_state: RunState
    progress_step: ProgressStep
    snapshot: MetricsSnapshot | None = None
    analyzed_at: UtcDatetime | None = None


class AnalysisStatusView(BaseModel):
    """What pollers see for a repository."""

    repository: RepositoryRecord
    latest_run: AnalysisRun | None = None
    view_ready: bool = False


# --- Scoring models ---


class ScoringInput(BaseModel):
    """Signals consumed by the scoring engine."""

    # Activity timestamps
    last_commit_at: UtcDatetime | None = None
    last_merged_pr_at: UtcDatetime | None = None
    last_release_at: UtcDatetime | None = None

    # Quality signals
    open_issues_percent: float | None = None
    median_issue_resolution_days: float | None = None
    stars: int = 0
    repository_created_at: UtcDatetime | None = None
    releases_last_year: int = 0
    release_regularity: float | None = None  # 0..1, None with fewer than 3 releases

    # Expected activity signals
    commits_last_30_days: int | None = None
    commits_last_90_days: int = 0
    commits_last_365_days: int | None = None
    merged_prs_last_90_days: int = 0
    issues_created_last_year: int = 0
    open_prs_count: int = 0

    is_archived: bool = False


class ScoreBreakdown(BaseModel):
    """Why a score landed where it did."""

    quality: int
    freshness_multiplier: float
    expected_activity_tier: ExpectedActivityTier
    hard_cap_applied: int | None = None
    days_since_most_recent_activity: int | None = None


class ScoreResult(BaseModel):
    """Final maintenance score."""

    score: int = Field(ge=0, le=100)
    category: ScoreCategory
    breakdown: ScoreBreakdown


class QualitySignals(BaseModel):
    """The five quality sub-signals, each in [0, 1]."""

    issue_health: float
    release_health: float
    community: float
    maturity: float
    activity_breadth: float


class QualityComputation(BaseModel):
    """Quality score with the signals and weights behind it."""

    quality: int = Field(ge=0, le=100)
    signals: QualitySignals
    normalized_weights: dict[str, float]


# --- Confidence models ---


class ConfidenceMetrics(BaseModel):
    """Reduced metrics view used by the confidence estimator."""

    open_issues_percent: float | None = None
    median_issue_resolution_days: float | None = None
    last_commit_at: UtcDatetime | None = None
    release_count: int = 0
    merged_prs_last_90_days: int = 0
    issues_created_last_year: int = 0


class ConfidenceInput(BaseModel):
    """Run facts needed to rate a score."""

    status: RunStatus
    started_at: UtcDatetime
    completed_at: UtcDatetime | None = None
    metrics: ConfidenceMetrics | None = None


class ConfidencePenalty(BaseModel):
    """A single deduction from full confidence."""

    id: str
    points: int
    reason: str


class ConfidenceResult(BaseModel):
    """Confidence rating for a run's score."""

    level: ConfidenceLevel
    score: int = Field(ge=0, le=100)
    penalties: list[ConfidencePenalty] = Field(default_factory=list)
    summary: str | None = None
