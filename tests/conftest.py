"""Shared fixtures: a scripted metrics provider and a fixed clock."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

import pytest

from deppulse.adapters.base import MetricsProvider
from deppulse.analyzers.pipeline import AnalysisPipeline
from deppulse.models.schemas import (
    ActivityHistoryResult,
    ActivityHistoryStatus,
    CommitActivityWeek,
    MetricsSnapshot,
    ReleaseInfo,
)
from deppulse.settings import AnalysisSettings
from deppulse.storage.memory import InMemoryStore

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_snapshot(**overrides) -> MetricsSnapshot:
    """A healthy, fully populated snapshot relative to ``NOW``."""
    values = dict(
        full_name="octo/widgets",
        stars=1200,
        forks=80,
        default_branch="main",
        repository_created_at=NOW - timedelta(days=4 * 365),
        last_commit_at=NOW - timedelta(days=2),
        last_release_at=NOW - timedelta(days=20),
        last_merged_pr_at=NOW - timedelta(days=5),
        open_issues_percent=25.0,
        open_issues_count=25,
        closed_issues_count=75,
        median_issue_resolution_days=10.0,
        open_prs_count=3,
        commits_last_30_days=12,
        commits_last_90_days=30,
        commits_last_365_days=140,
        merged_prs_last_90_days=9,
        issues_created_last_year=20,
        releases=tuple(
            ReleaseInfo(tag_name=f"v1.{i}", published_at=NOW - timedelta(days=20 + 60 * i))
            for i in range(5)
        ),
    )
    values.update(overrides)
    return MetricsSnapshot(**values)


def ready(weeks: int = 2) -> ActivityHistoryResult:
    return ActivityHistoryResult(
        status=ActivityHistoryStatus.READY,
        weeks=[
            CommitActivityWeek(
                week_start=NOW - timedelta(weeks=weeks - i),
                total_commits=7,
                daily_breakdown=(1, 1, 1, 1, 1, 1, 1),
            )
            for i in range(weeks)
        ],
    )


def computing() -> ActivityHistoryResult:
    return ActivityHistoryResult(status=ActivityHistoryStatus.COMPUTING)


def unavailable() -> ActivityHistoryResult:
    return ActivityHistoryResult(status=ActivityHistoryStatus.UNAVAILABLE, message="HTTP 404")


class FakeProvider(MetricsProvider):
    """Provider returning scripted results and counting calls."""

    def __init__(
        self,
        snapshot: MetricsSnapshot | None = None,
        activity: Iterable[ActivityHistoryResult] = (),
        metrics_error: Exception | None = None,
        activity_error: Exception | None = None,
    ) -> None:
        self.snapshot = snapshot or make_snapshot()
        self.activity = list(activity)
        self.metrics_error = metrics_error
        self.activity_error = activity_error
        self.metrics_calls = 0
        self.activity_calls = 0
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    async def fetch_metrics(self, owner: str, project: str) -> MetricsSnapshot:
        self.metrics_calls += 1
        if self.metrics_error is not None:
            raise self.metrics_error
        return self.snapshot

    async def fetch_activity_history(self, owner: str, project: str) -> ActivityHistoryResult:
        self.activity_calls += 1
        if self.activity_error is not None:
            raise self.activity_error
        if not self.activity:
            return computing()
        # The last scripted result repeats
        if len(self.activity) == 1:
            return self.activity[0]
        return self.activity.pop(0)

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Settable clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def make_pipeline(store, clock):
    """Factory building a pipeline over the shared store and clock."""

    def factory(provider: MetricsProvider, **settings) -> AnalysisPipeline:
        return AnalysisPipeline(
            store=store,
            provider=provider,
            settings=AnalysisSettings(**settings),
            clock=clock,
            sleep=clock.sleep,
        )

    return factory
