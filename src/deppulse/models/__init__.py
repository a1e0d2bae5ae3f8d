"""Data models and schemas."""

from deppulse.models.schemas import (
    AnalysisRun,
    CommitActivity,
    MetricsSnapshot,
    RepositoryRecord,
    RunState,
    RunStatus,
)

__all__ = [
    "AnalysisRun",
    "CommitActivity",
    "MetricsSnapshot",
    "RepositoryRecord",
    "RunState",
    "RunStatus",
]
