"""Thread-safe metrics collector for analysis run monitoring."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from deppulse.models.schemas import ErrorCode, RunStatus

logger = logging.getLogger(__name__)

MAX_RECENT_ERRORS = 10
MAX_ACTIVITY_ENTRIES = 50


@dataclass
class ErrorEntry:
    """A recorded error from the pipeline."""

    timestamp: datetime
    repository: str
    error_type: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "repository": self.repository,
            "error_type": self.error_type,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorEntry:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            repository=data["repository"],
            error_type=data["error_type"],
            message=data["message"],
        )


@dataclass
class ActivityEntry:
    """A log entry for a finished run or a scheduled retry."""

    timestamp: datetime
    repository: str
    status: str  # "complete", "partial", "failed", "retrying"
    attempts: int = 0
    error_code: str | None = None
    retry_delay: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "repository": self.repository,
            "status": self.status,
            "attempts": self.attempts,
            "error_code": self.error_code,
            "retry_delay": self.retry_delay,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActivityEntry:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            repository=data["repository"],
            status=data["status"],
            attempts=data.get("attempts", 0),
            error_code=data.get("error_code"),
            retry_delay=data.get("retry_delay"),
        )


@dataclass
class RunMetrics:
    """Cumulative outcome counters for analysis runs."""

    started_count: int = 0
    complete_count: int = 0
    partial_count: int = 0
    failed_count: int = 0
    retry_count: int = 0
    error_codes: dict[str, int] = field(default_factory=dict)
    current_repository: str = ""

    # Errors (ring buffer of last N)
    recent_errors: deque[ErrorEntry] = field(
        default_factory=lambda: deque(maxlen=MAX_RECENT_ERRORS)
    )

    # Activity log (ring buffer)
    activity_log: deque[ActivityEntry] = field(
        default_factory=lambda: deque(maxlen=MAX_ACTIVITY_ENTRIES)
    )

    last_updated: datetime | None = None

    @property
    def finished_count(self) -> int:
        return self.complete_count + self.partial_count + self.failed_count

    @property
    def partial_rate(self) -> float:
        """Share of finished runs that ended partial."""
        if self.finished_count == 0:
            return 0.0
        return self.partial_count / self.finished_count

    def to_dict(self) -> dict[str, Any]:
        """Serialize metrics to a dictionary for JSON storage."""
        return {
            "started_count": self.started_count,
            "complete_count": self.complete_count,
            "partial_count": self.partial_count,
            "failed_count": self.failed_count,
            "retry_count": self.retry_count,
            "error_codes": self.error_codes,
            "current_repository": self.current_repository,
            "recent_errors": [e.to_dict() for e in self.recent_errors],
            "activity_log": [a.to_dict() for a in self.activity_log],
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunMetrics:
        """Deserialize metrics from a dictionary."""
        metrics = cls(
            started_count=data.get("started_count", 0),
            complete_count=data.get("complete_count", 0),
            partial_count=data.get("partial_count", 0),
            failed_count=data.get("failed_count", 0),
            retry_count=data.get("retry_count", 0),
            error_codes=dict(data.get("error_codes", {})),
            current_repository=data.get("current_repository", ""),
            last_updated=(
                datetime.fromisoformat(data["last_updated"])
                if data.get("last_updated")
                else None
            ),
        )
        metrics.recent_errors = deque(
            [ErrorEntry.from_dict(e) for e in data.get("recent_errors", [])],
            maxlen=MAX_RECENT_ERRORS,
        )
        metrics.activity_log = deque(
            [ActivityEntry.from_dict(a) for a in data.get("activity_log", [])],
            maxlen=MAX_ACTIVITY_ENTRIES,
        )
        return metrics


class MetricsCollector:
    """Thread-safe collector of run outcomes.

    Persists to a JSON file after every change so the ``status`` command
    and the retry daemon see the same numbers. Pass ``metrics_file=None``
    to keep everything in memory.
    """

    def __init__(self, metrics_file: Path | None = None):
        self._lock = threading.Lock()
        self._metrics_file = metrics_file
        self._metrics = self.load()

    def start_run(self, repository: str) -> None:
        """Mark a repository as currently being analyzed."""
        with self._lock:
            self._metrics.started_count += 1
            self._metrics.current_repository = repository
            self._metrics.last_updated = datetime.now()
            self._save()

    def record_retry(self, repository: str, attempt: int, delay: float) -> None:
        """Record that commit activity for a repository will be retried."""
        with self._lock:
            now = datetime.now()
            self._metrics.retry_count += 1
            self._metrics.current_repository = repository
            self._metrics.last_updated = now
            self._metrics.activity_log.append(
                ActivityEntry(
                    timestamp=now,
                    repository=repository,
                    status="retrying",
                    attempts=attempt,
                    retry_delay=delay,
                )
            )
            self._save()

    def complete_run(
        self,
        repository: str,
        status: RunStatus,
        attempts: int = 0,
        error_code: ErrorCode | None = None,
        message: str | None = None,
    ) -> None:
        """Record the terminal outcome of a run."""
        with self._lock:
            now = datetime.now()
            self._metrics.current_repository = ""
            self._metrics.last_updated = now

            if status == RunStatus.COMPLETE:
                self._metrics.complete_count += 1
            elif status == RunStatus.PARTIAL:
                self._metrics.partial_count += 1
            else:
                self._metrics.failed_count += 1

            if error_code is not None:
                code = error_code.value
                self._metrics.error_codes[code] = self._metrics.error_codes.get(code, 0) + 1
                if status == RunStatus.FAILED:
                    self._metrics.recent_errors.append(
                        ErrorEntry(
                            timestamp=now,
                            repository=repository,
                            error_type=code,
                            message=message or "",
                        )
                    )

            self._metrics.activity_log.append(
                ActivityEntry(
                    timestamp=now,
                    repository=repository,
                    status=status.value,
                    attempts=attempts,
                    error_code=error_code.value if error_code else None,
                )
            )
            self._save()

    def record_error(self, repository: str, error_type: str, message: str) -> None:
        """Record an error that didn't end up on a run."""
        with self._lock:
            self._metrics.recent_errors.append(
                ErrorEntry(
                    timestamp=datetime.now(),
                    repository=repository,
                    error_type=error_type,
                    message=message,
                )
            )
            self._metrics.last_updated = datetime.now()
            self._save()

    def get_metrics(self) -> RunMetrics:
        """Get a copy of current metrics."""
        with self._lock:
            return RunMetrics.from_dict(self._metrics.to_dict())

    def _save(self) -> None:
        """Save metrics to file (must be called with lock held)."""
        if self._metrics_file is None:
            return
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._metrics_file, "w") as f:
                json.dump(self._metrics.to_dict(), f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save metrics to {self._metrics_file}: {e}")

    def load(self) -> RunMetrics:
        """Load metrics from file, or start empty."""
        if self._metrics_file is None or not self._metrics_file.exists():
            return RunMetrics()
        try:
            with open(self._metrics_file) as f:
                return RunMetrics.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable metrics file {self._metrics_file}: {e}")
            return RunMetrics()
