"""Abstract persistence contract for repositories, runs and project views."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from deppulse.models.schemas import AnalysisRun, ProjectView, RepositoryRecord


class AnalysisStore(ABC):
    """Storage for repositories, analysis runs and the project read model.

    Implementations enforce two rules at this boundary:

    - at most one active (queued, running, waiting_retry) run per
      repository; ``create_run`` raises ActiveRunConflictError otherwise;
    - terminal runs are immutable; ``update_run`` on them changes nothing.
    """

    @abstractmethod
    async def upsert_repository(
        self,
        owner: str,
        name: str,
        default_branch: str | None = None,
        now: datetime | None = None,
    ) -> RepositoryRecord:
        """Create the repository on first sight, otherwise update it.

        Args:
            owner: Normalized owner.
            name: Normalized repository name.
            default_branch: Default branch, if known.
            now: Timestamp recorded as created/updated time.

        Returns:
            The stored RepositoryRecord with its id.
        """
        ...

    @abstractmethod
    async def find_repository_by_slug(self, full_name: str) -> RepositoryRecord | None:
        ...

    @abstractmethod
    async def find_repository_by_id(self, repository_id: int) -> RepositoryRecord | None:
        ...

    @abstractmethod
    async def create_run(self, run: AnalysisRun) -> AnalysisRun:
        """Insert a new run and assign its id.

        Raises:
            ActiveRunConflictError: If the repository already has an active run.
        """
        ...

    @abstractmethod
    async def update_run(self, run_id: int, **fields: Any) -> AnalysisRun | None:
        """Apply a partial update to a run.

        Returns:
            The run after the update, the unchanged run if it was already
            terminal, or None if no run has that id.
        """
        ...

    @abstractmethod
    async def find_run_by_id(self, run_id: int) -> AnalysisRun | None:
        ...

    @abstractmethod
    async def find_active_run_for_repository(self, repository_id: int) -> AnalysisRun | None:
        ...

    @abstractmethod
    async def find_latest_run_for_repository(self, repository_id: int) -> AnalysisRun | None:
        ...

    @abstractmethod
    async def find_due_retry_runs(self, now: datetime, limit: int) -> list[AnalysisRun]:
        """Runs waiting to retry whose ``next_retry_at`` has passed, oldest first."""
        ...

    @abstractmethod
    async def find_stale_runs(self, updated_before: datetime, limit: int) -> list[AnalysisRun]:
        """Queued or running runs not updated since ``updated_before``, oldest first."""
        ...

    @abstractmethod
    async def claim_run(self, run_id: int, lock_token: str, now: datetime) -> AnalysisRun | None:
        """Compare-and-swap the advisory lock of a run.

        Succeeds when the run is unlocked or already held by ``lock_token``
        and is not terminal.

        Returns:
            The locked run, or None if the claim failed.
        """
        ...

    @abstractmethod
    async def upsert_project_view(self, view: ProjectView) -> ProjectView:
        ...

    @abstractmethod
    async def find_project_view(self, full_name: str) -> ProjectView | None:
        ...

    async def close(self) -> None:
        return None


class ActiveRunConflictError(Exception):
    """Raised when a repository already has an active run."""

    def __init__(self, repository_id: int) -> None:
        self.repository_id = repository_id
        super().__init__(f"Repository {repository_id} already has an active analysis run")
