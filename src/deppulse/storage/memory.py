"""In-process store."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from deppulse.models.schemas import AnalysisRun, ProjectView, RepositoryRecord, RunState
from deppulse.storage.base import ActiveRunConflictError, AnalysisStore

RUN_FIELDS = frozenset(AnalysisRun.model_fields)


class InMemoryStore(AnalysisStore):
    """Keeps every record in dictionaries.

    Records are copied on the way in and out, so callers never share
    mutable state with the store or with each other.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._repositories: dict[int, RepositoryRecord] = {}
        self._runs: dict[int, AnalysisRun] = {}
        self._views: dict[str, ProjectView] = {}
        self._next_repository_id = 1
        self._next_run_id = 1

    @asynccontextmanager
    async def _transaction(self, write: bool = False) -> AsyncIterator[None]:
        """Serialize access to the records. Subclasses add loading and saving."""
        async with self._lock:
            yield

    # --- Repositories ---

    async def upsert_repository(
        self,
        owner: str,
        name: str,
        default_branch: str | None = None,
        now: datetime | None = None,
    ) -> RepositoryRecord:
        now = now or datetime.now(timezone.utc)
        owner, name = owner.strip().lower(), name.strip().lower()
        full_name = f"{owner}/{name}"

        async with self._transaction(write=True):
            existing = self._find_repository(full_name)
            if existing is not None:
                updates: dict[str, Any] = {"updated_at": now}
                if default_branch is not None:
                    updates["default_branch"] = default_branch
                record = existing.model_copy(update=updates)
            else:
                record = RepositoryRecord(
                    id=self._next_repository_id,
                    owner=owner,
                    name=name,
                    full_name=full_name,
                    default_branch=default_branch,
                    created_at=now,
                    updated_at=now,
                )
                self._next_repository_id += 1
            self._repositories[record.id] = record
            return record.model_copy()

    def _find_repository(self, full_name: str) -> RepositoryRecord | None:
        full_name = full_name.strip().lower()
        for record in self._repositories.values():
            if record.full_name == full_name:
                return record
        return None

    async def find_repository_by_slug(self, full_name: str) -> RepositoryRecord | None:
        async with self._transaction():
            record = self._find_repository(full_name)
            return record.model_copy() if record else None

    async def find_repository_by_id(self, repository_id: int) -> RepositoryRecord | None:
        async with self._transaction():
            record = self._repositories.get(repository_id)
            return record.model_copy() if record else None

    # --- Runs ---

    def _active_run(self, repository_id: int) -> AnalysisRun | None:
        for run in self._runs.values():
            if run.repository_id == repository_id and run.run_state.is_active:
                return run
        return None

    async def create_run(self, run: AnalysisRun) -> AnalysisRun:
        async with self._transaction(write=True):
            if run.run_state.is_active and self._active_run(run.repository_id) is not None:
                raise ActiveRunConflictError(run.repository_id)

            stored = run.model_copy(update={"id": self._next_run_id}, deep=True)
            self._next_run_id += 1
            self._runs[stored.id] = stored
            return stored.model_copy(deep=True)

    async def update_run(self, run_id: int, **fields: Any) -> AnalysisRun | None:
        unknown = set(fields) - RUN_FIELDS
        if unknown:
            raise ValueError(f"Unknown run fields: {sorted(unknown)}")

        async with self._transaction(write=True):
            current = self._runs.get(run_id)
            if current is None:
                return None
            if current.is_terminal:
                return current.model_copy(deep=True)

            fields.pop("id", None)
            updated = AnalysisRun.model_validate({**dict(current), **fields})
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)

    async def find_run_by_id(self, run_id: int) -> AnalysisRun | None:
        async with self._transaction():
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    async def find_active_run_for_repository(self, repository_id: int) -> AnalysisRun | None:
        async with self._transaction():
            run = self._active_run(repository_id)
            return run.model_copy(deep=True) if run else None

    async def find_latest_run_for_repository(self, repository_id: int) -> AnalysisRun | None:
        async with self._transaction():
            runs = [run for run in self._runs.values() if run.repository_id == repository_id]
            if not runs:
                return None
            latest = max(runs, key=lambda run: (run.started_at, run.id))
            return latest.model_copy(deep=True)

    async def find_due_retry_runs(self, now: datetime, limit: int) -> list[AnalysisRun]:
        async with self._transaction():
            due = [
                run
                for run in self._runs.values()
                if run.run_state == RunState.WAITING_RETRY
                and run.next_retry_at is not None
                and run.next_retry_at <= now
            ]
            due.sort(key=lambda run: (run.next_retry_at, run.id))
            return [run.model_copy(deep=True) for run in due[: max(0, limit)]]

    async def find_stale_runs(self, updated_before: datetime, limit: int) -> list[AnalysisRun]:
        async with self._transaction():
            stale = [
                run
                for run in self._runs.values()
                if run.run_state in (RunState.QUEUED, RunState.RUNNING)
                and run.updated_at <= updated_before
            ]
            stale.sort(key=lambda run: (run.updated_at, run.id))
            return [run.model_copy(deep=True) for run in stale[: max(0, limit)]]

    async def claim_run(self, run_id: int, lock_token: str, now: datetime) -> AnalysisRun | None:
        async with self._transaction(write=True):
            run = self._runs.get(run_id)
            if run is None or run.is_terminal:
                return None
            if run.lock_token is not None and run.lock_token != lock_token:
                return None

            claimed = run.model_copy(
                update={"lock_token": lock_token, "locked_at": run.locked_at or now}
            )
            self._runs[run_id] = claimed
            return claimed.model_copy(deep=True)

    # --- Project views ---

    async def upsert_project_view(self, view: ProjectView) -> ProjectView:
        async with self._transaction(write=True):
            stored = view.model_copy(update={"full_name": view.full_name.lower()}, deep=True)
            self._views[stored.full_name] = stored
            return stored.model_copy(deep=True)

    async def find_project_view(self, full_name: str) -> ProjectView | None:
        async with self._transaction():
            view = self._views.get(full_name.strip().lower())
            return view.model_copy(deep=True) if view else None
