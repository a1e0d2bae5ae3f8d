"""Analysis run state machine.

A run goes ``queued -> running(metrics) -> running(commit_activity)``,
possibly through ``waiting_retry`` a few times, and ends ``complete``,
``partial`` or ``failed``. Every step is persisted before the next one
starts, so a run can be resumed by any process from the store alone.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta, timezone

from deppulse.adapters.base import MetricsProvider, make_full_name, normalize_slug_part
from deppulse.models.schemas import (
    ActivityHistoryResult,
    ActivityHistoryStatus,
    AnalysisRun,
    AnalysisStatusView,
    CommitActivity,
    CommitActivityState,
    ErrorCode,
    MetricsSnapshot,
    ProgressStep,
    ProjectView,
    RepositoryRecord,
    RunState,
    RunStatus,
    TriggerSource,
)
from deppulse.monitoring.metrics import MetricsCollector
from deppulse.settings import AnalysisSettings
from deppulse.storage.base import ActiveRunConflictError, AnalysisStore

logger = logging.getLogger(__name__)

CacheInvalidator = Callable[[str, str], None]

VIEW_READY_STATES = frozenset({RunState.COMPLETE, RunState.PARTIAL})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunNotFoundError(LookupError):
    """Raised when a run id doesn't exist."""

    def __init__(self, run_id: int) -> None:
        self.run_id = run_id
        super().__init__(f"Analysis run {run_id} not found")


class MetricsFetchError(Exception):
    """Raised when the base metrics snapshot can't be fetched."""

    def __init__(self, owner: str, project: str, cause: Exception) -> None:
        self.owner = owner
        self.project = project
        self.cause = cause
        super().__init__(str(cause) or f"Failed to fetch metrics for {owner}/{project}")


class AnalysisPipeline:
    """Drives analysis runs from creation to finalization.

    Pipeline stages:
    1. Start a run, or reuse an active or recently completed one
    2. Prime the run with the base metrics snapshot (one provider call)
    3. Resolve commit activity with a bounded retry schedule
    4. Finalize as complete, partial or failed and sync the read model
    """

    UNAVAILABLE_MESSAGE = "GitHub commit activity is currently unavailable for this repository."
    RETRY_LIMIT_MESSAGE = "Commit activity did not become available before retry limit was reached."
    TIMEOUT_MESSAGE = "Commit activity request timed out"

    def __init__(
        self,
        store: AnalysisStore,
        provider: MetricsProvider,
        settings: AnalysisSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cache_invalidators: Sequence[CacheInvalidator] = (),
        collector: MetricsCollector | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Persistence for repositories, runs and project views.
            provider: Source of metrics and commit activity.
            settings: Retry schedule, timeouts and reuse window.
            clock: Source of the current time. Read once per step.
            sleep: Suspends the current run between retries.
            cache_invalidators: Called with ``(owner, project)`` after a
                run is finalized.
            collector: Optional run outcome metrics.
        """
        self.store = store
        self.provider = provider
        self.settings = settings or AnalysisSettings()
        self._clock = clock
        self._sleep = sleep
        self._cache_invalidators = list(cache_invalidators)
        self.collector = collector

    async def __aenter__(self) -> "AnalysisPipeline":
        return self

    async def __aexit__(self, *args) -> None:
        await self.provider.close()
        await self.store.close()

    # --- Start or reuse ---

    async def start_or_reuse_run(
        self,
        owner: str,
        project: str,
        force: bool = False,
        trigger_source: TriggerSource = TriggerSource.SYSTEM,
    ) -> tuple[AnalysisRun, bool]:
        """Return the run that should answer a request for ``owner/project``.

        An active run is always reused. A complete run younger than the
        freshness window is reused unless ``force`` is set. Otherwise a new
        queued run is created.

        Args:
            owner: Repository owner, any case.
            project: Repository name, any case.
            force: Skip reuse of a recently completed run.
            trigger_source: What asked for the analysis.

        Returns:
            Tuple of (run, created).
        """
        owner, project = normalize_slug_part(owner), normalize_slug_part(project)
        now = self._clock()
        repository = await self.store.upsert_repository(owner, project, now=now)

        active = await self.store.find_active_run_for_repository(repository.id)
        if active is not None:
            logger.info(f"Reusing active run {active.id} for {repository.full_name}")
            return active, False

        if not force:
            latest = await self.store.find_latest_run_for_repository(repository.id)
            if self._is_fresh(latest, now):
                logger.info(f"Reusing fresh run {latest.id} for {repository.full_name}")
                return latest, False

        run = AnalysisRun(
            repository_id=repository.id,
            status=RunStatus.QUEUED,
            run_state=RunState.QUEUED,
            progress_step=ProgressStep.BOOTSTRAP,
            lock_token=uuid.uuid4().hex,
            trigger_source=trigger_source,
            started_at=now,
            updated_at=now,
        )

        try:
            created = await self.store.create_run(run)
        except ActiveRunConflictError:
            # Another caller created the active run between our read and insert
            winner = await self.store.find_active_run_for_repository(repository.id)
            if winner is None:
                winner = await self.store.find_latest_run_for_repository(repository.id)
            if winner is None:
                raise
            logger.info(f"Run for {repository.full_name} created concurrently, using {winner.id}")
            return winner, False

        logger.info(f"Created run {created.id} for {repository.full_name} ({trigger_source.value})")
        return created, True

    def _is_fresh(self, run: AnalysisRun | None, now: datetime) -> bool:
        if run is None or run.run_state != RunState.COMPLETE or run.completed_at is None:
            return False
        return now - run.completed_at < timedelta(days=self.settings.freshness_days)

    # --- Prime ---

    async def prime_run(self, run_id: int, lock_token: str | None = None) -> AnalysisRun:
        """Attach the base metrics snapshot to a run.

        A no-op returning the current run when the run is terminal, is
        locked by a different token, or already has metrics past bootstrap.

        Args:
            run_id: Run to prime.
            lock_token: Token of the caller processing the run.

        Returns:
            The run after priming.

        Raises:
            RunNotFoundError: If the run doesn't exist.
            MetricsFetchError: If the provider can't produce a snapshot.
        """
        run = await self._get_run(run_id)
        if run.is_terminal:
            return run
        if self._locked_by_other(run, lock_token):
            logger.debug(f"Run {run_id} is locked by another caller, not priming")
            return run
        if run.metrics is not None and run.progress_step != ProgressStep.BOOTSTRAP:
            return run

        now = self._clock()
        token = run.lock_token or lock_token or uuid.uuid4().hex
        claimed = await self.store.claim_run(run_id, token, now)
        if claimed is None:
            return await self._get_run(run_id)

        repository = await self._get_repository(run)
        run = await self.store.update_run(
            run_id,
            status=RunStatus.RUNNING,
            run_state=RunState.RUNNING,
            progress_step=ProgressStep.METRICS,
            updated_at=now,
            error_code=None,
            error_message=None,
        )
        if run.is_terminal:
            return run

        if self.collector:
            self.collector.start_run(repository.full_name)

        try:
            fetched = await self.provider.fetch_metrics(repository.owner, repository.name)
        except Exception as e:
            raise MetricsFetchError(repository.owner, repository.name, e) from e

        snapshot = fetched.model_copy(update={"commit_activity": CommitActivity()})

        if snapshot.default_branch and snapshot.default_branch != repository.default_branch:
            repository = await self.store.upsert_repository(
                repository.owner, repository.name, snapshot.default_branch, now=self._clock()
            )

        run = await self.store.update_run(
            run_id,
            status=RunStatus.RUNNING,
            run_state=RunState.RUNNING,
            progress_step=ProgressStep.COMMIT_ACTIVITY,
            metrics=snapshot,
            attempt_count=0,
            next_retry_at=None,
            updated_at=self._clock(),
        )
        await self._sync_project_view(repository, run)
        return run

    # --- Process ---

    async def process_run(self, run_id: int, lock_token: str | None = None) -> None:
        """Drive a run through to finalization, or to its next scheduled retry.

        Never raises for pipeline failures: they finalize the run as
        ``failed`` instead.

        Args:
            run_id: Run to process.
            lock_token: Token of the caller processing the run.
        """
        if await self.store.find_run_by_id(run_id) is None:
            logger.warning(f"Run {run_id} not found, nothing to process")
            return

        try:
            run = await self.prime_run(run_id, lock_token)
            if run.is_terminal or self._locked_by_other(run, lock_token):
                return
            if run.metrics is None:
                raise RuntimeError("Run is missing base metrics after priming.")

            await self._resolve_commit_activity(run, lock_token)
        except MetricsFetchError as e:
            logger.error(f"Metrics fetch failed for run {run_id}: {e}")
            await self._fail(run_id, ErrorCode.METRICS_FETCH_FAILED, e)
        except Exception as e:
            logger.exception(f"Analysis run {run_id} failed: {e}")
            await self._fail(run_id, ErrorCode.ANALYSIS_FAILED, e)

    async def _resolve_commit_activity(self, run: AnalysisRun, lock_token: str | None) -> None:
        """Bounded retry loop over the commit activity dataset.

        Resumes from the persisted ``attempt_count`` and ``next_retry_at``.
        """
        repository = await self._get_repository(run)
        delays = self.settings.retry_delays
        max_attempts = len(delays)
        attempt = run.attempt_count
        snapshot = run.metrics

        while True:
            if attempt >= max_attempts:
                await self._finalize_retry_limit(run, repository, snapshot, attempt)
                return

            if run.run_state == RunState.WAITING_RETRY:
                resumed = await self._resume_waiting(run, lock_token)
                if resumed is None:
                    return
                run = resumed
                snapshot = run.metrics

            result = await self._fetch_activity(repository)
            attempt += 1
            now = self._clock()
            snapshot = snapshot.with_commit_activity(attempts=attempt, last_attempted_at=now)

            if result.status == ActivityHistoryStatus.READY:
                snapshot = snapshot.with_commit_activity(
                    state=CommitActivityState.READY,
                    error_message=None,
                    weekly=tuple(result.weeks),
                )
                await self.finalize_run(
                    run.id, RunState.COMPLETE, metrics=snapshot, attempt_count=attempt
                )
                return

            if result.status == ActivityHistoryStatus.UNAVAILABLE:
                snapshot = snapshot.with_commit_activity(
                    state=CommitActivityState.FAILED,
                    error_message=self.UNAVAILABLE_MESSAGE,
                    weekly=(),
                )
                await self.finalize_run(
                    run.id,
                    RunState.PARTIAL,
                    metrics=snapshot,
                    attempt_count=attempt,
                    error_code=ErrorCode.COMMIT_ACTIVITY_UNAVAILABLE,
                    error_message=self.UNAVAILABLE_MESSAGE,
                )
                return

            # COMPUTING or ERROR: transient
            if attempt >= max_attempts:
                await self._finalize_retry_limit(run, repository, snapshot, attempt)
                return

            delay = delays[attempt - 1]
            snapshot = snapshot.with_commit_activity(
                state=CommitActivityState.PENDING, weekly=()
            )
            run = await self.store.update_run(
                run.id,
                status=RunStatus.RUNNING,
                run_state=RunState.WAITING_RETRY,
                progress_step=ProgressStep.COMMIT_ACTIVITY,
                attempt_count=attempt,
                next_retry_at=now + timedelta(seconds=delay),
                metrics=snapshot,
                updated_at=now,
            )
            if run is None or run.is_terminal:
                return
            await self._sync_project_view(repository, run)

            logger.info(
                f"Commit activity for {repository.full_name} is {result.status.value} "
                f"(attempt {attempt}/{max_attempts}), retrying in {delay:g}s"
            )
            if self.collector:
                self.collector.record_retry(repository.full_name, attempt, delay)

            if not self.settings.inline_retries:
                return

    async def _resume_waiting(
        self, run: AnalysisRun, lock_token: str | None
    ) -> AnalysisRun | None:
        """Wait out the persisted retry delay and mark the run running again.

        Returns None when the run should not be resumed by this caller.
        """
        if run.next_retry_at is not None:
            remaining = (run.next_retry_at - self._clock()).total_seconds()
            if remaining > 0:
                if not self.settings.inline_retries:
                    return None
                await self._sleep(remaining)

        current = await self.store.find_run_by_id(run.id)
        if current is None or current.is_terminal or self._locked_by_other(current, lock_token):
            return None
        if current.run_state != RunState.WAITING_RETRY:
            return None

        return await self.store.update_run(
            run.id,
            status=RunStatus.RUNNING,
            run_state=RunState.RUNNING,
            progress_step=ProgressStep.COMMIT_ACTIVITY,
            next_retry_at=None,
            updated_at=self._clock(),
        )

    async def _fetch_activity(self, repository: RepositoryRecord) -> ActivityHistoryResult:
        """One bounded provider call; a timeout counts as still computing."""
        try:
            return await asyncio.wait_for(
                self.provider.fetch_activity_history(repository.owner, repository.name),
                timeout=self.settings.activity_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Commit activity for {repository.full_name} timed out")
            return ActivityHistoryResult(
                status=ActivityHistoryStatus.COMPUTING, message=self.TIMEOUT_MESSAGE
            )

    async def _finalize_retry_limit(
        self,
        run: AnalysisRun,
        repository: RepositoryRecord,
        snapshot: MetricsSnapshot,
        attempt: int,
    ) -> None:
        logger.info(f"Commit activity for {repository.full_name} hit the retry limit")
        snapshot = snapshot.with_commit_activity(
            state=CommitActivityState.FAILED,
            error_message=self.RETRY_LIMIT_MESSAGE,
            weekly=(),
        )
        await self.finalize_run(
            run.id,
            RunState.PARTIAL,
            metrics=snapshot,
            attempt_count=attempt,
            error_code=ErrorCode.COMMIT_ACTIVITY_RETRY_LIMIT,
            error_message=self.RETRY_LIMIT_MESSAGE,
        )

    async def _fail(self, run_id: int, code: ErrorCode, error: Exception) -> None:
        """Finalize a run as failed, starting from its latest persisted state."""
        latest = await self.store.find_run_by_id(run_id)
        if latest is None or latest.is_terminal:
            return

        message = (str(error) or type(error).__name__)[: self.settings.error_message_limit]
        try:
            await self.finalize_run(
                run_id,
                RunState.FAILED,
                metrics=latest.metrics,
                attempt_count=latest.attempt_count,
                error_code=code,
                error_message=message,
            )
        except Exception as finalize_error:
            logger.error(f"Failed to finalize failed run {run_id}: {finalize_error}")

    # --- Finalize ---

    async def finalize_run(
        self,
        run_id: int,
        state: RunState,
        metrics: MetricsSnapshot | None = None,
        attempt_count: int | None = None,
        error_code: ErrorCode | None = None,
        error_message: str | None = None,
    ) -> AnalysisRun | None:
        """Move a run to a terminal state.

        Idempotent: finalizing a run that is already terminal changes
        nothing. Read model sync and cache invalidation are best effort.

        Args:
            run_id: Run to finalize.
            state: COMPLETE, PARTIAL or FAILED.
            metrics: Final snapshot; defaults to the persisted one.
            attempt_count: Final attempt count; defaults to the persisted one.
            error_code: Set for partial and failed runs.
            error_message: Human-readable detail for ``error_code``.

        Returns:
            The run as persisted, or None if it doesn't exist.
        """
        if not state.is_terminal:
            raise ValueError(f"Cannot finalize a run as {state.value}")

        current = await self.store.find_run_by_id(run_id)
        if current is None or current.is_terminal:
            return current

        now = self._clock()
        final = await self.store.update_run(
            run_id,
            status=RunStatus(state.value),
            run_state=state,
            progress_step=ProgressStep.FINALIZE,
            completed_at=now,
            updated_at=now,
            metrics=metrics if metrics is not None else current.metrics,
            attempt_count=attempt_count if attempt_count is not None else current.attempt_count,
            next_retry_at=None,
            locked_at=None,
            error_code=error_code,
            error_message=error_message,
        )
        if final is None:
            return None

        repository = await self.store.find_repository_by_id(final.repository_id)
        if repository is None:
            return final

        logger.info(
            f"Run {run_id} for {repository.full_name} finished {state.value}"
            + (f" ({error_code.value})" if error_code else "")
        )
        await self._sync_project_view(repository, final, analyzed_at=now)
        self._invalidate_caches(repository)
        self._record_outcome(repository, final)
        return final

    async def _sync_project_view(
        self,
        repository: RepositoryRecord,
        run: AnalysisRun,
        analyzed_at: datetime | None = None,
    ) -> None:
        try:
            await self.store.upsert_project_view(
                ProjectView(
                    repository_id=repository.id,
                    full_name=repository.full_name,
                    latest_run_id=run.id,
                    run_state=run.run_state,
                    progress_step=run.progress_step,
                    snapshot=run.metrics,
                    analyzed_at=analyzed_at,
                )
            )
        except Exception as e:
            logger.warning(f"Project view sync failed for run {run.id}: {e}")

    def _invalidate_caches(self, repository: RepositoryRecord) -> None:
        for invalidate in self._cache_invalidators:
            try:
                invalidate(repository.owner, repository.name)
            except Exception as e:
                logger.warning(f"Cache invalidation failed for {repository.full_name}: {e}")

    def _record_outcome(self, repository: RepositoryRecord, run: AnalysisRun) -> None:
        if self.collector is None:
            return
        try:
            self.collector.complete_run(
                repository.full_name,
                run.status,
                attempts=run.attempt_count,
                error_code=run.error_code,
                message=run.error_message,
            )
        except Exception as e:
            logger.warning(f"Recording run outcome failed for {repository.full_name}: {e}")

    # --- Fallback scan and status ---

    async def run_fallback_scan(self, limit: int = 10) -> int:
        """Resume runs whose retry time has passed, then runs that stalled.

        A queued or running run that hasn't been updated for
        ``stale_run_seconds`` belonged to a process that died mid-run. It is
        picked up with its own lock token, like a due retry.

        Args:
            limit: Maximum number of runs to resume.

        Returns:
            Number of runs processed.
        """
        now = self._clock()
        due = await self.store.find_due_retry_runs(now, limit)
        stale_before = now - timedelta(seconds=self.settings.stale_run_seconds)
        stale = await self.store.find_stale_runs(stale_before, limit - len(due))
        for run in stale:
            logger.warning(
                f"Run {run.id} stalled in {run.run_state.value} since {run.updated_at}, resuming"
            )

        runs = [*due, *stale]
        for run in runs:
            await self.process_run(run.id, run.lock_token or str(run.id))
        if runs:
            logger.info(f"Fallback scan resumed {len(runs)} run(s)")
        return len(runs)

    async def get_status(self, owner: str, project: str) -> AnalysisStatusView:
        """What a poller sees for ``owner/project``."""
        full_name = make_full_name(owner, project)
        repository = await self.store.find_repository_by_slug(full_name)
        if repository is None:
            owner_part, name_part = full_name.split("/", 1)
            return AnalysisStatusView(
                repository=RepositoryRecord(owner=owner_part, name=name_part, full_name=full_name),
                latest_run=None,
                view_ready=False,
            )

        latest = await self.store.find_latest_run_for_repository(repository.id)
        view = await self.store.find_project_view(full_name)
        return AnalysisStatusView(
            repository=repository,
            latest_run=latest,
            view_ready=view is not None and view.run_state in VIEW_READY_STATES,
        )

    async def analyze(
        self,
        owner: str,
        project: str,
        force: bool = False,
        trigger_source: TriggerSource = TriggerSource.MANUAL_REFRESH,
    ) -> AnalysisRun:
        """Start or reuse a run and process it as far as it can go now.

        Returns:
            The run as persisted afterwards.
        """
        run, _ = await self.start_or_reuse_run(owner, project, force, trigger_source)
        if not run.is_terminal:
            await self.process_run(run.id, run.lock_token)
        return await self._get_run(run.id)

    # --- Helpers ---

    @staticmethod
    def _locked_by_other(run: AnalysisRun, lock_token: str | None) -> bool:
        return bool(lock_token and run.lock_token and run.lock_token != lock_token)

    async def _get_run(self, run_id: int) -> AnalysisRun:
        run = await self.store.find_run_by_id(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def _get_repository(self, run: AnalysisRun) -> RepositoryRecord:
        repository = await self.store.find_repository_by_id(run.repository_id)
        if repository is None:
            raise LookupError(f"Repository {run.repository_id} not found for run {run.id}")
        return repository
