"""Tests for the run stores."""

from __future__ import annotations

import asyncio
import json
import multiprocessing
from datetime import timedelta

import pytest

from conftest import NOW, make_snapshot
from deppulse.models.schemas import (
    AnalysisRun,
    ProgressStep,
    ProjectView,
    RunState,
    RunStatus,
)
from deppulse.storage import ActiveRunConflictError, InMemoryStore, JsonFileStore


def new_run(repository_id: int, **overrides) -> AnalysisRun:
    values = dict(
        repository_id=repository_id,
        lock_token="token-a",
        started_at=NOW,
        updated_at=NOW,
    )
    values.update(overrides)
    return AnalysisRun(**values)


def _create_run_in_child(path, repository_id, barrier, results):
    async def runner():
        store = JsonFileStore(path)
        barrier.wait()
        try:
            run = await store.create_run(new_run(repository_id))
        except ActiveRunConflictError:
            return None
        return run.id

    results.put(asyncio.run(runner()))


def _upsert_in_child(path, name, barrier, results):
    async def runner():
        store = JsonFileStore(path)
        barrier.wait()
        record = await store.upsert_repository("octo", name, now=NOW)
        return record.id

    results.put(asyncio.run(runner()))


def run_in_processes(target, args_list):
    """Start one forked process per args tuple behind a barrier and collect results."""
    ctx = multiprocessing.get_context("fork")
    barrier = ctx.Barrier(len(args_list))
    results = ctx.Queue()
    workers = [ctx.Process(target=target, args=(*args, barrier, results)) for args in args_list]
    for worker in workers:
        worker.start()
    collected = [results.get(timeout=30) for _ in workers]
    for worker in workers:
        worker.join(timeout=30)
        assert worker.exitcode == 0
    return collected


requires_fork = pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(), reason="needs the fork start method"
)

@pytest.fixture(params=["memory", "json"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStore()
    return JsonFileStore(tmp_path / "store.json")


class TestRepositories:
    def test_upsert_normalizes_and_is_stable(self, any_store):
        async def runner():
            first = await any_store.upsert_repository("Octo", " Widgets ", now=NOW)
            second = await any_store.upsert_repository("octo", "widgets", "main", now=NOW)
            found = await any_store.find_repository_by_slug("OCTO/WIDGETS")
            return first, second, found

        first, second, found = asyncio.run(runner())

        assert first.full_name == "octo/widgets"
        assert second.id == first.id
        assert second.default_branch == "main"
        assert found == second

    def test_unknown_repository(self, any_store):
        assert asyncio.run(any_store.find_repository_by_slug("a/b")) is None
        assert asyncio.run(any_store.find_repository_by_id(42)) is None


class TestRuns:
    def test_single_active_run_per_repository(self, any_store):
        async def runner():
            repository = await any_store.upsert_repository("octo", "widgets", now=NOW)
            await any_store.create_run(new_run(repository.id))
            await any_store.create_run(new_run(repository.id, lock_token="token-b"))

        with pytest.raises(ActiveRunConflictError):
            asyncio.run(runner())

    def test_new_run_allowed_after_terminal(self, any_store):
        async def runner():
            repository = await any_store.upsert_repository("octo", "widgets", now=NOW)
            first = await any_store.create_run(new_run(repository.id))
            await any_store.update_run(
                first.id, status=RunStatus.COMPLETE, run_state=RunState.COMPLETE
            )
            second = await any_store.create_run(
                new_run(repository.id, started_at=NOW + timedelta(seconds=5))
            )
            latest = await any_store.find_latest_run_for_repository(repository.id)
            return first, second, latest

        first, second, latest = asyncio.run(runner())

        assert second.id != first.id
        assert latest.id == second.id

    def test_terminal_runs_are_immutable(self, any_store):
        async def runner():
            repository = await any_store.upsert_repository("octo", "widgets", now=NOW)
            run = await any_store.create_run(new_run(repository.id))
            await any_store.update_run(
                run.id, status=RunStatus.FAILED, run_state=RunState.FAILED, error_message="boom"
            )
            return await any_store.update_run(
                run.id, status=RunStatus.RUNNING, run_state=RunState.RUNNING, error_message=None
            )

        run = asyncio.run(runner())

        assert run.run_state == RunState.FAILED
        assert run.error_message == "boom"

    def test_update_round_trips_snapshot(self, any_store):
        async def runner():
            repository = await any_store.upsert_repository("octo", "widgets", now=NOW)
            run = await any_store.create_run(new_run(repository.id))
            await any_store.update_run(
                run.id, metrics=make_snapshot(), progress_step=ProgressStep.COMMIT_ACTIVITY
            )
            return await any_store.find_run_by_id(run.id)

        run = asyncio.run(runner())

        assert run.metrics == make_snapshot()
        assert run.progress_step == ProgressStep.COMMIT_ACTIVITY

    def test_update_rejects_unknown_fields(self, any_store):
        with pytest.raises(ValueError):
            asyncio.run(any_store.update_run(1, colour="blue"))

    def test_update_unknown_run(self, any_store):
        assert asyncio.run(any_store.update_run(99, attempt_count=1)) is None

    def test_claim_is_compare_and_swap(self, any_store):
        async def runner():
            repository = await any_store.upsert_repository("octo", "widgets", now=NOW)
            run = await any_store.create_run(new_run(repository.id, lock_token=None))
            mine = await any_store.claim_run(run.id, "mine", NOW)
            theirs = await any_store.claim_run(run.id, "theirs", NOW)
            again = await any_store.claim_run(run.id, "mine", NOW + timedelta(minutes=1))
            return mine, theirs, again

        mine, theirs, again = asyncio.run(runner())

        assert mine.lock_token == "mine"
        assert mine.locked_at == NOW
        assert theirs is None
        assert again.locked_at == NOW

    def test_due_retry_runs_are_ordered_and_limited(self, any_store):
        async def runner():
            ids = []
            for i, delay in enumerate([30, 10, 20, 500]):
                repository = await any_store.upsert_repository("octo", f"repo{i}", now=NOW)
                run = await any_store.create_run(
                    new_run(
                        repository.id,
                        status=RunStatus.RUNNING,
                        run_state=RunState.WAITING_RETRY,
                        next_retry_at=NOW + timedelta(seconds=delay),
                    )
                )
                ids.append(run.id)
            due = await any_store.find_due_retry_runs(NOW + timedelta(seconds=60), limit=2)
            return ids, due

        ids, due = asyncio.run(runner())

        assert [run.id for run in due] == [ids[1], ids[2]]

    def test_stale_runs_are_queued_or_running_and_old(self, any_store):
        cases = [
            (RunStatus.QUEUED, RunState.QUEUED, 900),
            (RunStatus.RUNNING, RunState.RUNNING, 700),
            (RunStatus.RUNNING, RunState.WAITING_RETRY, 900),
            (RunStatus.RUNNING, RunState.RUNNING, 60),
        ]

        async def runner():
            ids = []
            for i, (status, state, age) in enumerate(cases):
                repository = await any_store.upsert_repository("octo", f"repo{i}", now=NOW)
                run = await any_store.create_run(
                    new_run(
                        repository.id,
                        status=status,
                        run_state=state,
                        updated_at=NOW - timedelta(seconds=age),
                    )
                )
                ids.append(run.id)
            stale = await any_store.find_stale_runs(NOW - timedelta(seconds=600), limit=10)
            return ids, stale

        ids, stale = asyncio.run(runner())

        assert [run.id for run in stale] == [ids[0], ids[1]]


class TestProjectViews:
    def test_lookup_is_case_insensitive(self, any_store):
        view = ProjectView(
            repository_id=1,
            full_name="Octo/Widgets",
            latest_run_id=1,
            run_state=RunState.COMPLETE,
            progress_step=ProgressStep.FINALIZE,
        )

        asyncio.run(any_store.upsert_project_view(view))
        found = asyncio.run(any_store.find_project_view("octo/widgets"))

        assert found.full_name == "octo/widgets"
        assert found.run_state == RunState.COMPLETE


class TestJsonFileStore:
    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "data" / "store.json"

        async def write():
            store = JsonFileStore(path)
            repository = await store.upsert_repository("octo", "widgets", now=NOW)
            return await store.create_run(new_run(repository.id, metrics=make_snapshot()))

        created = asyncio.run(write())
        reopened = JsonFileStore(path)
        run = asyncio.run(reopened.find_run_by_id(created.id))

        assert run == created
        assert json.loads(path.read_text())["version"] == 1

    def test_ids_continue_after_reopen(self, tmp_path):
        path = tmp_path / "store.json"
        asyncio.run(JsonFileStore(path).upsert_repository("octo", "one", now=NOW))
        second = asyncio.run(JsonFileStore(path).upsert_repository("octo", "two", now=NOW))

        assert second.id == 2

    def test_reads_do_not_create_file(self, tmp_path):
        path = tmp_path / "store.json"
        asyncio.run(JsonFileStore(path).find_repository_by_slug("octo/widgets"))

        assert not path.exists()

    @requires_fork
    def test_processes_agree_on_one_active_run(self, tmp_path):
        path = tmp_path / "store.json"
        repository = asyncio.run(JsonFileStore(path).upsert_repository("octo", "widgets", now=NOW))

        ids = run_in_processes(_create_run_in_child, [(path, repository.id)] * 4)

        assert [run_id for run_id in ids if run_id is not None] == [1]
        assert len(json.loads(path.read_text())["runs"]) == 1

    @requires_fork
    def test_processes_never_reuse_ids(self, tmp_path):
        path = tmp_path / "store.json"

        ids = run_in_processes(_upsert_in_child, [(path, f"repo{i}") for i in range(4)])

        assert sorted(ids) == [1, 2, 3, 4]
        assert len(json.loads(path.read_text())["repositories"]) == 4
