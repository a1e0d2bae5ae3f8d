"""JSON file store."""

import json
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from filelock import FileLock

from deppulse.models.schemas import AnalysisRun, ProjectView, RepositoryRecord
from deppulse.storage.memory import InMemoryStore

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class JsonFileStore(InMemoryStore):
    """Stores everything in a single JSON document.

    The file is re-read at the start of every operation and rewritten
    after every write, so a CLI command and the retry daemon can share it.
    Every operation holds a sidecar ``.lock`` file for its whole
    read-modify-write, so concurrent processes see each other's changes.
    Writes go to a temporary file that is renamed over the original.
    """

    def __init__(self, path: Path, lock_timeout: float = 30.0) -> None:
        super().__init__()
        self.path = Path(path)
        lock_path = self.path.with_name(f"{self.path.name}.lock")
        self._file_lock = FileLock(lock_path, timeout=lock_timeout)

    @asynccontextmanager
    async def _transaction(self, write: bool = False) -> AsyncIterator[None]:
        async with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._file_lock:
                self._load()
                yield
                if write:
                    self._save()

    def _load(self) -> None:
        if not self.path.exists():
            return

        with open(self.path) as f:
            data = json.load(f)

        self._repositories = {
            record.id: record
            for record in (RepositoryRecord.model_validate(r) for r in data.get("repositories", []))
        }
        self._runs = {
            run.id: run for run in (AnalysisRun.model_validate(r) for r in data.get("runs", []))
        }
        self._views = {
            view.full_name: view
            for view in (ProjectView.model_validate(v) for v in data.get("project_views", []))
        }
        self._next_repository_id = data.get("next_repository_id", len(self._repositories) + 1)
        self._next_run_id = data.get("next_run_id", len(self._runs) + 1)

    def _save(self) -> None:
        data: dict[str, Any] = {
            "version": FORMAT_VERSION,
            "next_repository_id": self._next_repository_id,
            "next_run_id": self._next_run_id,
            "repositories": [r.model_dump(mode="json") for r in self._repositories.values()],
            "runs": [r.model_dump(mode="json") for r in self._runs.values()],
            "project_views": [v.model_dump(mode="json") for v in self._views.values()],
        }

        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".store-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved {len(self._runs)} runs to {self.path}")
