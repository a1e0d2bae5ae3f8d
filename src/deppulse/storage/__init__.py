"""Persistence for repositories, analysis runs and project views."""

from deppulse.storage.base import ActiveRunConflictError, AnalysisStore
from deppulse.storage.json_store import JsonFileStore
from deppulse.storage.memory import InMemoryStore

__all__ = ["ActiveRunConflictError", "AnalysisStore", "InMemoryStore", "JsonFileStore"]
