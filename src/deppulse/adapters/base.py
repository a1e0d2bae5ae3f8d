"""Abstract base class for metrics providers."""

import re
from abc import ABC, abstractmethod

from deppulse.models.schemas import ActivityHistoryResult, MetricsSnapshot


class MetricsProvider(ABC):
    """Base class for code-hosting metrics providers.

    A provider turns one repository into a metrics snapshot plus a weekly
    commit activity dataset that the host may still be computing.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name used in logs."""
        ...

    @abstractmethod
    async def fetch_metrics(self, owner: str, project: str) -> MetricsSnapshot:
        """Fetch the base metrics snapshot for a repository.

        Args:
            owner: Repository owner.
            project: Repository name.

        Returns:
            MetricsSnapshot with every field except ``commit_activity``.

        Raises:
            RepositoryNotFoundError: If the repository doesn't exist.
            ProviderError: On any other upstream failure.
        """
        ...

    @abstractmethod
    async def fetch_activity_history(self, owner: str, project: str) -> ActivityHistoryResult:
        """Fetch the weekly commit activity dataset.

        Never raises for upstream failures: the outcome is reported as
        READY, COMPUTING, UNAVAILABLE or ERROR.

        Args:
            owner: Repository owner.
            project: Repository name.

        Returns:
            ActivityHistoryResult with weeks when READY.
        """
        ...

    async def close(self) -> None:
        """Release any held connections."""
        return None


SLUG_PATTERNS = [
    # https://github.com/owner/repo, with optional .git or trailing path
    r"^(?:https?://)?(?:www\.)?github\.com/([^/\s]+)/([^/\s]+?)(?:\.git)?(?:/.*)?$",
    # git@github.com:owner/repo.git
    r"^git@github\.com:([^/\s]+)/([^/\s]+?)(?:\.git)?$",
    # owner/repo
    r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$",
]


def parse_repo_slug(value: str) -> tuple[str, str]:
    """Parse ``owner/repo`` or a GitHub URL into a normalized pair.

    Args:
        value: Slug or repository URL.

    Returns:
        Lowercased ``(owner, repo)``.

    Raises:
        InvalidRepositorySlugError: If the value can't be parsed.
    """
    text = (value or "").strip()
    for pattern in SLUG_PATTERNS:
        match = re.match(pattern, text)
        if match:
            owner, repo = match.group(1), match.group(2).rstrip("/")
            if owner in (".", "..") or repo in (".", ".."):
                break
            return normalize_slug_part(owner), normalize_slug_part(repo)
    raise InvalidRepositorySlugError(value)


def normalize_slug_part(value: str) -> str:
    return value.strip().lower()


def make_full_name(owner: str, project: str) -> str:
    return f"{normalize_slug_part(owner)}/{normalize_slug_part(project)}"


class RepositoryNotFoundError(Exception):
    """Raised when a repository cannot be found."""

    def __init__(self, owner: str, name: str) -> None:
        self.owner = owner
        self.name = name
        super().__init__(f"Repository {owner}/{name} not found")


class ProviderError(Exception):
    """Raised when the upstream provider fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class InvalidRepositorySlugError(ValueError):
    """Raised when an owner/repository pair can't be parsed."""

    def __init__(self, value: str) -> None:
        self.value = value
        super().__init__(f"Invalid repository: {value!r} (expected owner/repo)")
