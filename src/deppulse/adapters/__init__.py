"""Code-hosting metrics providers."""

from deppulse.adapters.base import (
    InvalidRepositorySlugError,
    MetricsProvider,
    ProviderError,
    RepositoryNotFoundError,
    parse_repo_slug,
)
from deppulse.adapters.github import GitHubProvider

__all__ = [
    "GitHubProvider",
    "InvalidRepositorySlugError",
    "MetricsProvider",
    "ProviderError",
    "RepositoryNotFoundError",
    "parse_repo_slug",
]
