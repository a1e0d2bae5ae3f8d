"""GitHub metrics provider."""

import logging
import statistics
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from deppulse.adapters.base import MetricsProvider, ProviderError, RepositoryNotFoundError
from deppulse.models.schemas import (
    ActivityHistoryResult,
    ActivityHistoryStatus,
    CommitActivityWeek,
    MetricsSnapshot,
    ReleaseInfo,
)
from deppulse.settings import GitHubSettings

logger = logging.getLogger(__name__)

MERGED_PRS_LIMIT = 100
RECENT_ISSUES_LIMIT = 100
RELEASES_LIMIT = 20
README_MAX_CHARS = 50_000

# Statuses meaning the commit activity dataset will never be served for this repo
UNAVAILABLE_STATUSES = {403, 404}

REPO_METRICS_QUERY = f"""
query RepoMetrics($owner: String!, $repo: String!, $since30: GitTimestamp!, $since90: GitTimestamp!, $since365: GitTimestamp!) {{
  rateLimit {{ limit remaining cost resetAt }}
  repository(owner: $owner, name: $repo) {{
    nameWithOwner
    description
    stargazerCount
    forkCount
    url
    isArchived
    createdAt
    licenseInfo {{ spdxId }}
    primaryLanguage {{ name }}
    owner {{ avatarUrl }}
    defaultBranchRef {{
      name
      target {{
        ... on Commit {{
          latestCommit: history(first: 1) {{ nodes {{ committedDate }} }}
          commits30: history(first: 1, since: $since30) {{ totalCount }}
          commits90: history(first: 1, since: $since90) {{ totalCount }}
          commits365: history(first: 1, since: $since365) {{ totalCount }}
        }}
      }}
    }}
    latestRelease {{ publishedAt }}
    releases(first: {RELEASES_LIMIT}, orderBy: {{field: CREATED_AT, direction: DESC}}) {{
      nodes {{ tagName name publishedAt }}
    }}
    openIssues: issues(states: OPEN) {{ totalCount }}
    closedIssues: issues(states: CLOSED) {{ totalCount }}
    openPRs: pullRequests(states: OPEN) {{ totalCount }}
    mergedPRsRecent: pullRequests(states: MERGED, first: {MERGED_PRS_LIMIT}, orderBy: {{field: CREATED_AT, direction: DESC}}) {{
      nodes {{ mergedAt }}
    }}
    recentIssues: issues(first: {RECENT_ISSUES_LIMIT}, orderBy: {{field: CREATED_AT, direction: DESC}}) {{
      nodes {{ createdAt closedAt state }}
    }}
    readmeMd: object(expression: "HEAD:README.md") {{ ... on Blob {{ text }} }}
    readmeLower: object(expression: "HEAD:readme.md") {{ ... on Blob {{ text }} }}
    readmeNoExt: object(expression: "HEAD:README") {{ ... on Blob {{ text }} }}
  }}
}}
"""


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GitHubProvider(MetricsProvider):
    """Fetches repository metrics from the GitHub GraphQL and REST APIs.

    Uses a token from settings (``GITHUB_TOKEN``) for higher rate limits.
    """

    def __init__(
        self,
        settings: GitHubSettings | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the provider.

        Args:
            settings: GitHub settings. Defaults are used if not provided.
            client: Optional httpx client. If not provided, one is created
                and closed by ``close()``.
            clock: Source of the current time for the windowed counters.
        """
        self._settings = settings or GitHubSettings()
        self._client = client or httpx.AsyncClient(timeout=self._settings.request_timeout)
        self._owns_client = client is None
        self._clock = clock

        # Rate limit tracking
        self.rate_limit_remaining: int = 5000
        self.rate_limit_total: int = 5000
        self.rate_limit_reset: datetime | None = None

    @property
    def name(self) -> str:
        return "github"

    async def __aenter__(self) -> "GitHubProvider":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        """Get headers for GitHub API requests."""
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "deppulse",
        }
        if self._settings.token:
            headers["Authorization"] = f"Bearer {self._settings.token}"
        return headers

    def _update_rate_limits(self, response: httpx.Response) -> None:
        """Extract and store rate limit info from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        limit = response.headers.get("X-RateLimit-Limit")
        reset = response.headers.get("X-RateLimit-Reset")

        if remaining is not None:
            self.rate_limit_remaining = int(remaining)
        if limit is not None:
            self.rate_limit_total = int(limit)
        if reset is not None:
            self.rate_limit_reset = datetime.fromtimestamp(int(reset), tz=timezone.utc)

    def _update_graphql_rate_limit(self, rate: dict[str, Any] | None) -> None:
        if not rate:
            return
        self.rate_limit_remaining = rate.get("remaining", self.rate_limit_remaining)
        self.rate_limit_total = rate.get("limit", self.rate_limit_total)
        self.rate_limit_reset = _parse_datetime(rate.get("resetAt")) or self.rate_limit_reset

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Execute a GraphQL query and return its ``data`` payload.

        Raises:
            RepositoryNotFoundError: If GitHub reports the repository missing.
            ProviderError: On transport, HTTP or GraphQL errors.
        """
        started = time.monotonic()
        try:
            response = await self._client.post(
                self._settings.graphql_url,
                json={"query": query, "variables": variables},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.debug(f"GraphQL request failed after {time.monotonic() - started:.2f}s: {e}")
            raise ProviderError(f"GitHub request failed: {e}") from e

        logger.debug(
            f"GraphQL {variables.get('owner')}/{variables.get('repo')} "
            f"-> {response.status_code} in {time.monotonic() - started:.2f}s"
        )
        self._update_rate_limits(response)

        if response.status_code >= 400:
            raise ProviderError(
                f"GitHub GraphQL returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        payload = response.json()
        errors = payload.get("errors") or []
        if any(error.get("type") == "NOT_FOUND" for error in errors):
            raise RepositoryNotFoundError(variables.get("owner", ""), variables.get("repo", ""))
        if errors and not payload.get("data"):
            raise ProviderError(str(errors))

        data = payload.get("data") or {}
        self._update_graphql_rate_limit(data.get("rateLimit"))
        return data

    async def fetch_metrics(self, owner: str, project: str) -> MetricsSnapshot:
        """Fetch the metrics snapshot for a repository.

        Args:
            owner: Repository owner.
            project: Repository name.

        Returns:
            MetricsSnapshot without commit activity.
        """
        now = self._clock()
        data = await self._graphql(
            REPO_METRICS_QUERY,
            {
                "owner": owner,
                "repo": project,
                "since30": (now - timedelta(days=30)).isoformat(),
                "since90": (now - timedelta(days=90)).isoformat(),
                "since365": (now - timedelta(days=365)).isoformat(),
            },
        )

        repo = data.get("repository")
        if repo is None:
            raise RepositoryNotFoundError(owner, project)

        return self._build_snapshot(repo, now)

    def _build_snapshot(self, r: dict[str, Any], now: datetime) -> MetricsSnapshot:
        """Turn the GraphQL repository payload into a snapshot."""
        branch = r.get("defaultBranchRef") or {}
        target = branch.get("target") or {}
        latest_commits = (target.get("latestCommit") or {}).get("nodes") or []

        def history_total(alias: str) -> int:
            return (target.get(alias) or {}).get("totalCount", 0)

        releases = tuple(
            ReleaseInfo(
                tag_name=node["tagName"],
                name=node.get("name"),
                published_at=_parse_datetime(node["publishedAt"]),
            )
            for node in (r.get("releases") or {}).get("nodes", [])
            if node and node.get("publishedAt")
        )

        open_issues = (r.get("openIssues") or {}).get("totalCount", 0)
        closed_issues = (r.get("closedIssues") or {}).get("totalCount", 0)
        total_issues = open_issues + closed_issues
        open_issues_percent = (
            round(open_issues / total_issues * 100, 1) if total_issues > 0 else None
        )

        # Recent merged PRs (capped at one page)
        since_90 = now - timedelta(days=90)
        merged_dates = [
            _parse_datetime(node.get("mergedAt"))
            for node in (r.get("mergedPRsRecent") or {}).get("nodes", [])
            if node and node.get("mergedAt")
        ]
        last_merged_pr_at = max(merged_dates) if merged_dates else None
        merged_last_90 = sum(1 for d in merged_dates if d >= since_90)

        # Issue resolution from the most recent page of issues
        one_year_ago = now - timedelta(days=365)
        issues_created_last_year = 0
        resolution_days: list[int] = []
        closed_at_dates: list[datetime] = []
        for issue in (r.get("recentIssues") or {}).get("nodes", []):
            created_at = _parse_datetime(issue.get("createdAt"))
            if created_at is None:
                continue
            if created_at >= one_year_ago:
                issues_created_last_year += 1
            closed_at = _parse_datetime(issue.get("closedAt"))
            if issue.get("state") == "CLOSED" and closed_at is not None:
                closed_at_dates.append(closed_at)
                if closed_at >= one_year_ago:
                    resolution_days.append((closed_at - created_at).days)

        readme = None
        for alias in ("readmeMd", "readmeLower", "readmeNoExt"):
            blob = r.get(alias)
            if blob and blob.get("text") is not None:
                readme = blob["text"][:README_MAX_CHARS]
                break

        return MetricsSnapshot(
            full_name=r.get("nameWithOwner"),
            description=r.get("description"),
            stars=r.get("stargazerCount", 0),
            forks=r.get("forkCount", 0),
            avatar_url=(r.get("owner") or {}).get("avatarUrl"),
            html_url=r.get("url"),
            default_branch=branch.get("name"),
            license=(r.get("licenseInfo") or {}).get("spdxId"),
            language=(r.get("primaryLanguage") or {}).get("name"),
            is_archived=r.get("isArchived", False),
            repository_created_at=_parse_datetime(r.get("createdAt")),
            last_commit_at=_parse_datetime(latest_commits[0].get("committedDate")) if latest_commits else None,
            last_release_at=_parse_datetime((r.get("latestRelease") or {}).get("publishedAt")),
            last_merged_pr_at=last_merged_pr_at,
            last_closed_issue_at=max(closed_at_dates) if closed_at_dates else None,
            open_issues_percent=open_issues_percent,
            open_issues_count=open_issues,
            closed_issues_count=closed_issues,
            median_issue_resolution_days=statistics.median(resolution_days) if resolution_days else None,
            open_prs_count=(r.get("openPRs") or {}).get("totalCount", 0),
            commits_last_30_days=history_total("commits30"),
            commits_last_90_days=history_total("commits90"),
            commits_last_365_days=history_total("commits365"),
            merged_prs_last_90_days=merged_last_90,
            issues_created_last_year=issues_created_last_year,
            releases=releases,
            readme_content=readme,
        )

    async def fetch_activity_history(self, owner: str, project: str) -> ActivityHistoryResult:
        """Fetch weekly commit activity for the last year.

        GitHub answers 202 while it computes the statistics in the
        background; that is reported as COMPUTING so the caller retries.
        """
        url = f"{self._settings.api_url.rstrip('/')}/repos/{owner}/{project}/stats/commit_activity"
        started = time.monotonic()

        try:
            response = await self._client.get(url, headers=self._headers())
        except httpx.TimeoutException:
            logger.debug(f"Commit activity {owner}/{project} timed out")
            return ActivityHistoryResult(status=ActivityHistoryStatus.ERROR, message="Request timed out")
        except httpx.HTTPError as e:
            logger.debug(f"Commit activity {owner}/{project} failed: {e}")
            return ActivityHistoryResult(status=ActivityHistoryStatus.ERROR, message=str(e))

        logger.debug(
            f"Commit activity {owner}/{project} -> {response.status_code} "
            f"in {time.monotonic() - started:.2f}s"
        )
        self._update_rate_limits(response)

        if response.status_code == 202:
            return ActivityHistoryResult(status=ActivityHistoryStatus.COMPUTING)
        if response.status_code in UNAVAILABLE_STATUSES:
            return ActivityHistoryResult(
                status=ActivityHistoryStatus.UNAVAILABLE,
                message=f"HTTP {response.status_code}",
            )
        if response.status_code != 200:
            return ActivityHistoryResult(
                status=ActivityHistoryStatus.ERROR,
                message=f"HTTP {response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError:
            return ActivityHistoryResult(status=ActivityHistoryStatus.ERROR, message="Invalid JSON")

        weeks = [week for week in (self._parse_week(item) for item in payload or []) if week]
        return ActivityHistoryResult(status=ActivityHistoryStatus.READY, weeks=weeks)

    @staticmethod
    def _parse_week(item: Any) -> CommitActivityWeek | None:
        """Parse one ``{week, total, days}`` entry, skipping malformed ones."""
        if not isinstance(item, dict):
            return None
        week, total, days = item.get("week"), item.get("total"), item.get("days")
        if not isinstance(week, int) or not isinstance(total, int):
            return None
        if not isinstance(days, list) or len(days) != 7 or not all(isinstance(d, int) for d in days):
            return None
        return CommitActivityWeek(
            week_start=datetime.fromtimestamp(week, tz=timezone.utc),
            total_commits=total,
            daily_breakdown=tuple(days),
        )
