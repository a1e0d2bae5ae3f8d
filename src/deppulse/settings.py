"""Application configuration."""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, PositiveInt, field_validator

DEFAULT_RETRY_DELAYS = (1.0, 2.0, 3.0, 5.0, 8.0, 13.0)
DEFAULT_DATA_DIR = Path.home() / ".deppulse"


class GitHubSettings(BaseModel):
    """Configuration for the GitHub API."""

    token: str | None = Field(default=None, description="Personal access token or GitHub Actions token.")
    api_url: str = Field(default="https://api.github.com")
    graphql_url: str = Field(default="https://api.github.com/graphql")
    request_timeout: float = Field(default=30.0, ge=1.0, description="Timeout for a single HTTP request in seconds.")


class AnalysisSettings(BaseModel):
    """Tunable parameters for the analysis pipeline."""

    retry_delays: tuple[float, ...] = Field(
        default=DEFAULT_RETRY_DELAYS,
        description="Delay in seconds before each commit activity retry. Its length is the attempt limit.",
    )
    activity_timeout: float = Field(default=10.0, gt=0, description="Timeout for one commit activity fetch in seconds.")
    freshness_days: PositiveInt = Field(default=7, description="A complete run younger than this is reused.")
    inline_retries: bool = Field(
        default=True,
        description="Sleep between retries inside the run's task instead of leaving them to the fallback scan.",
    )
    error_message_limit: PositiveInt = Field(default=500, description="Stored error messages are truncated to this length.")
    stale_run_seconds: float = Field(
        default=600.0,
        gt=0,
        description="A queued or running run untouched for this long is resumed by the fallback scan.",
    )

    @field_validator("retry_delays")
    @classmethod
    def _validate_delays(cls, value: tuple[float, ...]) -> tuple[float, ...]:
        if not value:
            raise ValueError("at least one retry delay is required")
        if any(delay < 0 for delay in value):
            raise ValueError("retry delays must not be negative")
        return value

    @property
    def max_attempts(self) -> int:
        return len(self.retry_delays)


class StorageSettings(BaseModel):
    """Where runs and repositories are stored."""

    data_dir: Path = Field(default=DEFAULT_DATA_DIR)

    @property
    def store_path(self) -> Path:
        return self.data_dir / "store.json"

    @property
    def metrics_path(self) -> Path:
        return self.data_dir / "metrics.json"


class AppSettings(BaseModel):
    """Root configuration container."""

    github: GitHubSettings = Field(default_factory=GitHubSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None, overrides: dict[str, Any] | None = None) -> "AppSettings":
        """Construct settings from environment variables.

        Args:
            env: Mapping to read instead of ``os.environ``.
            overrides: Values that win over the environment, keyed like
                ``github_token`` or ``retry_delays``.

        Raises:
            ValueError: If a variable holds an invalid value.
        """
        env = os.environ if env is None else env
        overrides = overrides or {}

        github = GitHubSettings(
            token=overrides.get("github_token") or env.get("GITHUB_TOKEN") or env.get("GH_TOKEN"),
            api_url=overrides.get("github_api_url") or env.get("GITHUB_API_URL") or "https://api.github.com",
            graphql_url=overrides.get("github_graphql_url") or env.get("GITHUB_GRAPHQL_URL") or "https://api.github.com/graphql",
            request_timeout=float(overrides.get("github_request_timeout") or env.get("GITHUB_REQUEST_TIMEOUT", 30.0)),
        )

        retry_delays = overrides.get("retry_delays") or _parse_delays(env.get("DEPPULSE_RETRY_DELAYS"))
        inline = overrides.get("inline_retries")
        if inline is None:
            inline = _parse_bool(env.get("DEPPULSE_INLINE_RETRIES"), default=True)

        analysis = AnalysisSettings(
            retry_delays=retry_delays or DEFAULT_RETRY_DELAYS,
            activity_timeout=float(overrides.get("activity_timeout") or env.get("DEPPULSE_ACTIVITY_TIMEOUT", 10.0)),
            freshness_days=int(overrides.get("freshness_days") or env.get("DEPPULSE_FRESHNESS_DAYS", 7)),
            inline_retries=inline,
            stale_run_seconds=float(
                overrides.get("stale_run_seconds") or env.get("DEPPULSE_STALE_RUN_SECONDS", 600.0)
            ),
        )

        storage = StorageSettings(
            data_dir=Path(overrides.get("data_dir") or env.get("DEPPULSE_DATA_DIR") or DEFAULT_DATA_DIR),
        )

        return cls(github=github, analysis=analysis, storage=storage)


def _parse_delays(value: str | None) -> tuple[float, ...] | None:
    if not value:
        return None
    try:
        return tuple(float(part) for part in value.split(",") if part.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid retry delays: {value}") from exc


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean: {value}")


__all__ = [
    "AppSettings",
    "AnalysisSettings",
    "GitHubSettings",
    "StorageSettings",
]
