"""CLI entry point for deppulse."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv()

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from deppulse.adapters.base import InvalidRepositorySlugError, MetricsProvider, parse_repo_slug
from deppulse.adapters.github import GitHubProvider
from deppulse.analyzers.confidence import CONFIDENCE_LEVEL_INFO, compute_run_confidence
from deppulse.analyzers.freshness import CATEGORY_INFO
from deppulse.analyzers.pipeline import AnalysisPipeline
from deppulse.analyzers.profiles import get_default_scoring_profile, get_scoring_profile
from deppulse.analyzers.scorer import Scorer
from deppulse.models.schemas import (
    AnalysisRun,
    ConfidenceResult,
    MetricsSnapshot,
    RunStatus,
    ScoreResult,
    TriggerSource,
)
from deppulse.monitoring import MetricsCollector
from deppulse.settings import AppSettings
from deppulse.storage.json_store import JsonFileStore

app = typer.Typer(help="Maintenance health scoring for open-source repositories.")

console = Console()

STATUS_STYLES = {
    RunStatus.COMPLETE: "green",
    RunStatus.PARTIAL: "yellow",
    RunStatus.FAILED: "red",
    RunStatus.RUNNING: "cyan",
    RunStatus.QUEUED: "dim",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_settings(data_dir: Path | None = None) -> AppSettings:
    try:
        return AppSettings.from_env(overrides={"data_dir": data_dir} if data_dir else None)
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1)


def _create_provider(settings: AppSettings) -> MetricsProvider:
    """Create the metrics provider for live commands."""
    return GitHubProvider(settings.github)


def _create_pipeline(settings: AppSettings) -> AnalysisPipeline:
    return AnalysisPipeline(
        store=JsonFileStore(settings.storage.store_path),
        provider=_create_provider(settings),
        settings=settings.analysis,
        collector=MetricsCollector(settings.storage.metrics_path),
    )


def _parse_slug(repository: str) -> tuple[str, str]:
    try:
        return parse_repo_slug(repository)
    except InvalidRepositorySlugError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _parse_now(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        console.print(f"[red]Invalid --now value: {value}[/red]")
        raise typer.Exit(1)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@app.command()
def analyze(
    repository: str = typer.Argument(..., help="Repository as owner/repo or GitHub URL"),
    force: bool = typer.Option(False, "--force", "-f", help="Re-analyze even if a recent result exists"),
    data_dir: Path | None = typer.Option(None, "--data-dir", "-d", help="Data directory"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Save the run as JSON"),
) -> None:
    """Analyze a repository and print its maintenance score."""
    owner, project = _parse_slug(repository)
    settings = _load_settings(data_dir)
    asyncio.run(_analyze(owner, project, force, settings, output))


async def _analyze(
    owner: str,
    project: str,
    force: bool,
    settings: AppSettings,
    output: Path | None,
) -> None:
    """Async implementation of analyze."""
    async with _create_pipeline(settings) as pipeline:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(f"Analyzing {owner}/{project}...", total=None)
            run = await pipeline.analyze(
                owner, project, force=force, trigger_source=TriggerSource.MANUAL_REFRESH
            )

    _print_run(f"{owner}/{project}", run, datetime.now(timezone.utc))

    if output:
        output.write_text(json.dumps(run.model_dump(mode="json"), indent=2))
        console.print(f"\n[green]Saved to {output}[/green]")


@app.command()
def status(
    repository: str = typer.Argument(..., help="Repository as owner/repo or GitHub URL"),
    data_dir: Path | None = typer.Option(None, "--data-dir", "-d", help="Data directory"),
) -> None:
    """Show the latest analysis run for a repository."""
    owner, project = _parse_slug(repository)
    settings = _load_settings(data_dir)
    asyncio.run(_status(owner, project, settings))


async def _status(owner: str, project: str, settings: AppSettings) -> None:
    async with _create_pipeline(settings) as pipeline:
        view = await pipeline.get_status(owner, project)

    if view.latest_run is None:
        console.print(f"[yellow]{view.repository.full_name} has not been analyzed yet.[/yellow]")
        raise typer.Exit(1)

    _print_run(view.repository.full_name, view.latest_run, datetime.now(timezone.utc))
    console.print(f"[dim]View ready: {'yes' if view.view_ready else 'no'}[/dim]")


@app.command()
def score(
    snapshot_file: Path = typer.Argument(..., help="Metrics snapshot or analysis run JSON"),
    now: str | None = typer.Option(None, "--now", help="Reference time (ISO 8601), defaults to now"),
    profile: str | None = typer.Option(None, "--profile", "-p", help="Scoring profile id"),
) -> None:
    """Score a saved metrics snapshot without touching the network."""
    reference = _parse_now(now)

    try:
        scoring_profile = get_scoring_profile(profile) if profile else get_default_scoring_profile()
    except KeyError as e:
        console.print(f"[red]{e.args[0]}[/red]")
        raise typer.Exit(1)

    try:
        data = json.loads(snapshot_file.read_text())
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot read {snapshot_file}: {e}[/red]")
        raise typer.Exit(1)

    try:
        if isinstance(data, dict) and "run_state" in data:
            run = AnalysisRun.model_validate(data)
            _print_run(str(snapshot_file), run, reference, Scorer(scoring_profile))
            return
        metrics = MetricsSnapshot.model_validate(data)
    except ValidationError as e:
        console.print(f"[red]Invalid snapshot: {e}[/red]")
        raise typer.Exit(1)

    try:
        result = Scorer(scoring_profile).score_metrics(metrics, reference)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    _print_score(metrics.full_name or str(snapshot_file), result)


@app.command()
def scan(
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum runs to resume"),
    data_dir: Path | None = typer.Option(None, "--data-dir", "-d", help="Data directory"),
) -> None:
    """Resume analysis runs whose retry time has passed."""
    settings = _load_settings(data_dir)
    processed = asyncio.run(_scan(settings, limit))
    console.print(f"Resumed {processed} run(s)")


async def _scan(settings: AppSettings, limit: int) -> int:
    async with _create_pipeline(settings) as pipeline:
        return await pipeline.run_fallback_scan(limit)


@app.command()
def daemon(
    interval: float = typer.Option(5.0, "--interval", "-i", help="Seconds between scans"),
    batch: int = typer.Option(10, "--batch", "-b", help="Maximum runs resumed per scan"),
    data_dir: Path | None = typer.Option(None, "--data-dir", "-d", help="Data directory"),
) -> None:
    """Run the fallback retry scanner until interrupted.

    Pairs with DEPPULSE_INLINE_RETRIES=false, where ``analyze`` returns as
    soon as a retry is scheduled and this daemon performs the retries.
    """
    from deppulse.daemon import RetryScanner

    settings = _load_settings(data_dir)

    async def _run() -> int:
        async with _create_pipeline(settings) as pipeline:
            return await RetryScanner(pipeline, scan_interval=interval, batch_limit=batch).run()

    processed = asyncio.run(_run())
    console.print(f"Retry scanner processed {processed} run(s)")


@app.command()
def version() -> None:
    """Show version information."""
    from deppulse import __version__

    console.print(f"deppulse v{__version__}")


# --- Rendering ---


def _print_run(name: str, run: AnalysisRun, now: datetime, scorer: Scorer | None = None) -> None:
    style = STATUS_STYLES.get(run.status, "white")
    console.print()
    console.print(f"[bold cyan]{name}[/bold cyan]  [{style}]{run.status.value}[/{style}]")

    info = Table(show_header=False, box=None)
    info.add_column("Key", style="bold")
    info.add_column("Value")
    info.add_row("Run", str(run.id) if run.id is not None else "-")
    info.add_row("Step", run.progress_step.value)
    info.add_row("Attempts", str(run.attempt_count))
    info.add_row("Started", run.started_at.isoformat())
    if run.completed_at:
        info.add_row("Completed", run.completed_at.isoformat())
    if run.next_retry_at:
        info.add_row("Next retry", run.next_retry_at.isoformat())
    if run.error_code:
        info.add_row("Error", f"{run.error_code.value}: {run.error_message or ''}")
    console.print(info)

    if run.metrics is not None and run.is_terminal:
        try:
            result = (scorer or Scorer()).score_metrics(run.metrics, now)
        except ValueError as e:
            console.print(f"[yellow]{e}[/yellow]")
        else:
            _print_score(name, result)

    _print_confidence(compute_run_confidence(run, now))


def _print_score(name: str, result: ScoreResult) -> None:
    info = CATEGORY_INFO[result.category]
    breakdown = result.breakdown

    console.print()
    console.print(f"[bold]Maintenance score:[/bold] {_score_bar(result.score)} {result.score}/100 ({info.label})")
    console.print(f"[dim]{info.description}[/dim]")

    table = Table(title=f"Breakdown for {name}", show_header=False)
    table.add_column("Component", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Quality", str(breakdown.quality))
    table.add_row("Freshness multiplier", f"{breakdown.freshness_multiplier:.3f}")
    table.add_row("Expected activity", breakdown.expected_activity_tier.value)
    days = breakdown.days_since_most_recent_activity
    table.add_row("Days since activity", str(days) if days is not None else "never")
    table.add_row("Hard cap", str(breakdown.hard_cap_applied) if breakdown.hard_cap_applied is not None else "-")
    console.print(table)
    console.print(f"[bold]Recommendation:[/bold] {info.recommendation}")


def _print_confidence(confidence: ConfidenceResult) -> None:
    info = CONFIDENCE_LEVEL_INFO[confidence.level]
    console.print()
    console.print(f"[bold]{info.label}[/bold] ({confidence.score}/100)")
    if confidence.summary:
        console.print(f"[dim]{confidence.summary}[/dim]")
    for penalty in confidence.penalties:
        console.print(f"  [yellow]-{penalty.points}[/yellow] {penalty.reason}")


def _score_bar(score: float, width: int = 20) -> str:
    """Create a visual score bar."""
    filled = int(score / 100 * width)
    empty = width - filled
    color = "green" if score >= 70 else "yellow" if score >= 45 else "red"
    return f"[{color}]{'█' * filled}[/{color}][dim]{'░' * empty}[/dim]"


if __name__ == "__main__":
    app()
