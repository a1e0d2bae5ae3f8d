"""Fallback retry scanner daemon."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from datetime import datetime, timezone

from deppulse.adapters.github import GitHubProvider
from deppulse.analyzers.pipeline import AnalysisPipeline

logger = logging.getLogger(__name__)


class RateLimitExhausted(Exception):
    """Raised when GitHub API rate limit is exhausted."""

    def __init__(self, reset_time: datetime, remaining: int = 0):
        self.reset_time = reset_time
        self.remaining = remaining
        super().__init__(f"Rate limit exhausted, resets at {reset_time}")


class RetryScanner:
    """Daemon that resumes analysis runs waiting to retry.

    Runs until SIGINT/SIGTERM, calling ``run_fallback_scan`` on every tick.
    This is what picks up runs whose process crashed mid-retry, and every
    retry when the pipeline is configured without inline retries.

    Features:
    - Graceful shutdown on SIGINT/SIGTERM
    - Sleeps through GitHub rate limit exhaustion
    - Exponential backoff on scan errors

    Usage:
        scanner = RetryScanner(pipeline, scan_interval=5)
        await scanner.run()  # Runs until SIGINT/SIGTERM
    """

    # Minimum rate limit remaining before preemptive sleep
    RATE_LIMIT_THRESHOLD = 50

    # Seconds to wait after a failed scan before retrying
    ERROR_BACKOFF_BASE = 5.0
    ERROR_BACKOFF_MAX = 300.0  # 5 minutes max

    def __init__(
        self,
        pipeline: AnalysisPipeline,
        scan_interval: float = 5.0,
        batch_limit: int = 10,
        rate_limit_threshold: int = RATE_LIMIT_THRESHOLD,
    ) -> None:
        """Initialize the scanner.

        Args:
            pipeline: Pipeline whose due runs are resumed.
            scan_interval: Seconds between scans when nothing was due.
            batch_limit: Maximum runs resumed per scan.
            rate_limit_threshold: Preemptively sleep when remaining < this.
        """
        self.pipeline = pipeline
        self.scan_interval = scan_interval
        self.batch_limit = batch_limit
        self.rate_limit_threshold = rate_limit_threshold

        # Shutdown handling
        self._shutdown_requested = False

        # Error tracking for backoff
        self._consecutive_errors = 0

        # Stats
        self._total_processed = 0
        self._scans = 0

    def request_shutdown(self) -> None:
        self._shutdown_requested = True

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""

        def handle_shutdown(signum, frame):
            signame = signal.Signals(signum).name
            logger.info(f"Received {signame}, initiating graceful shutdown...")
            self._shutdown_requested = True

        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

    async def run(self, max_scans: int | None = None, install_signal_handlers: bool = True) -> int:
        """Scan until shutdown, or until ``max_scans`` scans have run.

        Returns:
            Total number of runs processed.
        """
        if install_signal_handlers:
            self._setup_signal_handlers()

        logger.info(
            f"Starting retry scanner (interval {self.scan_interval:g}s, batch {self.batch_limit})"
        )

        while not self._shutdown_requested:
            if max_scans is not None and self._scans >= max_scans:
                break

            try:
                self._check_rate_limits()
                processed = await self.scan_once()
                self._consecutive_errors = 0
            except RateLimitExhausted as e:
                await self._handle_rate_limit_exhausted(e)
                continue
            except Exception as e:
                await self._handle_error(e)
                continue

            # A full batch means more runs may be due right away
            if processed < self.batch_limit:
                await self._interruptible_sleep(self.scan_interval)

        logger.info(f"Retry scanner stopped. Total processed: {self._total_processed}")
        return self._total_processed

    async def scan_once(self) -> int:
        """Run a single fallback scan."""
        self._scans += 1
        processed = await self.pipeline.run_fallback_scan(self.batch_limit)
        self._total_processed += processed
        return processed

    def _check_rate_limits(self) -> None:
        """Raise if the GitHub rate limit is nearly exhausted.

        Raises:
            RateLimitExhausted: If rate limit is below threshold
        """
        provider = self.pipeline.provider
        if not isinstance(provider, GitHubProvider):
            return
        if provider.rate_limit_remaining < self.rate_limit_threshold and provider.rate_limit_reset:
            raise RateLimitExhausted(provider.rate_limit_reset, provider.rate_limit_remaining)

    async def _handle_rate_limit_exhausted(self, e: RateLimitExhausted) -> None:
        """Sleep until the rate limit resets.

        Args:
            e: The RateLimitExhausted exception with reset time
        """
        now = datetime.now(timezone.utc)

        if e.reset_time <= now:
            logger.info("Rate limit reset time has passed, continuing...")
            return

        # Add small buffer
        sleep_seconds = max((e.reset_time - now).total_seconds() + 10, 60)

        logger.warning(
            f"GitHub rate limit low (remaining: {e.remaining}). "
            f"Sleeping for {sleep_seconds:.0f} seconds until {e.reset_time}"
        )
        await self._interruptible_sleep(sleep_seconds)
        logger.info("Resuming after rate limit sleep")

    async def _interruptible_sleep(self, seconds: float) -> None:
        """Sleep that can be interrupted by shutdown request.

        Args:
            seconds: Total seconds to sleep
        """
        start = time.time()
        while time.time() - start < seconds:
            if self._shutdown_requested:
                logger.info("Shutdown requested during sleep")
                break
            await asyncio.sleep(min(1, seconds - (time.time() - start)))

    async def _handle_error(self, error: Exception) -> None:
        """Handle scan errors with exponential backoff.

        Args:
            error: The exception that occurred
        """
        self._consecutive_errors += 1

        backoff = min(
            self.ERROR_BACKOFF_BASE * (2 ** (self._consecutive_errors - 1)),
            self.ERROR_BACKOFF_MAX,
        )

        logger.error(
            f"Retry scan failed: {error}. "
            f"Backing off for {backoff:.0f}s (attempt {self._consecutive_errors})"
        )

        if self.pipeline.collector:
            self.pipeline.collector.record_error("*", type(error).__name__, str(error))

        await self._interruptible_sleep(backoff)

    def get_status(self) -> dict:
        """Get current daemon status for monitoring."""
        return {
            "running": not self._shutdown_requested,
            "scans": self._scans,
            "consecutive_errors": self._consecutive_errors,
            "total_processed": self._total_processed,
        }
