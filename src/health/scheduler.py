"""Health poller: reruns the app health check on an interval.

Only the most recent report is kept, in memory. The interval is read from the
``appHealthCheckInterval`` setting before every cycle so the admin UI can
change it without a restart.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .engine import AppSource, HealthChecker, HealthReport

logger = logging.getLogger(__name__)

INTERVAL_SETTING = "appHealthCheckInterval"
MIN_INTERVAL_MS = 5_000


class HealthScheduler:
    """Runs :meth:`HealthChecker.check_registry` in a background task."""

    def __init__(
        self,
        registry: AppSource,
        checker: HealthChecker,
        settings_store: Any | None = None,
        default_interval_ms: int = 60_000,
    ) -> None:
        self.registry = registry
        self.checker = checker
        self.settings_store = settings_store
        self.default_interval_ms = default_interval_ms
        self.latest: HealthReport | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def interval_seconds(self) -> float:
        """Current poll interval, from settings when set to a sane value."""
        interval_ms: Any = self.default_interval_ms
        if self.settings_store is not None:
            try:
                interval_ms = self.settings_store.get(INTERVAL_SETTING, self.default_interval_ms)
            except Exception:
                logger.exception("Could not read %s", INTERVAL_SETTING)
        try:
            interval_ms = int(interval_ms)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid %s=%r", INTERVAL_SETTING, interval_ms)
            interval_ms = self.default_interval_ms
        return max(interval_ms, MIN_INTERVAL_MS) / 1000

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="app-health-poller")
        logger.info("Health poller started (interval=%.0fs)", self.interval_seconds())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health poller stopped")

    async def run_now(self) -> HealthReport:
        """Run one check immediately and remember the report."""
        report = await self.checker.check_registry(self.registry)
        self.latest = report
        return report

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                report = await self.run_now()
                logger.debug("Polled %d apps at %s", len(report.apps), report.checked_at)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Scheduled health check failed")
            loop = asyncio.get_running_loop()
            interval = await loop.run_in_executor(None, self.interval_seconds)
            await asyncio.sleep(interval)
