"""Daily driver for the billing sweep."""

import asyncio
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import structlog

from billing_engine.runner import RunExecutor, SweepSummary
from billing_engine.settings_provider import SchedulerCadence, SettingsProvider

logger = structlog.get_logger(__name__)


def next_run_time(now: datetime, cadence: SchedulerCadence) -> datetime:
    """Next daily run at ``cadence.hour:cadence.minute`` in the cadence timezone.

    Args:
        now: Timezone-aware current time.
        cadence: Scheduler settings.

    Returns:
        A timezone-aware datetime strictly after ``now``.
    """
    tz = ZoneInfo(cadence.timezone)
    local_now = now.astimezone(tz)
    candidate = local_now.replace(
        hour=cadence.hour,
        minute=cadence.minute,
        second=0,
        microsecond=0,
    )
    if candidate <= local_now:
        candidate = (candidate + timedelta(days=1)).replace(
            hour=cadence.hour, minute=cadence.minute
        )
    return candidate


class BillingScheduler:
    """Runs the billing sweep once a day.

    The scheduler:
    1. Computes the next run time from the runtime scheduler settings
    2. Sleeps until then, honouring pause and stop
    3. Runs the sweep in a worker thread for the local business date
    4. Supports manual triggers between scheduled runs
    """

    def __init__(
        self,
        executor: RunExecutor,
        settings: SettingsProvider,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        poll_interval: float = 30.0,
    ):
        self._executor = executor
        self._settings = settings
        self._clock = clock
        self._poll_interval = poll_interval

        self._is_running = False
        self._is_paused = False
        self._sweep_lock = asyncio.Lock()
        self._last_run_at: datetime | None = None
        self._last_summary: SweepSummary | None = None
        self._next_run_at: datetime | None = None
        self._runs_completed = 0

        self._logger = logger.bind(component="billing_scheduler")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    @property
    def last_summary(self) -> SweepSummary | None:
        return self._last_summary

    def business_date(self, at: datetime | None = None) -> date:
        """Calendar date in the scheduler timezone."""
        cadence = self._settings.scheduler_cadence()
        moment = at or self._clock()
        return moment.astimezone(ZoneInfo(cadence.timezone)).date()

    def compute_next_run(self) -> datetime:
        self._next_run_at = next_run_time(self._clock(), self._settings.scheduler_cadence())
        return self._next_run_at

    def pause(self) -> None:
        """Pause the scheduler."""
        self._is_paused = True
        self._logger.info("scheduler_paused")

    def resume(self) -> None:
        """Resume the scheduler."""
        self._is_paused = False
        self._logger.info("scheduler_resumed")

    def stop(self) -> None:
        """Stop after the current wait or sweep."""
        self._is_running = False
        self._logger.info("scheduler_stopping")

    async def trigger(self, as_of: date | None = None) -> SweepSummary:
        """Run a sweep now.

        Args:
            as_of: Business date to bill for. Defaults to today in the
                scheduler timezone.

        Returns:
            Summary of the sweep.
        """
        as_of = as_of or self.business_date()
        async with self._sweep_lock:
            self._logger.info("sweep_triggered", as_of=as_of.isoformat())
            summary = await asyncio.to_thread(self._executor.execute_due_runs, as_of)
            self._last_run_at = self._clock()
            self._last_summary = summary
            self._runs_completed += 1
        return summary

    async def _wait_until(self, target: datetime) -> bool:
        """Sleep until ``target``. Returns False if stopped first."""
        while self._is_running:
            while self._is_paused and self._is_running:
                await asyncio.sleep(min(self._poll_interval, 1.0))
            remaining = (target - self._clock()).total_seconds()
            if remaining <= 0:
                return True
            await asyncio.sleep(min(self._poll_interval, remaining))
        return False

    async def run_continuous(self, max_runs: int | None = None) -> None:
        """Run scheduled sweeps until stopped.

        Args:
            max_runs: Optional maximum number of scheduled sweeps.
        """
        self._is_running = True
        runs = 0
        self._logger.info("scheduler_started", max_runs=max_runs)

        try:
            while self._is_running:
                if max_runs is not None and runs >= max_runs:
                    break

                target = self.compute_next_run()
                self._logger.info("next_run_scheduled", at=target.isoformat())
                if not await self._wait_until(target):
                    break

                cadence = self._settings.scheduler_cadence()
                if not cadence.enabled:
                    self._logger.info("sweep_disabled")
                    runs += 1
                    continue

                summary = await self.trigger(self.business_date(target))
                runs += 1
                self._logger.info(
                    "scheduled_sweep_completed",
                    processed=summary.processed,
                    failed=summary.failed,
                )
        finally:
            self._is_running = False
            self._logger.info("scheduler_stopped", runs=runs)

    def get_status(self) -> dict[str, Any]:
        """Get scheduler status information."""
        cadence = self._settings.scheduler_cadence()
        return {
            "is_running": self._is_running,
            "is_paused": self._is_paused,
            "enabled": cadence.enabled,
            "cadence": f"{cadence.hour:02d}:{cadence.minute:02d} {cadence.timezone}",
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "next_run_at": self._next_run_at.isoformat() if self._next_run_at else None,
            "runs_completed": self._runs_completed,
            "last_summary": self._last_summary.to_dict() if self._last_summary else None,
        }
