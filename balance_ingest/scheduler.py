"""
balance_ingest/scheduler.py

Cron-driven scheduler for one granularity.

Responsibilities
----------------
- Run the optional startup backfill over ``[now - lookback_days, now]``.
- Arm a recurring cron loop (`croniter`) whose ticks top up a short window
  (hour: 24 h, day: 7 d, month: 3 months, year: 1 year).
- Keep at most one fetch in flight: ticks, deferred retries and manual
  triggers that arrive while a fetch runs are dropped, never queued.
- After a retriable failure, schedule one deferred retry (one-shot
  ``loop.call_later``) up to `max_retries` times; reset on success.

States
------
``STOPPED -> RUNNING`` on `start()`, ``RUNNING -> STOPPED`` on `stop()`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from croniter import croniter
from dateutil.relativedelta import relativedelta
from loguru import logger

from .config import SchedulerSettings
from .errors import IngestionError
from .models import Granularity
from .run import FetchBalanceData, IngestResult, iso

# Top-up window of a scheduled tick, by granularity.
TICK_LOOKBACK = {
    Granularity.HOUR: relativedelta(hours=24),
    Granularity.DAY: relativedelta(days=7),
    Granularity.MONTH: relativedelta(months=3),
    Granularity.YEAR: relativedelta(years=1),
}

ALREADY_IN_PROGRESS = "already in progress"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class GranularityScheduler:
    """Owns the schedule, single-flight guard and retry bookkeeping of one granularity.

    Args:
        fetcher: Orchestrator used for every ingestion.
        settings: Schedule, lookback and retry settings for this granularity.
        clock: Returns the current aware UTC time.
        sleep: Awaitable sleep used by the cron loop.
    """

    def __init__(
        self,
        fetcher: FetchBalanceData,
        settings: SchedulerSettings,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.fetcher = fetcher
        self.settings = settings
        self.granularity = settings.granularity
        self.clock = clock
        self._sleep = sleep

        self.state = SchedulerState.STOPPED
        self.fetch_in_progress = False
        self.retry_count = 0
        self.last_fetch_time: datetime | None = None
        self.last_result: dict | None = None
        self.last_error: str | None = None

        self._loop_task: asyncio.Task | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self.log = logger.bind(component=f"fetcher-{self.granularity.value}")

    @property
    def running(self) -> bool:
        return self.state is SchedulerState.RUNNING

    # Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            self.log.warning("Scheduler is already running")
            return

        self.state = SchedulerState.RUNNING
        self.log.info("Starting {} scheduler ({})", self.granularity.value, self.settings.schedule)

        if self.settings.initial_fetch:
            await self.backfill()

        if not self.settings.enabled:
            self.log.info("Scheduled fetches are disabled in configuration")
            return

        self._loop_task = asyncio.create_task(self._run_loop(), name=f"cron-{self.granularity.value}")

    async def stop(self) -> None:
        if not self.running:
            return

        self.log.info("Stopping {} scheduler", self.granularity.value)
        self.state = SchedulerState.STOPPED

        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        # Fetches are not cancelled mid-flight; wait for them to settle.
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self.log.info("{} scheduler stopped", self.granularity.value)

    # Scheduling -----------------------------------------------------------

    def next_fire_time(self, after: datetime) -> datetime:
        return croniter(self.settings.schedule, after).get_next(datetime)

    async def _run_loop(self) -> None:
        while self.running:
            now = self.clock()
            delay = max(0.0, (self.next_fire_time(now) - now).total_seconds())
            await self._sleep(delay)
            if not self.running:
                break
            self._spawn(self.run_scheduled())

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_retry(self) -> None:
        if not self.running:
            self.log.info("Not scheduling a {} retry: scheduler is stopped", self.granularity.value)
            return
        delay = self.settings.retry_delay
        self.log.info(
            "Scheduling retry for {} fetch in {:.0f}s (attempt {}/{})",
            self.granularity.value,
            delay,
            self.retry_count,
            self.settings.max_retries,
        )
        if self._retry_handle is not None:
            self._retry_handle.cancel()
        self._retry_handle = asyncio.get_running_loop().call_later(delay, self._fire_retry)

    def _fire_retry(self) -> None:
        self._retry_handle = None
        if self.running:
            self._spawn(self.run_scheduled())

    def fetch_window(self) -> tuple[datetime, datetime]:
        end = self.clock()
        return end - TICK_LOOKBACK[self.granularity], end

    # Fetches --------------------------------------------------------------

    async def run_scheduled(self) -> None:
        """One scheduled (or retried) tick. Never raises."""
        if self.fetch_in_progress:
            self.log.warning("Skipping scheduled {} fetch: another fetch is in progress", self.granularity.value)
            return

        self.fetch_in_progress = True
        try:
            start, end = self.fetch_window()
            result = await self.fetcher.ingest(
                start,
                end,
                self.granularity,
                force_update=self.settings.force_update,
                max_retries=self.settings.fetch_max_retries,
            )
            self._record_success(result)
            self.retry_count = 0
            self.log.info("Scheduled {} fetch completed: {}", self.granularity.value, result.message)
        except IngestionError as exc:
            self.last_error = str(exc)
            self.log.error("Error in scheduled {} fetch: {}", self.granularity.value, exc)
            if exc.retriable and self.settings.retry_on_failure and self.retry_count < self.settings.max_retries:
                self.retry_count += 1
                self._schedule_retry()
        finally:
            self.fetch_in_progress = False

    async def backfill(self) -> IngestResult | None:
        """Historical pass over the configured lookback. Failures are logged, not raised."""
        days = self.settings.lookback_days
        if days <= 0:
            return None
        if self.fetch_in_progress:
            self.log.warning("Skipping {} backfill: another fetch is in progress", self.granularity.value)
            return None

        end = self.clock()
        start = end - timedelta(days=days)
        self.log.info("Fetching historical {} data from {} to {}", self.granularity.value, iso(start), iso(end))

        self.fetch_in_progress = True
        try:
            result = await self.fetcher.ingest(
                start, end, self.granularity, force_update=False, max_retries=self.settings.fetch_max_retries
            )
        except IngestionError as exc:
            self.last_error = str(exc)
            self.log.error("Error fetching historical {} data: {}", self.granularity.value, exc)
            return None
        finally:
            self.fetch_in_progress = False

        self._record_success(result)
        self.log.info("Historical {} data fetch completed: {}", self.granularity.value, result.message)
        return result

    async def fetch_now(self, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Manual trigger outside the schedule.

        Args:
            params: Optional ``start_date``, ``end_date`` (datetime or ISO
                string), ``force_update`` and ``max_retries``. Without dates
                the tick window is used.

        Returns:
            dict: ``{"success": bool, "message": str, ...}``; on failure also
            ``"error"``. Never raises.
        """
        params = params or {}
        if self.fetch_in_progress:
            self.log.warning("Manual {} fetch rejected: {}", self.granularity.value, ALREADY_IN_PROGRESS)
            return {"success": False, "message": ALREADY_IN_PROGRESS}

        self.fetch_in_progress = True
        try:
            start, end = params.get("start_date"), params.get("end_date")
            if start is None or end is None:
                start, end = self.fetch_window()
            result = await self.fetcher.ingest(
                start,
                end,
                self.granularity,
                force_update=bool(params.get("force_update", False)),
                max_retries=params.get("max_retries") or self.settings.fetch_max_retries,
            )
        except IngestionError as exc:
            self.last_error = str(exc)
            self.log.error("Error in manual {} fetch: {}", self.granularity.value, exc)
            return {"success": False, "message": f"Error: {exc.message}", "error": exc.to_dict()}
        finally:
            self.fetch_in_progress = False

        self._record_success(result)
        return {
            "success": True,
            "message": result.message,
            "status": result.status,
            "skipped": result.status == "skipped",
            "saved_count": result.saved_count,
            "granularity": result.granularity.value,
            "start_date": iso(result.start_date),
            "end_date": iso(result.end_date),
        }

    def _record_success(self, result: IngestResult) -> None:
        self.last_fetch_time = self.clock()
        self.last_result = result.to_dict()
        self.last_error = None

    def status(self) -> dict[str, Any]:
        return {
            "granularity": self.granularity.value,
            "schedule": self.settings.schedule,
            "state": self.state.value,
            "running": self.running,
            "fetch_in_progress": self.fetch_in_progress,
            "retry_count": self.retry_count,
            "retry_pending": self._retry_handle is not None,
            "last_fetch_time": self.last_fetch_time.isoformat() if self.last_fetch_time else None,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "config": self.settings.model_dump(mode="json"),
        }
