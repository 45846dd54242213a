"""
balance_ingest/manager.py

Owner of the per-granularity schedulers and the daemon entry point.

Responsibilities
----------------
- Build and start one `GranularityScheduler` per configured granularity.
- Stop them all on shutdown (idempotent) and aggregate their status.
- Dispatch manual triggers to the scheduler of the requested granularity.
- Run as a long-lived process until SIGINT/SIGTERM
  (``python -m balance_ingest.manager``).
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from loguru import logger

from .client import ReeApiClient
from .config import Settings, load_settings
from .errors import ErrorKind, IngestionError
from .load import SqlBalanceGateway, get_engine
from .log import configure_logging
from .models import Granularity
from .run import FetchBalanceData
from .scheduler import GranularityScheduler, utcnow

log = logger.bind(component="schedulers")


class SchedulerManager:
    """Exclusive owner of the set of granularity schedulers.

    Args:
        settings: Service settings; `settings.schedulers` lists the
            granularities to schedule.
        fetcher: Orchestrator shared by every scheduler.
        clock: Current-time source handed to the schedulers.
    """

    def __init__(
        self,
        settings: Settings,
        fetcher: FetchBalanceData,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.fetcher = fetcher
        self.clock = clock
        self.schedulers: dict[Granularity, GranularityScheduler] = {}
        self.initialized = False

    async def initialize(self) -> None:
        if self.initialized:
            log.warning("Schedulers are already initialized")
            return
        if not self.settings.scheduling_enabled:
            log.info("Schedulers are disabled in configuration")
            return

        log.info("Initializing {} scheduler(s)", len(self.settings.schedulers))
        for scheduler_settings in self.settings.schedulers:
            scheduler = GranularityScheduler(self.fetcher, scheduler_settings, clock=self.clock)
            self.schedulers[scheduler.granularity] = scheduler
            await scheduler.start()

        self.initialized = True
        log.info("All schedulers initialized")

    async def shutdown(self) -> None:
        if not self.initialized and not self.schedulers:
            return

        log.info("Shutting down schedulers")
        for scheduler in self.schedulers.values():
            await scheduler.stop()
        self.initialized = False
        log.info("All schedulers shut down")

    def status(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "enabled": self.settings.scheduling_enabled,
            "schedulers": {g.value: s.status() for g, s in self.schedulers.items()},
        }

    async def fetch_now(self, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Run a manual fetch on the scheduler matching ``params["granularity"]``.

        Raises:
            IngestionError: ``UNKNOWN_GRANULARITY`` when no scheduler owns the
                requested granularity.
        """
        params = dict(params or {})
        raw = params.pop("granularity", Granularity.HOUR.value)
        log.info("Manual fetch requested for {}: {}", raw, params)

        try:
            scheduler = self.schedulers.get(Granularity(raw))
        except ValueError:
            scheduler = None
        if scheduler is None:
            raise IngestionError(ErrorKind.UNKNOWN_GRANULARITY, f"No scheduler for granularity: {raw}")

        return await scheduler.fetch_now(params)


async def serve(manager: SchedulerManager) -> None:
    """Initialize `manager`, wait for SIGINT/SIGTERM, then shut down."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            log.debug("Signal handler for {} not supported on this platform", sig)

    # Backfills run inside initialize(); a signal must be able to cut them short.
    init = asyncio.create_task(manager.initialize(), name="schedulers-init")
    stopped = asyncio.create_task(stop.wait(), name="schedulers-stop")
    try:
        await asyncio.wait({init, stopped}, return_when=asyncio.FIRST_COMPLETED)
        if not init.done():
            log.info("Stop requested during initialization, aborting startup backfills")
            init.cancel()
        try:
            await init
        except asyncio.CancelledError:
            pass
        await stopped
    finally:
        init.cancel()
        stopped.cancel()
        await manager.shutdown()


def build_manager(settings: Settings) -> SchedulerManager:
    source = ReeApiClient(base_url=settings.api.base_url, lang=settings.api.lang, timeout=settings.api.timeout)
    fetcher = FetchBalanceData(source, SqlBalanceGateway(get_engine()))
    return SchedulerManager(settings, fetcher)


def main(argv=None):
    """Run the scheduler daemon until interrupted.

    Returns:
        int: Exit code (0 on clean shutdown).
    """
    settings = load_settings()
    configure_logging(settings.log_level)
    asyncio.run(serve(build_manager(settings)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
