"""Tests for the per-granularity cron scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from balance_ingest.client import SourceError
from balance_ingest.config import SchedulerSettings
from balance_ingest.run import FetchBalanceData
from balance_ingest.scheduler import ALREADY_IN_PROGRESS, GranularityScheduler, SchedulerState
from conftest import BlockingSource, FakeSource, entry, make_payload, section

NOW = datetime(2024, 1, 2, 12, 30, tzinfo=timezone.utc)


def _payload():
    return make_payload(
        section("Renovable", entry("Eólica", 100)),
        section("Demanda", entry("Demanda en b.c.", 150)),
    )


def _settings(**overrides):
    values = dict(
        granularity="hour",
        schedule="0 * * * *",
        enabled=False,
        initial_fetch=False,
        lookback_days=2,
        retry_delay=0,
        max_retries=2,
        fetch_max_retries=1,
    )
    values.update(overrides)
    return SchedulerSettings(**values)


def _scheduler(source, gateway, fake_sleep, **overrides):
    fetcher = FetchBalanceData(source, gateway, sleep=fake_sleep)
    return GranularityScheduler(fetcher, _settings(**overrides), clock=lambda: NOW)


async def _wait_for(predicate):
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0)


class TickOnce:
    """Cron-loop sleep that returns once, then blocks until cancelled."""

    def __init__(self):
        self.delays = []
        self.block = asyncio.Event()

    async def __call__(self, delay):
        self.delays.append(delay)
        if len(self.delays) > 1:
            await self.block.wait()


@pytest.mark.asyncio
async def test_concurrent_manual_fetch_is_rejected(gateway, fake_sleep):
    """A trigger arriving mid-fetch is dropped, not queued."""

    source = BlockingSource(_payload())
    sched = _scheduler(source, gateway, fake_sleep)

    first = asyncio.create_task(sched.fetch_now())
    await source.started.wait()
    second = await sched.fetch_now()
    source.release.set()
    first = await first

    assert second == {"success": False, "message": ALREADY_IN_PROGRESS}
    assert first["success"] is True
    assert first["saved_count"] == 1
    assert first["granularity"] == "hour"
    assert len(source.calls) == 1
    assert sched.fetch_in_progress is False


@pytest.mark.asyncio
async def test_scheduled_tick_skipped_while_fetch_in_progress(gateway, fake_sleep):
    source = FakeSource(_payload())
    sched = _scheduler(source, gateway, fake_sleep)
    sched.fetch_in_progress = True

    await sched.run_scheduled()

    assert source.calls == []


@pytest.mark.asyncio
async def test_failed_tick_schedules_bounded_retries(gateway, fake_sleep):
    """A retriable failure arms deferred retries until max_retries is reached."""

    source = FakeSource(always_fail=True)
    sched = _scheduler(source, gateway, fake_sleep)
    await sched.start()

    await sched.run_scheduled()
    assert sched.retry_count == 1
    assert sched.status()["retry_pending"] is True

    await _wait_for(lambda: len(source.calls) == 3 and not sched.fetch_in_progress)

    assert len(source.calls) == 3
    assert sched.retry_count == 2
    assert sched.status()["retry_pending"] is False
    assert sched.last_error.startswith("FetchError")
    await sched.stop()


@pytest.mark.asyncio
async def test_success_resets_retry_count(gateway, fake_sleep):
    sched = _scheduler(FakeSource(_payload()), gateway, fake_sleep)
    sched.retry_count = 2

    await sched.run_scheduled()

    assert sched.retry_count == 0
    assert sched.last_result["status"] == "success"
    assert sched.last_fetch_time == NOW
    assert sched.last_error is None


@pytest.mark.asyncio
async def test_non_retriable_failure_is_not_retried(gateway, fake_sleep):
    sched = _scheduler(FakeSource({"data": {"attributes": {}}}), gateway, fake_sleep)

    await sched.run_scheduled()

    assert sched.retry_count == 0
    assert sched.status()["retry_pending"] is False
    assert sched.last_error.startswith("ResponseShapeError")


@pytest.mark.asyncio
async def test_retry_disabled(gateway, fake_sleep):
    sched = _scheduler(FakeSource(always_fail=True), gateway, fake_sleep, retry_on_failure=False)

    await sched.run_scheduled()

    assert sched.retry_count == 0
    assert sched.status()["retry_pending"] is False


@pytest.mark.asyncio
async def test_backfill_failure_does_not_stop_start(gateway, fake_sleep):
    """The startup backfill covers the lookback and only logs its failures."""

    source = FakeSource(always_fail=True)
    sched = _scheduler(source, gateway, fake_sleep, initial_fetch=True)

    await sched.start()

    assert sched.state is SchedulerState.RUNNING
    assert source.calls == [("2023-12-31T12:30", "2024-01-02T12:30", sched.granularity)]
    assert sched.last_error.startswith("FetchError")
    await sched.stop()


@pytest.mark.asyncio
async def test_backfill_success(gateway, fake_sleep):
    sched = _scheduler(FakeSource(_payload()), gateway, fake_sleep)

    result = await sched.backfill()

    assert result.status == "success"
    assert len(gateway.rows) == 1


@pytest.mark.asyncio
async def test_backfill_disabled_with_zero_lookback(gateway, fake_sleep):
    source = FakeSource(_payload())
    sched = _scheduler(source, gateway, fake_sleep, lookback_days=0)

    assert await sched.backfill() is None
    assert source.calls == []


@pytest.mark.asyncio
async def test_start_and_stop_cron_loop(gateway, fake_sleep):
    sched = _scheduler(FakeSource(_payload()), gateway, fake_sleep, enabled=True)

    await sched.start()
    await sched.start()
    assert sched.running
    assert sched.status()["state"] == "running"

    await sched.stop()
    await sched.stop()
    assert sched.state is SchedulerState.STOPPED
    assert sched._loop_task is None


@pytest.mark.asyncio
async def test_cron_tick_fetches_top_up_window(gateway, fake_sleep):
    """A tick sleeps until the next cron time, then fetches the last 24 hours."""

    source = FakeSource(_payload())
    tick = TickOnce()
    fetcher = FetchBalanceData(source, gateway, sleep=fake_sleep)
    sched = GranularityScheduler(fetcher, _settings(enabled=True), clock=lambda: NOW, sleep=tick)

    await sched.start()
    await _wait_for(lambda: source.calls and sched.last_result is not None)
    await sched.stop()

    assert tick.delays[0] == 1800
    assert source.calls[0][:2] == ("2024-01-01T12:30", "2024-01-02T12:30")


def test_next_fire_time(gateway, fake_sleep):
    sched = _scheduler(FakeSource(), gateway, fake_sleep, granularity="day", schedule="0 4 * * *")

    after = datetime(2024, 1, 2, 5, tzinfo=timezone.utc)

    assert sched.next_fire_time(after) == datetime(2024, 1, 3, 4, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "granularity, expected_start",
    [
        ("hour", datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)),
        ("day", datetime(2023, 12, 26, 12, 30, tzinfo=timezone.utc)),
        ("month", datetime(2023, 10, 2, 12, 30, tzinfo=timezone.utc)),
        ("year", datetime(2023, 1, 2, 12, 30, tzinfo=timezone.utc)),
    ],
)
def test_fetch_window(gateway, fake_sleep, granularity, expected_start):
    sched = _scheduler(FakeSource(), gateway, fake_sleep, granularity=granularity)

    assert sched.fetch_window() == (expected_start, NOW)


@pytest.mark.asyncio
async def test_manual_fetch_failure_reports_error(gateway, fake_sleep):
    """Manual triggers return the error instead of raising, and never arm retries."""

    sched = _scheduler(FakeSource(always_fail=True), gateway, fake_sleep)

    out = await sched.fetch_now({"start_date": "2024-01-01", "end_date": "2024-01-02"})

    assert out["success"] is False
    assert out["message"].startswith("Error: Failed to fetch data after 1 attempts")
    assert out["error"]["kind"] == "FetchError"
    assert sched.retry_count == 0
    assert sched.status()["retry_pending"] is False


@pytest.mark.asyncio
async def test_manual_fetch_with_explicit_range_and_skip(gateway, fake_sleep):
    source = FakeSource(_payload())
    sched = _scheduler(source, gateway, fake_sleep)

    out = await sched.fetch_now({"start_date": "2024-01-01T00:00:00Z", "end_date": "2024-01-01T00:00:00Z"})

    assert out["success"] is True
    assert out["skipped"] is True
    assert out["start_date"] == "2024-01-01T00:00:00+00:00"
    assert source.calls == []


class FailsOnRelease(BlockingSource):
    """Blocks until released, then fails like a dropped connection."""

    async def fetch(self, start_iso, end_iso, granularity):
        await super().fetch(start_iso, end_iso, granularity)
        raise SourceError("connection reset", "transport")


@pytest.mark.asyncio
async def test_failure_during_stop_arms_no_retry(gateway, fake_sleep):
    """A fetch failing while the scheduler stops leaves no pending retry behind."""

    source = FailsOnRelease(_payload())
    sched = _scheduler(source, gateway, fake_sleep)
    await sched.start()
    sched._spawn(sched.run_scheduled())
    await source.started.wait()

    stopping = asyncio.create_task(sched.stop())
    await asyncio.sleep(0)
    source.release.set()
    await stopping

    assert sched.state is SchedulerState.STOPPED
    assert sched.last_error.startswith("FetchError")
    assert sched.status()["retry_pending"] is False
