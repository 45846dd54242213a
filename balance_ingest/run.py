"""
balance_ingest/run.py

Fetch-with-retry orchestrator for REE electric balance data.

Responsibilities
----------------
- Validate the requested window and granularity.
- Skip the fetch entirely when the store already holds at least the expected
  number of records for the window (idempotency short-circuit).
- Fetch the payload with bounded retries and exponential backoff, check its
  shape, normalize it, and persist only the records that are new (or all of
  them, as upserts, when forced).
- Expose a CLI for ad-hoc runs and backfills.

Conventions
-----------
- All timestamps are handled in UTC. Naive inputs are treated as UTC.
- Window is closed: [start, end].
- The expected record count is an approximation (days x 24 / 1 / 1/30 /
  1/365); it can be off by one around month and year boundaries.
"""

from __future__ import annotations

import argparse
import asyncio
import math
import sys
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal

from dateutil import parser as dtp
from loguru import logger

from .client import BalanceSource, ReeApiClient, format_api_date
from .config import load_settings
from .errors import ErrorKind, IngestionError
from .load import BalanceGateway, SqlBalanceGateway, get_engine
from .log import configure_logging
from .models import CanonicalRecord, Granularity
from .normalize import NormalizedBatch, normalize_batch
from .retry import RetryExhausted, RetryPolicy, exponential_backoff, retry_async

# Records expected per day of window, by granularity.
EXPECTED_PER_DAY = {
    Granularity.HOUR: 24,
    Granularity.DAY: 1,
    Granularity.MONTH: 1 / 30,
    Granularity.YEAR: 1 / 365,
}

DEFAULT_MAX_RETRIES = 3


def iso(dt: datetime) -> str:
    """Return an ISO-8601 string in UTC for a given datetime."""
    return dt.astimezone(timezone.utc).isoformat()


def parse_utc(s: str) -> datetime:
    """Parse an ISO-8601 string as a timezone-aware UTC datetime.

    Naive strings (no offset) are taken to be UTC already.
    """
    dt = dtp.isoparse(s)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value: datetime | str, field: str) -> datetime:
    """Accept a datetime or ISO string; raise INVALID_RANGE on anything else."""
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    if not isinstance(value, str):
        raise IngestionError(ErrorKind.INVALID_RANGE, f"invalid {field}: {value!r}")
    try:
        return parse_utc(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise IngestionError(ErrorKind.INVALID_RANGE, f"invalid {field}: {value!r}", exc) from exc


def parse_granularity(value: Granularity | str) -> Granularity:
    try:
        return Granularity(value)
    except ValueError as exc:
        raise IngestionError(ErrorKind.INVALID_RANGE, f"unknown granularity {value!r}", exc) from exc


def expected_record_count(start: datetime, end: datetime, granularity: Granularity) -> int:
    """Approximate number of records a complete window holds."""
    days = (end - start).total_seconds() / 86400
    # Rounded first so 60 days of months is 2, not 3.
    return math.ceil(round(days * EXPECTED_PER_DAY[granularity], 6))


@dataclass
class IngestResult:
    status: Literal["success", "skipped"]
    saved_count: int
    granularity: Granularity
    start_date: datetime
    end_date: datetime
    existing_count: int | None = None
    message: str = ""

    def to_dict(self) -> dict:
        out = asdict(self)
        out["granularity"] = self.granularity.value
        return out


@dataclass
class Completeness:
    complete: bool
    count: int
    expected: int


class FetchBalanceData:
    """One ingestion attempt: completeness check, fetch, normalize, save.

    Args:
        source: Where raw payloads come from.
        gateway: Where canonical records go.
        backoff: Delay (seconds) after the n-th failed fetch attempt.
        sleep: Awaitable sleep, replaceable by a fake clock in tests.
    """

    def __init__(
        self,
        source: BalanceSource,
        gateway: BalanceGateway,
        backoff: Callable[[int], float] = exponential_backoff,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.source = source
        self.gateway = gateway
        self.backoff = backoff
        self.sleep = sleep

    async def ingest(
        self,
        start_date: datetime | str,
        end_date: datetime | str,
        granularity: Granularity | str = Granularity.DAY,
        force_update: bool = False,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> IngestResult:
        """Run one ingestion for ``[start_date, end_date]`` at `granularity`.

        Returns:
            IngestResult: ``status="skipped"`` when the store already looked
            complete, otherwise ``status="success"`` with the number of
            records written.

        Raises:
            IngestionError: ``INVALID_RANGE`` for bad input,
                ``FETCH_ERROR`` after `max_retries` failed attempts,
                ``RESPONSE_SHAPE_ERROR`` / ``NORMALIZATION_ERROR`` for
                unusable payloads, ``PERSISTENCE_ERROR`` when saving fails.
        """
        start = parse_date(start_date, "start_date")
        end = parse_date(end_date, "end_date")
        gran = parse_granularity(granularity)
        if start > end:
            raise IngestionError(ErrorKind.INVALID_RANGE, f"start_date {iso(start)} is after end_date {iso(end)}")

        logger.info("Ingesting {} data from {} to {} (force_update={})", gran.value, iso(start), iso(end), force_update)

        try:
            existing = None
            if not force_update:
                existing = await self.check_existing(start, end, gran)
                if existing.complete:
                    logger.info("Data already present for this range ({} records), skipping", existing.count)
                    return IngestResult(
                        status="skipped",
                        saved_count=0,
                        granularity=gran,
                        start_date=start,
                        end_date=end,
                        existing_count=existing.count,
                        message="Data already exists for this range",
                    )

            payload = await self.fetch_with_retry(start, end, gran, max_retries)

            if not isinstance(payload, dict) or not payload.get("data") or not isinstance(payload.get("included"), list):
                raise IngestionError(ErrorKind.RESPONSE_SHAPE_ERROR, "payload lacks 'data' or 'included' sections")

            batch = self.normalize(payload, gran)
            saved = await self.save_records(batch.records, force_update)
        except IngestionError as exc:
            logger.error("Ingestion of {} data failed: {}", gran.value, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected error while ingesting {} data", gran.value)
            raise IngestionError(ErrorKind.FETCH_ERROR, f"unexpected ingestion failure: {exc}", exc) from exc

        return IngestResult(
            status="success",
            saved_count=saved,
            granularity=gran,
            start_date=start,
            end_date=end,
            existing_count=existing.count if existing else None,
            message="Successfully fetched and saved data from REE API",
        )

    async def check_existing(self, start: datetime, end: datetime, granularity: Granularity) -> Completeness:
        """Compare the stored count with the expected one.

        A failing count is logged and treated as "incomplete" so the
        ingestion proceeds to fetch.
        """
        expected = expected_record_count(start, end, granularity)
        try:
            count = await self.gateway.find_by_range(start, end, granularity, only_count=True)
        except Exception as exc:
            logger.warning("Error checking existing data, assuming incomplete: {}", exc)
            return Completeness(complete=False, count=0, expected=expected)
        return Completeness(complete=count >= expected, count=count, expected=expected)

    async def fetch_with_retry(self, start: datetime, end: datetime, granularity: Granularity, max_retries: int) -> dict:
        policy = RetryPolicy(max_attempts=max(1, max_retries), backoff=self.backoff)
        start_s, end_s = format_api_date(start), format_api_date(end)
        try:
            return await retry_async(
                lambda: self.source.fetch(start_s, end_s, granularity),
                policy,
                sleep=self.sleep,
                label=f"{granularity.value} fetch",
            )
        except RetryExhausted as exc:
            raise IngestionError(
                ErrorKind.FETCH_ERROR,
                f"Failed to fetch data after {exc.attempts} attempts: {exc.last_error}",
                exc.last_error,
            ) from exc.last_error

    def normalize(self, payload: dict, granularity: Granularity) -> NormalizedBatch:
        """Normalize `payload`; failures outside the error taxonomy become NORMALIZATION_ERROR."""
        try:
            return normalize_batch(payload, granularity)
        except IngestionError:
            raise
        except Exception as exc:
            raise IngestionError(ErrorKind.NORMALIZATION_ERROR, f"Error normalizing REE payload: {exc}", exc) from exc

    async def save_records(self, records: Sequence[CanonicalRecord], force_update: bool) -> int:
        """Persist `records` in order; returns how many were written."""
        if not records:
            logger.warning("No data to save")
            return 0

        logger.info("Saving {} electric balance record(s)", len(records))
        try:
            if force_update:
                to_save = list(records)
            else:
                to_save = [r for r in records if not await self.gateway.exists(r.timestamp, r.granularity)]
                if not to_save:
                    logger.info("All records already exist in the store")
                    return 0
            await self.gateway.save_many(to_save)
        except IngestionError:
            raise
        except Exception as exc:
            raise IngestionError(ErrorKind.PERSISTENCE_ERROR, f"Error saving electric balance data: {exc}", exc) from exc
        return len(to_save)


def main(argv=None):
    """CLI entry point for a one-shot ingestion.

    Args:
        argv: Optional list of CLI arguments (useful for testing).

    Returns:
        int: Exit code (0 on success, 1 on ingestion failure).
    """
    parser = argparse.ArgumentParser()
    parser.add_argument("--granularity", default="day", choices=[g.value for g in Granularity])
    parser.add_argument("--days", type=int, default=7, help="How many days back to fetch")
    parser.add_argument("--start-date")
    parser.add_argument("--end-date")
    parser.add_argument("--force-update", action="store_true")
    parser.add_argument("--max-retries", type=int, default=None)
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level)

    now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
    start = args.start_date or now - timedelta(days=args.days)
    end = args.end_date or now

    source = ReeApiClient(base_url=settings.api.base_url, lang=settings.api.lang, timeout=settings.api.timeout)
    fetcher = FetchBalanceData(source, SqlBalanceGateway(get_engine()))

    try:
        result = asyncio.run(
            fetcher.ingest(
                start,
                end,
                args.granularity,
                force_update=args.force_update,
                max_retries=args.max_retries or settings.api.retry_attempts,
            )
        )
    except IngestionError as exc:
        print(f"Failed. {exc}", file=sys.stderr)
        return 1

    print(f"Done. Result: {result.to_dict()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
