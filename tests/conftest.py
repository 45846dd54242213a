"""Pytest configuration and fakes shared across the test suite."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

# Ensure the project root is on sys.path so ``import balance_ingest`` works when
# running the test suite without installing the package.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from balance_ingest.client import BalanceSource, SourceError  # noqa: E402
from balance_ingest.load import BalanceGateway  # noqa: E402
from balance_ingest.models import CanonicalRecord, Granularity  # noqa: E402


def entry(category, value, percentage=0.0, at=None, color=None):
    """A REE content entry with a single value point."""
    point = {"value": value, "percentage": percentage}
    if at is not None:
        point["datetime"] = at
    attrs = {"values": [point]}
    if color:
        attrs["color"] = color
    return {"type": category, "attributes": attrs}


def section(kind, *entries):
    return {"type": kind, "attributes": {"content": list(entries)}}


def make_payload(*sections, **attrs):
    attrs.setdefault("title", "Balance eléctrico")
    attrs.setdefault("last-update", "2024-01-02T10:00:00.000+01:00")
    return {"data": {"type": "Balance", "attributes": attrs}, "included": list(sections)}


def series_entry(category, points):
    """A content entry with one value point per ``(datetime, value)`` pair."""
    return {
        "type": category,
        "attributes": {"values": [{"value": v, "percentage": 0, "datetime": at} for at, v in points]},
    }


class FakeSource(BalanceSource):
    """Returns `payload`, failing the first `fail_times` calls (or always)."""

    def __init__(self, payload=None, fail_times=0, always_fail=False, error=None):
        self.payload = payload
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.error = error or SourceError("connection refused", "transport")
        self.calls = []

    async def fetch(self, start_iso, end_iso, granularity):
        self.calls.append((start_iso, end_iso, granularity))
        if self.always_fail or self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        return self.payload


class BlockingSource(FakeSource):
    """Blocks every fetch until `release` is set."""

    def __init__(self, payload):
        super().__init__(payload)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch(self, start_iso, end_iso, granularity):
        self.calls.append((start_iso, end_iso, granularity))
        self.started.set()
        await self.release.wait()
        return self.payload


class MemoryGateway(BalanceGateway):
    """Dict-backed gateway keyed by (timestamp, granularity)."""

    def __init__(self):
        self.rows: dict = {}
        self.next_id = 1
        self.exists_calls = 0
        self.saved_batches: list[list[CanonicalRecord]] = []
        self.fail_count = False
        self.fail_save = False

    def _store(self, record):
        existing = self.rows.get(record.key)
        rid = existing.id if existing else self.next_id
        if not existing:
            self.next_id += 1
        stored = record.model_copy(update={"id": rid})
        self.rows[record.key] = stored
        return stored

    async def exists(self, timestamp, granularity):
        self.exists_calls += 1
        return (timestamp, Granularity(granularity)) in self.rows

    async def save(self, record):
        return self._store(record)

    async def save_many(self, records):
        if self.fail_save:
            raise RuntimeError("disk full")
        self.saved_batches.append(list(records))
        return [self._store(r) for r in records]

    async def update(self, record_id, record):
        for key, stored in list(self.rows.items()):
            if stored.id == record_id:
                del self.rows[key]
                updated = record.model_copy(update={"id": record_id})
                self.rows[updated.key] = updated
                return updated
        raise KeyError(record_id)

    async def find_by_id(self, record_id):
        return next((r for r in self.rows.values() if r.id == record_id), None)

    async def find_by_range(self, start, end, granularity=None, only_count=False, limit=100, skip=0):
        if self.fail_count:
            raise RuntimeError("count unavailable")
        found = sorted(
            (
                r
                for r in self.rows.values()
                if start <= r.timestamp <= end and (granularity is None or r.granularity == granularity)
            ),
            key=lambda r: r.timestamp,
        )
        if only_count:
            return len(found)
        return found[skip : skip + limit]

    async def find_most_recent(self, granularity=None):
        found = [r for r in self.rows.values() if granularity is None or r.granularity == granularity]
        return max(found, key=lambda r: r.timestamp, default=None)

    async def delete_range(self, start, end, granularity=None):
        doomed = [
            k
            for k, r in self.rows.items()
            if start <= r.timestamp <= end and (granularity is None or r.granularity == granularity)
        ]
        for k in doomed:
            del self.rows[k]
        return len(doomed)


class RecordingSleep:
    """Fake `asyncio.sleep` that records requested delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def gateway():
    return MemoryGateway()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()
