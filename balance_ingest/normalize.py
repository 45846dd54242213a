"""
balance_ingest/normalize.py

Normalization layer from REE balance payloads to canonical records.

Responsibilities
----------------
- Define `SECTION_KINDS`, translating REE section types (Spanish and English
  endpoints) to the four section kinds the pipeline understands.
- Decode every section entry into either an item draft or a `DecodeIssue`,
  so malformed entries are reported instead of silently defaulted.
- Assemble one `CanonicalRecord` per snapshot, or one per observation when
  the payload carries a dense series.

Payload shape
-------------
REE answers in JSON:API style::

    {
      "data": {"type": ..., "attributes": {"title", "last-update", ...}},
      "included": [
        {"type": "Renovable",
         "attributes": {"content": [
            {"type": "Eólica",
             "attributes": {"color": "#...",
                            "values": [{"value", "percentage", "datetime"}]}}
         ]}}
      ]
    }

Content entries may also carry a flat ``value`` / ``percentage`` instead of
``attributes.values``.

Notes
-----
- Storage is not a canonical category: a negative storage value is a demand
  item (absolute value), a non-negative one a generation item.
- Empty `generation` or `demand` lists receive one placeholder item
  (category "unavailable", 0 MW). This is the only intentional default.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from loguru import logger

from .errors import ErrorKind, IngestionError
from .models import BalanceItem, CanonicalRecord, Granularity, finite_float, to_utc


class SectionKind(str, Enum):
    GENERATION = "generation"
    DEMAND = "demand"
    INTERCHANGE = "interchange"
    STORAGE = "storage"


# Mapping from lowercased REE section types to section kinds.
SECTION_KINDS = {
    # Generation
    "renovable": SectionKind.GENERATION,
    "no-renovable": SectionKind.GENERATION,
    "renewable": SectionKind.GENERATION,
    "non-renewable": SectionKind.GENERATION,
    "generation": SectionKind.GENERATION,
    # Demand
    "demanda": SectionKind.DEMAND,
    "demand": SectionKind.DEMAND,
    # Interchange
    "intercambios internacionales": SectionKind.INTERCHANGE,
    "international exchanges": SectionKind.INTERCHANGE,
    "interchange": SectionKind.INTERCHANGE,
    # Storage
    "almacenamiento": SectionKind.STORAGE,
    "storage": SectionKind.STORAGE,
}

# Primary-object attributes that may carry the snapshot timestamp, in order
# of preference.
TIMESTAMP_KEYS = ("datetime", "last-update", "date")

DEFAULT_TITLE = "Balance eléctrico"
SOURCE_TAG = "REE API"


@dataclass(frozen=True)
class DecodeIssue:
    """A section or entry that could not be decoded."""

    section: str
    index: int | None
    reason: str


@dataclass(frozen=True)
class Observation:
    at: datetime | None
    value: float
    percentage: float


@dataclass(frozen=True)
class EntryDraft:
    """A decoded content entry, before it is split per observation."""

    kind: SectionKind
    category: str
    color: str | None
    observations: tuple[Observation, ...]


@dataclass
class NormalizedBatch:
    records: list[CanonicalRecord] = field(default_factory=list)
    issues: list[DecodeIssue] = field(default_factory=list)


def _parse_at(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return to_utc(raw)
    except (TypeError, ValueError, OverflowError):
        return None


def decode_entry(kind: SectionKind, section: str, index: int, entry: Any) -> EntryDraft | DecodeIssue:
    """Decode one content entry of a section."""
    if not isinstance(entry, Mapping):
        return DecodeIssue(section, index, "entry is not an object")

    attrs = entry.get("attributes") or {}
    if not isinstance(attrs, Mapping):
        return DecodeIssue(section, index, "entry attributes is not an object")
    category = entry.get("type") or attrs.get("title")
    if not isinstance(category, str) or not category:
        return DecodeIssue(section, index, "entry has no category")

    # Colour is a display hint only; anything but a string is dropped.
    color = attrs.get("color") or entry.get("color")
    if not isinstance(color, str):
        color = None
    raw_values = attrs.get("values")

    if isinstance(raw_values, list) and raw_values:
        observations = []
        for point in raw_values:
            if not isinstance(point, Mapping):
                return DecodeIssue(section, index, "value point is not an object")
            raw_at = point.get("datetime") or point.get("date")
            at = _parse_at(raw_at)
            if at is None and raw_at not in (None, ""):
                return DecodeIssue(section, index, "unparseable value datetime")
            observations.append(
                Observation(at, finite_float(point.get("value")), finite_float(point.get("percentage")))
            )
    elif "value" in entry:
        observations = [
            Observation(None, finite_float(entry.get("value")), finite_float(entry.get("percentage")))
        ]
    else:
        return DecodeIssue(section, index, "entry carries no values")

    return EntryDraft(kind, category, color, tuple(observations))


def decode_section(section: Any, index: int) -> tuple[list[EntryDraft], list[DecodeIssue]]:
    """Decode one `included` section into entry drafts and issues."""
    if not isinstance(section, Mapping):
        return [], [DecodeIssue(f"#{index}", None, "section is not an object")]

    label = str(section.get("type") or f"#{index}")
    kind = SECTION_KINDS.get(label.strip().lower())
    if kind is None:
        return [], [DecodeIssue(label, None, "unknown section type")]

    attrs = section.get("attributes") or {}
    if not isinstance(attrs, Mapping):
        return [], [DecodeIssue(label, None, "section attributes is not an object")]
    content = attrs.get("content")
    if not isinstance(content, list):
        return [], [DecodeIssue(label, None, "section has no content list")]

    drafts: list[EntryDraft] = []
    issues: list[DecodeIssue] = []
    for i, entry in enumerate(content):
        out = decode_entry(kind, label, i, entry)
        if isinstance(out, DecodeIssue):
            issues.append(out)
        else:
            drafts.append(out)
    return drafts, issues


def _resolve_granularity(requested: Granularity | str | None, attrs: Mapping) -> Granularity:
    raw = requested.value if isinstance(requested, Granularity) else requested
    raw = raw or attrs.get("time-trunc") or Granularity.DAY.value
    try:
        return Granularity(raw)
    except ValueError as exc:
        raise IngestionError(
            ErrorKind.NORMALIZATION_ERROR, f"unknown granularity {raw!r}", exc
        ) from exc


def _series_times(attrs: Mapping, drafts: list[EntryDraft], issues: list[DecodeIssue]) -> list[datetime]:
    """Observation timestamps when the payload is a dense series, else []."""
    points = attrs.get("values")
    if isinstance(points, list) and points:
        times = []
        for i, point in enumerate(points):
            raw = (point.get("datetime") or point.get("date")) if isinstance(point, Mapping) else None
            at = _parse_at(raw)
            if at is None:
                issues.append(DecodeIssue("data", i, "series point has no usable datetime"))
                continue
            times.append(at)
        return sorted(set(times))

    seen = {obs.at for draft in drafts for obs in draft.observations if obs.at is not None}
    return sorted(seen) if len(seen) > 1 else []


def _attr_time(attrs: Mapping, key: str) -> datetime | None:
    raw = attrs.get(key)
    if raw is None or raw == "":
        return None
    at = _parse_at(raw)
    if at is None:
        raise IngestionError(
            ErrorKind.NORMALIZATION_ERROR, f"unparseable timestamp in data.attributes.{key}: {raw!r}"
        )
    return at


def _snapshot_time(attrs: Mapping, drafts: list[EntryDraft]) -> datetime:
    """Pick the instant a single snapshot describes.

    An explicit ``datetime`` wins, then the one observation datetime shared by
    the entries, then ``last-update`` and ``date``.
    """
    at = _attr_time(attrs, "datetime")
    if at is not None:
        return at

    seen = {obs.at for draft in drafts for obs in draft.observations if obs.at is not None}
    if len(seen) == 1:
        return seen.pop()

    for key in TIMESTAMP_KEYS[1:]:
        at = _attr_time(attrs, key)
        if at is not None:
            return at
    raise IngestionError(ErrorKind.NORMALIZATION_ERROR, "payload carries no timestamp source")


def _pick(draft: EntryDraft, at: datetime | None, position: int | None) -> Observation | None:
    if at is None:
        return draft.observations[0]
    for obs in draft.observations:
        if obs.at == at:
            return obs
    # Entries without per-point datetimes line up with the series by position.
    if position is not None and all(obs.at is None for obs in draft.observations):
        if position < len(draft.observations):
            return draft.observations[position]
    return None


def build_record(
    drafts: list[EntryDraft],
    timestamp: datetime,
    granularity: Granularity,
    metadata: dict,
    at: datetime | None = None,
    position: int | None = None,
) -> CanonicalRecord:
    """Assemble one record from entry drafts, applying storage and placeholder rules."""
    generation: list[BalanceItem] = []
    demand: list[BalanceItem] = []
    interchange: list[BalanceItem] = []

    for draft in drafts:
        obs = _pick(draft, at, position)
        if obs is None:
            continue
        item = BalanceItem(
            category=draft.category,
            value_mw=abs(obs.value) if draft.kind is SectionKind.STORAGE else obs.value,
            percentage=obs.percentage,
            color=draft.color,
        )
        if draft.kind is SectionKind.GENERATION:
            generation.append(item)
        elif draft.kind is SectionKind.DEMAND:
            demand.append(item)
        elif draft.kind is SectionKind.INTERCHANGE:
            interchange.append(item)
        elif obs.value < 0:
            demand.append(item)
        else:
            generation.append(item)

    if not generation:
        generation.append(BalanceItem.placeholder())
    if not demand:
        demand.append(BalanceItem.placeholder())

    return CanonicalRecord(
        timestamp=timestamp,
        granularity=granularity,
        generation=generation,
        demand=demand,
        interchange=interchange,
        metadata=dict(metadata),
    )


def normalize_batch(payload: Any, granularity: Granularity | str | None = None) -> NormalizedBatch:
    """Normalize one REE payload into canonical records plus decode issues.

    Args:
        payload: Parsed JSON body returned by the REE API.
        granularity: Requested granularity. Falls back to the payload's
            ``time-trunc`` attribute when not given.

    Returns:
        NormalizedBatch: Records in ascending timestamp order and every
        decode issue met on the way.

    Raises:
        IngestionError: ``NORMALIZATION_ERROR`` when the payload has no
            ``data`` object or no timestamp can be located.
    """
    primary = payload.get("data") if isinstance(payload, Mapping) else None
    if not isinstance(primary, Mapping):
        raise IngestionError(ErrorKind.NORMALIZATION_ERROR, "payload has no primary 'data' object")

    attrs = primary.get("attributes") or {}
    if not isinstance(attrs, Mapping):
        raise IngestionError(ErrorKind.NORMALIZATION_ERROR, "data.attributes is not an object")
    resolved = _resolve_granularity(granularity, attrs)

    metadata = {
        "title": attrs.get("title") or DEFAULT_TITLE,
        "description": attrs.get("description") or "",
        "source": SOURCE_TAG,
    }
    if attrs.get("last-update"):
        metadata["last_update"] = attrs["last-update"]

    batch = NormalizedBatch()
    drafts: list[EntryDraft] = []
    sections = payload.get("included") or []
    for i, section in enumerate(sections):
        section_drafts, section_issues = decode_section(section, i)
        drafts.extend(section_drafts)
        batch.issues.extend(section_issues)

    times = _series_times(attrs, drafts, batch.issues)
    if times:
        for position, at in enumerate(times):
            batch.records.append(build_record(drafts, at, resolved, metadata, at=at, position=position))
    else:
        at = _snapshot_time(attrs, drafts)
        batch.records.append(build_record(drafts, at, resolved, metadata))

    if batch.issues:
        logger.warning("Normalization met {} decode issue(s): {}", len(batch.issues), batch.issues[:5])
    return batch


def normalize(payload: Any, granularity: Granularity | str | None = None) -> list[CanonicalRecord]:
    """Return only the records of :func:`normalize_batch`."""
    return normalize_batch(payload, granularity).records
