"""
balance_ingest/models.py

Canonical record model for REE electric balance snapshots.

Responsibilities
----------------
- Define :class:`BalanceItem`, one labelled generation/demand/interchange
  line, with values coerced to finite floats.
- Define :class:`CanonicalRecord`, the normalized store-ready snapshot, and
  the derived metrics computed from its items (totals, balance, renewable
  share).
- Map records to and from the flat row shape used by the persistence layer.

Conventions
-----------
- All timestamps are timezone-aware UTC. Naive inputs are treated as UTC.
- Derived metrics are never stored as an independent source of truth: they
  are recomputed by :meth:`CanonicalRecord.to_row` on every write.
- Derived metrics never return NaN or infinity; any non-finite intermediate
  collapses to 0.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping

from dateutil import parser as dtp
from pydantic import BaseModel, Field, field_validator


class Granularity(str, Enum):
    """Temporal resolution of a record (REE ``time_trunc``)."""

    HOUR = "hour"
    DAY = "day"
    MONTH = "month"
    YEAR = "year"


# Category slugs counted as renewable when computing `renewable_share`.
RENEWABLE_CATEGORIES = frozenset(
    {
        "hydro",
        "wind",
        "solar-pv",
        "solar-thermal",
        "other-renewables",
        "hydro-wind-hybrid",
    }
)

# Labels REE uses for the same categories, lowercased. The Spanish labels come
# from the /es/ endpoints, the English ones from /en/.
_RENEWABLE_LABELS = RENEWABLE_CATEGORIES | {
    "hidráulica",
    "eólica",
    "solar fotovoltaica",
    "solar térmica",
    "otras renovables",
    "hidroeólica",
    "hydro",
    "wind",
    "solar photovoltaic",
    "solar thermal",
    "other renewables",
    "hydroeolian",
}

# Category used for the placeholder item inserted into empty sections.
PLACEHOLDER_CATEGORY = "unavailable"


def finite_float(value: Any) -> float:
    """Coerce `value` to a finite float; blanks, garbage, NaN and inf become 0."""
    if value is None or value == "":
        return 0.0
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    return out if math.isfinite(out) else 0.0


def is_renewable(category: str) -> bool:
    return category.strip().lower() in _RENEWABLE_LABELS


def to_utc(value: datetime | str) -> datetime:
    """Parse an ISO-8601 string (or accept a datetime) as an aware UTC datetime."""
    if isinstance(value, str):
        value = dtp.isoparse(value)
    elif not isinstance(value, datetime):
        raise TypeError(f"expected datetime or ISO string, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BalanceItem(BaseModel):
    """One generation/demand/interchange line.

    Attributes:
        category: Technology or flow label as reported upstream
            (e.g. "Eólica", "Demanda en b.c.").
        value_mw: Value in MW. Always finite.
        percentage: Share reported upstream. Always finite.
        color: Optional display colour hint from the API.
        unit: Unit label, "MW" unless the source says otherwise.
    """

    category: str
    value_mw: float = 0.0
    percentage: float = 0.0
    color: str | None = None
    unit: str = "MW"

    @field_validator("value_mw", "percentage", mode="before")
    @classmethod
    def coerce_finite(cls, v):
        return finite_float(v)

    @classmethod
    def placeholder(cls) -> "BalanceItem":
        return cls(category=PLACEHOLDER_CATEGORY, value_mw=0.0)


def _sum_mw(items: Iterable[BalanceItem]) -> float:
    total = math.fsum(finite_float(item.value_mw) for item in items)
    return total if math.isfinite(total) else 0.0


class CanonicalRecord(BaseModel):
    """Normalized electric balance snapshot for one (timestamp, granularity).

    `id`, `created_at` and `updated_at` are owned by the persistence gateway
    and stay ``None`` until the record is saved.
    """

    id: int | None = None
    timestamp: datetime
    granularity: Granularity
    generation: list[BalanceItem] = Field(default_factory=list)
    demand: list[BalanceItem] = Field(default_factory=list)
    interchange: list[BalanceItem] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v):
        """Normalize ISO strings and naive datetimes into aware UTC datetimes."""
        if isinstance(v, (str, datetime)):
            return to_utc(v)
        return v

    @property
    def key(self) -> tuple[datetime, Granularity]:
        return (self.timestamp, self.granularity)

    def total_generation(self) -> float:
        return _sum_mw(self.generation)

    def total_demand(self) -> float:
        return _sum_mw(self.demand)

    def balance(self) -> float:
        out = self.total_generation() - self.total_demand()
        return out if math.isfinite(out) else 0.0

    def renewable_share(self) -> float:
        """Percentage of total generation coming from renewable categories.

        Returns 0 when total generation is not positive, and clamps the result
        to ``[0, 100]`` so negative or inconsistent upstream values cannot push
        it out of range.
        """
        total = self.total_generation()
        if total <= 0:
            return 0.0
        renewable = _sum_mw(item for item in self.generation if is_renewable(item.category))
        share = renewable / total * 100
        if not math.isfinite(share):
            return 0.0
        return min(max(share, 0.0), 100.0)

    def to_row(self) -> dict[str, Any]:
        """Flatten into the column dict written by the gateway.

        Derived metrics are recomputed here so every write stores values
        consistent with the items.
        """
        return {
            "timestamp_utc": self.timestamp,
            "granularity": self.granularity.value,
            "generation": [item.model_dump() for item in self.generation],
            "demand": [item.model_dump() for item in self.demand],
            "interchange": [item.model_dump() for item in self.interchange],
            "total_generation_mw": self.total_generation(),
            "total_demand_mw": self.total_demand(),
            "balance_mw": self.balance(),
            "renewable_share_pct": self.renewable_share(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CanonicalRecord":
        """Rebuild a record from a stored row (derived columns are ignored)."""
        return cls(
            id=row.get("id"),
            timestamp=row["timestamp_utc"],
            granularity=row["granularity"],
            generation=row.get("generation") or [],
            demand=row.get("demand") or [],
            interchange=row.get("interchange") or [],
            metadata=row.get("metadata") or {},
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )
