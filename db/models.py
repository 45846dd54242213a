"""
db/models.py

SQLAlchemy table definition mirroring the warehouse schema.

Responsibilities
----------------
- Provide a programmatic (SQLAlchemy Core) representation of the
  `electric_balance` table so tests and ad-hoc scripts can reference the
  schema without raw SQL.
- Keep column names/types aligned with `db/ddl.sql` and with
  `CanonicalRecord.to_row()`.

Conventions
-----------
- `(timestamp_utc, granularity)` is unique: one snapshot per instant and
  resolution. `id` is a surrogate key handed back to the pipeline.
- Item lists (generation, demand, interchange) are JSONB arrays of
  BalanceItem objects.
- *_mw columns are derived totals in megawatts, recomputed on every write.
"""

from sqlalchemy import (
    TIMESTAMP,
    BigInteger,
    CheckConstraint,
    Column,
    Float,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

metadata = MetaData()

electric_balance = Table(
    "electric_balance",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=True),
    Column("timestamp_utc", TIMESTAMP(timezone=True), nullable=False),
    Column("granularity", Text, nullable=False),
    # Item lists
    Column("generation", JSONB, nullable=False, server_default=text("'[]'::jsonb")),
    Column("demand", JSONB, nullable=False, server_default=text("'[]'::jsonb")),
    Column("interchange", JSONB, nullable=False, server_default=text("'[]'::jsonb")),
    # Derived metrics
    Column("total_generation_mw", Float, nullable=False, server_default=text("0")),
    Column("total_demand_mw", Float, nullable=False, server_default=text("0")),
    Column("balance_mw", Float, nullable=False, server_default=text("0")),
    Column("renewable_share_pct", Float, nullable=False, server_default=text("0")),
    Column("metadata", JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    # Lifecycle
    Column("created_at", TIMESTAMP(timezone=True), server_default=text("now()")),
    Column("updated_at", TIMESTAMP(timezone=True), server_default=text("now()")),
    UniqueConstraint("timestamp_utc", "granularity", name="uq_electric_balance_ts_granularity"),
    CheckConstraint(
        "granularity IN ('hour', 'day', 'month', 'year')", name="ck_electric_balance_granularity"
    ),
)
