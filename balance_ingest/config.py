"""
balance_ingest/config.py

Environment-driven settings for the ingestion service.

Responsibilities
----------------
- Load `.env` for local development (`python-dotenv`).
- Read and validate every tunable into pydantic models: REE API access,
  scheduling (cron expressions, lookbacks, retries) and logging.

Environment Variables
---------------------
DB_URL
    SQLAlchemy connection string for PostgreSQL (read by `load.get_engine`).
REE_API_BASE_URL, REE_API_LANG, REE_API_TIMEOUT, REE_API_RETRY_ATTEMPTS
    REE REData access.
SCHEDULED_TASKS_ENABLED, SCHEDULED_GRANULARITIES
    Global switch and the granularities that get a scheduler.
HOURLY_FETCH_CRON, DAILY_FETCH_CRON, MONTHLY_FETCH_CRON, YEARLY_FETCH_CRON
    Cron expression per granularity.
INITIAL_FETCH_ENABLED, HISTORICAL_{HOURS,DAYS,MONTHS,YEARS}_DAYS
    Startup backfill switch and lookback (in days) per granularity.
SCHEDULER_RETRY_ON_FAILURE, SCHEDULER_RETRY_DELAY, SCHEDULER_MAX_RETRIES,
SCHEDULER_FORCE_UPDATE
    Failure-triggered retry policy of the schedulers.
LOG_LEVEL
    Minimum level of the stderr log sink.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from croniter import croniter
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .models import Granularity

# Load `.env` so local shells do not need to export variables manually.
load_dotenv()

DEFAULT_CRON = {
    Granularity.HOUR: "0 */1 * * *",  # every hour
    Granularity.DAY: "0 4 * * *",  # daily at 04:00
    Granularity.MONTH: "0 5 1 * *",  # first of the month at 05:00
    Granularity.YEAR: "0 6 1 1 *",  # 1 January at 06:00
}

DEFAULT_LOOKBACK_DAYS = {
    Granularity.HOUR: 2,
    Granularity.DAY: 60,
    Granularity.MONTH: 365,
    Granularity.YEAR: 1825,
}

_CRON_VARS = {
    Granularity.HOUR: "HOURLY_FETCH_CRON",
    Granularity.DAY: "DAILY_FETCH_CRON",
    Granularity.MONTH: "MONTHLY_FETCH_CRON",
    Granularity.YEAR: "YEARLY_FETCH_CRON",
}

_LOOKBACK_VARS = {
    Granularity.HOUR: "HISTORICAL_HOURS_DAYS",
    Granularity.DAY: "HISTORICAL_DAYS_DAYS",
    Granularity.MONTH: "HISTORICAL_MONTHS_DAYS",
    Granularity.YEAR: "HISTORICAL_YEARS_DAYS",
}


def to_bool(value: str | bool | None, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return value.strip().lower() in {"true", "yes", "1"}


class ApiSettings(BaseModel):
    base_url: str = "https://apidatos.ree.es"
    lang: str = "es"
    timeout: float = Field(default=10.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)


class SchedulerSettings(BaseModel):
    """Settings of one granularity scheduler."""

    granularity: Granularity
    schedule: str
    enabled: bool = True
    initial_fetch: bool = True
    lookback_days: int = Field(default=30, ge=0)
    retry_on_failure: bool = True
    retry_delay: float = Field(default=300.0, ge=0)  # seconds
    max_retries: int = Field(default=3, ge=0)
    force_update: bool = False
    fetch_max_retries: int = Field(default=3, ge=1)

    @field_validator("schedule")
    @classmethod
    def check_cron(cls, v: str) -> str:
        if not croniter.is_valid(v):
            raise ValueError(f"invalid cron expression: {v!r}")
        return v


class Settings(BaseModel):
    api: ApiSettings = Field(default_factory=ApiSettings)
    scheduling_enabled: bool = True
    schedulers: list[SchedulerSettings] = Field(default_factory=list)
    log_level: str = "INFO"

    def scheduler_for(self, granularity: Granularity) -> SchedulerSettings | None:
        for s in self.schedulers:
            if s.granularity == granularity:
                return s
        return None


def parse_granularities(raw: str) -> list[Granularity]:
    """Parse a comma separated list such as ``"hour,day,month"``."""
    out: list[Granularity] = []
    for part in raw.split(","):
        part = part.strip().lower()
        if part and Granularity(part) not in out:
            out.append(Granularity(part))
    return out


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build `Settings` from `env` (defaults to ``os.environ``).

    Raises:
        pydantic.ValidationError: On malformed numbers or cron expressions.
        ValueError: On an unknown granularity in ``SCHEDULED_GRANULARITIES``.
    """
    env = os.environ if env is None else env

    api = ApiSettings(
        base_url=env.get("REE_API_BASE_URL", "https://apidatos.ree.es"),
        lang=env.get("REE_API_LANG", "es"),
        timeout=env.get("REE_API_TIMEOUT", "10"),
        retry_attempts=env.get("REE_API_RETRY_ATTEMPTS", "3"),
    )

    enabled = to_bool(env.get("SCHEDULED_TASKS_ENABLED"), default=True)
    initial_fetch = to_bool(env.get("INITIAL_FETCH_ENABLED"), default=True)
    retry_on_failure = to_bool(env.get("SCHEDULER_RETRY_ON_FAILURE"), default=True)
    force_update = to_bool(env.get("SCHEDULER_FORCE_UPDATE"), default=False)

    schedulers = [
        SchedulerSettings(
            granularity=g,
            schedule=env.get(_CRON_VARS[g], DEFAULT_CRON[g]),
            enabled=enabled,
            initial_fetch=initial_fetch,
            lookback_days=env.get(_LOOKBACK_VARS[g], str(DEFAULT_LOOKBACK_DAYS[g])),
            retry_on_failure=retry_on_failure,
            retry_delay=env.get("SCHEDULER_RETRY_DELAY", "300"),
            max_retries=env.get("SCHEDULER_MAX_RETRIES", "3"),
            force_update=force_update,
            fetch_max_retries=api.retry_attempts,
        )
        for g in parse_granularities(env.get("SCHEDULED_GRANULARITIES", "hour,day,month"))
    ]

    return Settings(
        api=api,
        scheduling_enabled=enabled,
        schedulers=schedulers,
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )
