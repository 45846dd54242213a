"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from balance_ingest.config import DEFAULT_CRON, load_settings, parse_granularities, to_bool
from balance_ingest.models import Granularity


def test_defaults():
    """An empty environment yields hour/day/month schedulers with the stock crons."""

    settings = load_settings({})

    assert settings.scheduling_enabled is True
    assert settings.api.base_url == "https://apidatos.ree.es"
    assert settings.api.lang == "es"
    assert [s.granularity for s in settings.schedulers] == [Granularity.HOUR, Granularity.DAY, Granularity.MONTH]
    hour = settings.scheduler_for(Granularity.HOUR)
    assert hour.schedule == DEFAULT_CRON[Granularity.HOUR]
    assert hour.lookback_days == 2
    assert hour.retry_delay == 300
    assert hour.max_retries == 3
    assert settings.scheduler_for(Granularity.YEAR) is None


def test_overrides():
    env = {
        "REE_API_LANG": "en",
        "REE_API_RETRY_ATTEMPTS": "5",
        "SCHEDULED_TASKS_ENABLED": "false",
        "SCHEDULED_GRANULARITIES": "year, day,day",
        "YEARLY_FETCH_CRON": "30 2 1 1 *",
        "HISTORICAL_DAYS_DAYS": "10",
        "SCHEDULER_RETRY_DELAY": "60",
        "SCHEDULER_FORCE_UPDATE": "yes",
        "INITIAL_FETCH_ENABLED": "0",
        "LOG_LEVEL": "debug",
    }

    settings = load_settings(env)

    assert settings.api.lang == "en"
    assert settings.scheduling_enabled is False
    assert [s.granularity for s in settings.schedulers] == [Granularity.YEAR, Granularity.DAY]
    year = settings.scheduler_for(Granularity.YEAR)
    day = settings.scheduler_for(Granularity.DAY)
    assert year.schedule == "30 2 1 1 *"
    assert year.lookback_days == 1825
    assert day.lookback_days == 10
    assert day.retry_delay == 60
    assert day.force_update is True
    assert day.initial_fetch is False
    assert day.fetch_max_retries == 5
    assert settings.log_level == "DEBUG"


def test_invalid_cron_rejected():
    with pytest.raises(ValidationError):
        load_settings({"HOURLY_FETCH_CRON": "every hour please"})


def test_invalid_number_rejected():
    with pytest.raises(ValidationError):
        load_settings({"SCHEDULER_MAX_RETRIES": "-1"})


def test_unknown_granularity_rejected():
    with pytest.raises(ValueError):
        parse_granularities("hour,week")


@pytest.mark.parametrize(
    "raw, expected", [("true", True), ("YES", True), ("1", True), ("false", False), ("no", False), (None, False)]
)
def test_to_bool(raw, expected):
    assert to_bool(raw) is expected
