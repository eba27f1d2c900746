"""Tests for environment-driven configuration."""
from datetime import date, datetime, timezone

import pytest

from common.config.settings import (
    ConverterConfig,
    DatabaseConfig,
    FeedConfig,
    GateConfig,
    PipelineConfig,
    RetentionConfig,
    StagingConfig,
    parse_bounds,
)
from common.errors import ConfigError


@pytest.fixture
def clean_env(monkeypatch):
    for name in ('DATABASE_URL', 'DB_SSLMODE', 'PRICEFEED_BULK_URL', 'PRICEFEED_DATASET',
                 'PRICEFEED_PARSE_MODE', 'PRICEFEED_MIN_ROWS', 'PRICEFEED_FILTER_PAPER_ONLY',
                 'PRICEFEED_GATE_BOUNDS', 'PRICEFEED_GATE_BOUNDS_FILTERED', 'PRICEFEED_TIMEZONE',
                 'PRICEFEED_RETENTION_DAYS', 'PRICEFEED_STAGE_BATCH_SIZE', 'PRICEFEED_EXCLUDE_SET_TYPES'):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    """Test the documented defaults apply without environment overrides."""
    config = PipelineConfig.default()

    assert config.database.url is None
    assert config.database.sslmode == 'prefer'
    assert config.feed.dataset == 'default_cards'
    assert config.feed.bulk_url is None
    assert config.converter.parse_mode == 'stream'
    assert config.converter.stall_seconds == 30.0
    assert config.converter.min_rows == 100_000
    assert config.staging.batch_size == 10_000
    assert config.gate.bounds == (0.95, 1.05)
    assert config.gate.filtered_bounds == (0.90, 1.10)
    assert config.retention.days == 30
    assert config.retention.batch_size == 200_000
    assert config.retention.pause_ms == 100
    assert config.timezone == 'UTC'


def test_environment_overrides(clean_env):
    """Test environment variables override the defaults."""
    clean_env.setenv('DATABASE_URL', 'postgresql://u@db/prices')
    clean_env.setenv('DB_SSLMODE', 'verify-full')
    clean_env.setenv('PRICEFEED_DATASET', 'unique_prints')
    clean_env.setenv('PRICEFEED_FILTER_PAPER_ONLY', 'true')
    clean_env.setenv('PRICEFEED_EXCLUDE_SET_TYPES', 'token, memorabilia')
    clean_env.setenv('PRICEFEED_GATE_BOUNDS', '0.8,1.2')

    config = PipelineConfig.default()

    assert config.database.require_url() == 'postgresql://u@db/prices'
    assert config.database.sslmode == 'verify-full'
    assert config.feed.dataset == 'unique_prints'
    assert config.filtered_feed
    assert config.converter.excluded_set_types == ('token', 'memorabilia')
    assert config.gate.bounds_for(False) == (0.8, 1.2)
    assert config.gate.bounds_for(True) == (0.90, 1.10)


def test_missing_database_url(clean_env):
    """Test database commands need DATABASE_URL."""
    with pytest.raises(ConfigError, match='DATABASE_URL'):
        DatabaseConfig().require_url()


@pytest.mark.parametrize("name, value, factory", [
    ('PRICEFEED_DATASET', 'all_cards', FeedConfig),
    ('DB_SSLMODE', 'sometimes', DatabaseConfig),
    ('PRICEFEED_PARSE_MODE', 'lazy', ConverterConfig),
    ('PRICEFEED_MIN_ROWS', 'many', ConverterConfig),
    ('PRICEFEED_FILTER_PAPER_ONLY', 'maybe', ConverterConfig),
    ('PRICEFEED_STAGE_BATCH_SIZE', '0', StagingConfig),
    ('PRICEFEED_RETENTION_DAYS', '-1', RetentionConfig),
    ('PRICEFEED_GATE_BOUNDS', '1.1,0.9', GateConfig),
])
def test_invalid_values_raise_config_error(clean_env, name, value, factory):
    """Test invalid environment values fail fast with ConfigError."""
    clean_env.setenv(name, value)

    with pytest.raises(ConfigError):
        factory()


@pytest.mark.parametrize("raw", ["0.9", "a,b", "0,1", "1,2,3"])
def test_parse_bounds_rejects(raw):
    """Test malformed bounds are rejected."""
    with pytest.raises(ConfigError):
        parse_bounds(raw)


def test_unknown_timezone(clean_env):
    """Test an unknown timezone is a ConfigError."""
    clean_env.setenv('PRICEFEED_TIMEZONE', 'Mars/Olympus_Mons')

    with pytest.raises(ConfigError, match='PRICEFEED_TIMEZONE'):
        PipelineConfig.default()


def test_today_uses_configured_timezone(clean_env):
    """Test the target day is the calendar day in the configured zone."""
    clean_env.setenv('PRICEFEED_TIMEZONE', 'America/Santiago')
    config = PipelineConfig.default()
    # 02:00 UTC on the 14th is still the 13th in Santiago
    now = datetime(2025, 1, 14, 2, 0, tzinfo=timezone.utc)

    assert config.today(now) == date(2025, 1, 13)
