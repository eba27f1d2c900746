"""
Configuration settings for the price ingestion pipeline.
Collects every environment-driven knob into one PipelineConfig that is
passed explicitly to each stage.
"""
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from common.errors import ConfigError

# Load environment variables
load_dotenv()

DEFAULT_METADATA_URL = "https://api.scryfall.com/bulk-data"
SUPPORTED_DATASETS = ("default_cards", "unique_prints")
PARSE_MODES = ("stream", "buffer")
SSL_MODES = ("disable", "allow", "prefer", "require", "verify-ca", "verify-full")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def parse_bounds(raw: str, name: str = "bounds") -> Tuple[float, float]:
    """Parse a "low,high" ratio pair."""
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != 2:
        raise ConfigError(f"{name} must look like 'low,high', got {raw!r}")
    try:
        low, high = float(parts[0]), float(parts[1])
    except ValueError:
        raise ConfigError(f"{name} must contain numbers, got {raw!r}") from None
    if low <= 0 or high < low:
        raise ConfigError(f"{name} must satisfy 0 < low <= high, got {raw!r}")
    return low, high


@dataclass
class DatabaseConfig:
    """Database configuration (managed PostgreSQL)"""
    url: Optional[str] = None
    sslmode: Optional[str] = None
    sslrootcert: Optional[str] = None
    min_conn: int = 1
    max_conn: int = 4

    def __post_init__(self):
        self.url = self.url or os.getenv('DATABASE_URL')
        self.sslmode = self.sslmode or os.getenv('DB_SSLMODE', 'prefer')
        self.sslrootcert = self.sslrootcert or os.getenv('DB_SSLROOTCERT')
        if self.sslmode not in SSL_MODES:
            raise ConfigError(f"DB_SSLMODE must be one of {SSL_MODES}, got {self.sslmode!r}")

    def require_url(self) -> str:
        if not self.url:
            raise ConfigError("DATABASE_URL environment variable is required")
        return self.url


@dataclass
class FeedConfig:
    """Bulk feed location and HTTP settings"""
    bulk_url: Optional[str] = None
    metadata_url: Optional[str] = None
    dataset: Optional[str] = None
    user_agent: Optional[str] = None
    timeout: Optional[float] = None
    max_retries: Optional[int] = None
    chunk_size: Optional[int] = None

    def __post_init__(self):
        self.bulk_url = self.bulk_url or os.getenv('PRICEFEED_BULK_URL') or None
        self.metadata_url = self.metadata_url or os.getenv('PRICEFEED_METADATA_URL', DEFAULT_METADATA_URL)
        self.dataset = self.dataset or os.getenv('PRICEFEED_DATASET', 'default_cards')
        self.user_agent = self.user_agent or os.getenv('PRICEFEED_USER_AGENT', 'pricefeed-ingest/1.0')
        if self.timeout is None:
            self.timeout = _env_float('PRICEFEED_HTTP_TIMEOUT', 60.0)
        if self.max_retries is None:
            self.max_retries = _env_int('PRICEFEED_HTTP_RETRIES', 3)
        if self.chunk_size is None:
            self.chunk_size = _env_int('PRICEFEED_CHUNK_SIZE', 256 * 1024)
        if self.dataset not in SUPPORTED_DATASETS:
            raise ConfigError(
                f"Invalid PRICEFEED_DATASET: {self.dataset}. Must be one of {SUPPORTED_DATASETS}"
            )


@dataclass
class ConverterConfig:
    """Stream converter behaviour"""
    parse_mode: Optional[str] = None
    stall_seconds: Optional[float] = None
    min_rows: Optional[int] = None
    paper_only: Optional[bool] = None
    require_price: Optional[bool] = None
    excluded_set_types: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        self.parse_mode = self.parse_mode or os.getenv('PRICEFEED_PARSE_MODE', 'stream')
        if self.stall_seconds is None:
            self.stall_seconds = _env_float('PRICEFEED_STALL_SECONDS', 30.0)
        if self.min_rows is None:
            self.min_rows = _env_int('PRICEFEED_MIN_ROWS', 100_000)
        if self.paper_only is None:
            self.paper_only = _env_bool('PRICEFEED_FILTER_PAPER_ONLY', False)
        if self.require_price is None:
            self.require_price = _env_bool('PRICEFEED_REQUIRE_PRICE', False)
        if self.excluded_set_types is None:
            raw = os.getenv('PRICEFEED_EXCLUDE_SET_TYPES', '')
            self.excluded_set_types = tuple(s.strip() for s in raw.split(',') if s.strip())
        if self.parse_mode not in PARSE_MODES:
            raise ConfigError(f"PRICEFEED_PARSE_MODE must be one of {PARSE_MODES}, got {self.parse_mode!r}")
        if self.stall_seconds <= 0:
            raise ConfigError("PRICEFEED_STALL_SECONDS must be positive")


@dataclass
class StagingConfig:
    """Stage loader settings"""
    batch_size: Optional[int] = None
    work_dir: Optional[str] = None

    def __post_init__(self):
        if self.batch_size is None:
            self.batch_size = _env_int('PRICEFEED_STAGE_BATCH_SIZE', 10_000)
        self.work_dir = self.work_dir or os.getenv('PRICEFEED_WORK_DIR', 'data')
        if self.batch_size <= 0:
            raise ConfigError("PRICEFEED_STAGE_BATCH_SIZE must be positive")


@dataclass
class GateConfig:
    """Consistency gate ratio bounds"""
    bounds: Optional[Tuple[float, float]] = None
    filtered_bounds: Optional[Tuple[float, float]] = None

    def __post_init__(self):
        if self.bounds is None:
            self.bounds = parse_bounds(os.getenv('PRICEFEED_GATE_BOUNDS', '0.95,1.05'), 'PRICEFEED_GATE_BOUNDS')
        if self.filtered_bounds is None:
            self.filtered_bounds = parse_bounds(
                os.getenv('PRICEFEED_GATE_BOUNDS_FILTERED', '0.90,1.10'),
                'PRICEFEED_GATE_BOUNDS_FILTERED',
            )

    def bounds_for(self, filtered: bool) -> Tuple[float, float]:
        return self.filtered_bounds if filtered else self.bounds


@dataclass
class RetentionConfig:
    """History retention settings"""
    days: Optional[int] = None
    batch_size: Optional[int] = None
    pause_ms: Optional[int] = None

    def __post_init__(self):
        if self.days is None:
            self.days = _env_int('PRICEFEED_RETENTION_DAYS', 30)
        if self.batch_size is None:
            self.batch_size = _env_int('PRICEFEED_RETENTION_BATCH_SIZE', 200_000)
        if self.pause_ms is None:
            self.pause_ms = _env_int('PRICEFEED_RETENTION_PAUSE_MS', 100)
        if self.days <= 0 or self.batch_size <= 0:
            raise ConfigError("Retention days and batch size must be positive")


@dataclass
class EntityTableConfig:
    """Documented columns of the externally owned price entity table"""
    table: Optional[str] = None
    id_column: Optional[str] = None
    price_columns: Optional[Tuple[str, str, str]] = None
    updated_at_column: Optional[str] = None

    def __post_init__(self):
        self.table = self.table or os.getenv('PRICEFEED_ENTITY_TABLE', 'price_entity')
        self.id_column = self.id_column or os.getenv('PRICEFEED_ENTITY_ID_COLUMN', 'external_id')
        if self.price_columns is None:
            raw = os.getenv('PRICEFEED_ENTITY_PRICE_COLUMNS', 'price_a,price_b,price_c')
            columns = tuple(c.strip() for c in raw.split(',') if c.strip())
            if len(columns) != 3:
                raise ConfigError("PRICEFEED_ENTITY_PRICE_COLUMNS must name exactly three columns")
            self.price_columns = columns
        self.updated_at_column = self.updated_at_column or os.getenv(
            'PRICEFEED_ENTITY_UPDATED_AT_COLUMN', 'price_updated_at'
        )


@dataclass
class PipelineConfig:
    """Complete pipeline configuration"""
    database: DatabaseConfig
    feed: FeedConfig
    converter: ConverterConfig
    staging: StagingConfig
    gate: GateConfig
    retention: RetentionConfig
    entity: EntityTableConfig
    timezone: str = 'UTC'
    history_source: str = 'bulk-feed'
    _zone: Optional[ZoneInfo] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        try:
            self._zone = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigError(f"Unknown PRICEFEED_TIMEZONE: {self.timezone!r}") from None

    @classmethod
    def default(cls):
        """Create configuration from the environment"""
        return cls(
            database=DatabaseConfig(),
            feed=FeedConfig(),
            converter=ConverterConfig(),
            staging=StagingConfig(),
            gate=GateConfig(),
            retention=RetentionConfig(),
            entity=EntityTableConfig(),
            timezone=os.getenv('PRICEFEED_TIMEZONE', 'UTC'),
            history_source=os.getenv('PRICEFEED_HISTORY_SOURCE', 'bulk-feed'),
        )

    def today(self, now: Optional[datetime] = None) -> date:
        """The run's target price day: today in the configured timezone."""
        now = now or datetime.now(self._zone)
        if now.tzinfo is None:
            return now.date()
        return now.astimezone(self._zone).date()

    @property
    def filtered_feed(self) -> bool:
        return bool(self.converter.paper_only)
