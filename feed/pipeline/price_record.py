"""
Per-record transform from a bulk feed object to a staging row.

Both parse modes (streaming scanner and whole-document fallback) go through
``RecordTransformer`` so they cannot drift apart.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Iterable, Optional
from uuid import UUID

from common.models.data_models import StagingRow

logger = logging.getLogger(__name__)

# Feed price keys, in staging column order (price_a, price_b, price_c)
FEED_PRICE_KEYS = ("usd", "usd_foil", "usd_etched")


@dataclass(frozen=True)
class ParsedPrice:
    """Result of parsing one feed price string."""
    value: Optional[Decimal] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_price(raw: Any) -> ParsedPrice:
    """
    Parse a feed price into a Decimal.

    Policy: missing or empty -> NULL; non-numeric, non-finite or negative ->
    NULL with an error description. Never raises.
    """
    if raw is None:
        return ParsedPrice()
    if isinstance(raw, bool):
        return ParsedPrice(error=f"boolean is not a price: {raw!r}")
    if isinstance(raw, (int, float, Decimal)):
        raw = repr(raw) if isinstance(raw, float) else str(raw)
    if not isinstance(raw, str):
        return ParsedPrice(error=f"unsupported price type {type(raw).__name__}")

    text = raw.strip()
    if text == "":
        return ParsedPrice()
    # Decimal() also accepts digit separators like "1_000"
    if "_" in text:
        return ParsedPrice(error=f"non-numeric price {raw!r}")
    try:
        value = Decimal(text)
    except InvalidOperation:
        return ParsedPrice(error=f"non-numeric price {raw!r}")
    if not value.is_finite():
        return ParsedPrice(error=f"non-finite price {raw!r}")
    if value < 0:
        return ParsedPrice(error=f"negative price {raw!r}")
    return ParsedPrice(value=value)


@dataclass(frozen=True)
class RecordFilter:
    """
    Inclusion rules applied before a record becomes a CSV row.

    Attributes:
        paper_only: Keep only non-digital records sold in paper
        require_price: Drop records without any valid price
        excluded_set_types: Drop records whose set_type is listed
    """
    paper_only: bool = False
    require_price: bool = False
    excluded_set_types: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_config(cls, converter_config) -> 'RecordFilter':
        return cls(
            paper_only=bool(converter_config.paper_only),
            require_price=bool(converter_config.require_price),
            excluded_set_types=frozenset(converter_config.excluded_set_types or ()),
        )

    @property
    def is_active(self) -> bool:
        return self.paper_only or self.require_price or bool(self.excluded_set_types)

    def allows_classification(self, record: Dict[str, Any]) -> bool:
        if self.paper_only:
            games = record.get("games")
            if record.get("digital") or not isinstance(games, list) or "paper" not in games:
                return False
        if self.excluded_set_types and record.get("set_type") in self.excluded_set_types:
            return False
        return True


def parse_external_id(raw: Any) -> Optional[UUID]:
    if not isinstance(raw, str):
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


@dataclass
class TransformStats:
    """Counters shared by a single conversion pass."""
    seen: int = 0
    written: int = 0
    filtered: int = 0
    invalid_ids: int = 0
    invalid_prices: int = 0

    def reset(self) -> None:
        self.seen = self.written = self.filtered = self.invalid_ids = self.invalid_prices = 0


class RecordTransformer:
    """Turns decoded feed objects into StagingRows, counting what it drops."""

    def __init__(self, price_day: date, record_filter: Optional[RecordFilter] = None):
        self.price_day = price_day
        self.record_filter = record_filter or RecordFilter()
        self.stats = TransformStats()

    def transform(self, record: Any) -> Optional[StagingRow]:
        """
        Map one feed record to a StagingRow, or None if it is filtered out.
        """
        self.stats.seen += 1

        if not isinstance(record, dict):
            self.stats.filtered += 1
            return None

        external_id = parse_external_id(record.get("id"))
        if external_id is None:
            self.stats.invalid_ids += 1
            self.stats.filtered += 1
            logger.debug("Dropping record with invalid id %r", record.get("id"))
            return None

        if not self.record_filter.allows_classification(record):
            self.stats.filtered += 1
            return None

        prices = record.get("prices")
        if not isinstance(prices, dict):
            prices = {}

        values = []
        for key in FEED_PRICE_KEYS:
            parsed = parse_price(prices.get(key))
            if not parsed.ok:
                self.stats.invalid_prices += 1
                logger.warning("Ignoring %s for %s: %s", key, external_id, parsed.error)
            values.append(parsed.value)

        row = StagingRow(external_id, values[0], values[1], values[2], self.price_day)
        if self.record_filter.require_price and not row.has_any_price():
            self.stats.filtered += 1
            return None

        self.stats.written += 1
        return row

    def transform_all(self, records: Iterable[Any]) -> Iterable[StagingRow]:
        for record in records:
            row = self.transform(record)
            if row is not None:
                yield row
