"""
Data models for the price ingestion pipeline.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import List, Optional
from uuid import UUID


class PriceVariant(str, Enum):
    """Priced finish of an entity; one history row per variant per day."""

    PRIMARY = "primary"
    VARIANT_B = "variant_b"
    VARIANT_C = "variant_c"


class RunStatus(str, Enum):
    """Status of an ingestion_runs audit row."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ParseMode(str, Enum):
    """How the bulk JSON document was parsed."""

    STREAM = "stream"
    BUFFER = "buffer"


class PipelineState(Enum):
    """Daily cycle state machine"""
    PENDING = "PENDING"
    CONVERTING = "CONVERTING"
    STAGED = "STAGED"
    GATE_ALLOWED = "GATE_ALLOWED"
    GATE_DENIED = "GATE_DENIED"
    MERGED = "MERGED"
    AUDITED_COMPLETE = "AUDITED_COMPLETE"
    FAILED = "FAILED"


STAGING_COLUMNS = ("id", "price_a", "price_b", "price_c", "price_day")

GATE_ALLOWED_KEY = "stage_allowed"
GATE_RATIO_KEY = "stage_ratio"


@dataclass(frozen=True)
class StagingRow:
    """One feed record reduced to the staging columns."""

    external_id: UUID
    price_a: Optional[Decimal]
    price_b: Optional[Decimal]
    price_c: Optional[Decimal]
    price_day: date

    def has_any_price(self) -> bool:
        return any(p is not None for p in (self.price_a, self.price_b, self.price_c))

    def to_csv_fields(self) -> List[str]:
        """CSV field values; NULL is the empty string."""
        return [
            str(self.external_id),
            _decimal_field(self.price_a),
            _decimal_field(self.price_b),
            _decimal_field(self.price_c),
            self.price_day.isoformat(),
        ]

    def to_db_tuple(self) -> tuple:
        return (str(self.external_id), self.price_a, self.price_b, self.price_c, self.price_day)


def _decimal_field(value: Optional[Decimal]) -> str:
    return "" if value is None else format(value, "f")


@dataclass
class GatingState:
    """Persisted allow/deny decision written by the consistency gate."""

    allowed: bool
    ratio: float
    as_of_date: date
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "ratio": round(self.ratio, 6),
            "as_of_date": self.as_of_date.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class IngestionRun:
    """
    Append-only audit record per stage invocation.

    Inserted as RUNNING when the stage starts and finalized once when it
    ends; a finalized row is never touched again.
    """

    stage: str
    started_at: datetime
    price_day: Optional[date] = None
    status: RunStatus = RunStatus.RUNNING
    completed_at: Optional[datetime] = None
    id: Optional[int] = None
    download_ms: Optional[int] = None
    convert_ms: Optional[int] = None
    stage_ms: Optional[int] = None
    merge_ms: Optional[int] = None
    retention_ms: Optional[int] = None
    rows_in_source: Optional[int] = None
    rows_written: Optional[int] = None
    rows_filtered: Optional[int] = None
    rows_staged: Optional[int] = None
    rows_updated: Optional[int] = None
    history_upserted: Optional[int] = None
    rows_deleted: Optional[int] = None
    parse_mode: Optional[str] = None
    fallback_used: Optional[bool] = None
    ratio: Optional[float] = None
    error_message: Optional[str] = None

    METRIC_FIELDS = (
        "download_ms", "convert_ms", "stage_ms", "merge_ms", "retention_ms",
        "rows_in_source", "rows_written", "rows_filtered", "rows_staged",
        "rows_updated", "history_upserted", "rows_deleted",
        "parse_mode", "fallback_used", "ratio",
    )

    def record(self, **metrics) -> None:
        """Attach timings/counts gathered while the stage runs."""
        for name, value in metrics.items():
            if name not in self.METRIC_FIELDS:
                raise AttributeError(f"Unknown ingestion run metric: {name}")
            setattr(self, name, value)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "stage": self.stage,
            "status": self.status.value,
            "price_day": self.price_day.isoformat() if self.price_day else None,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
        }
        for name in self.METRIC_FIELDS:
            data[name] = getattr(self, name)
        return data

    @classmethod
    def from_db_row(cls, row: tuple) -> IngestionRun:
        """Create instance from (id, stage, started_at, completed_at, status, price_day, error_message)."""
        return cls(
            id=row[0],
            stage=row[1],
            started_at=row[2],
            completed_at=row[3],
            status=RunStatus(row[4]),
            price_day=row[5],
            error_message=row[6],
        )


@dataclass
class ConversionResult:
    """Outcome of one JSON-to-CSV conversion."""

    csv_path: Path
    price_day: date
    rows_in_source: int = 0
    rows_written: int = 0
    rows_filtered_out: int = 0
    parse_errors: int = 0
    invalid_prices: int = 0
    parse_mode: ParseMode = ParseMode.STREAM
    fallback_used: bool = False
    elapsed_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "csv_path": str(self.csv_path),
            "price_day": self.price_day.isoformat(),
            "rows_in_source": self.rows_in_source,
            "rows_written": self.rows_written,
            "rows_filtered_out": self.rows_filtered_out,
            "parse_errors": self.parse_errors,
            "invalid_prices": self.invalid_prices,
            "parse_mode": self.parse_mode.value,
            "fallback_used": self.fallback_used,
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass
class StageLoadResult:
    rows_read: int
    rows_staged: int
    elapsed_ms: int
    dry_run: bool = False
    download_ms: Optional[int] = None
    conversion: Optional[ConversionResult] = None

    def to_dict(self) -> dict:
        data = {
            "rows_read": self.rows_read,
            "rows_staged": self.rows_staged,
            "elapsed_ms": self.elapsed_ms,
            "dry_run": self.dry_run,
            "download_ms": self.download_ms,
        }
        if self.conversion is not None:
            data["conversion"] = self.conversion.to_dict()
        return data


@dataclass
class GateDecision:
    allowed: bool
    ratio: float
    rows_staged: int
    entity_count: int
    lower_bound: float
    upper_bound: float
    as_of_date: date
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "ratio": round(self.ratio, 6),
            "rows_staged": self.rows_staged,
            "entity_count": self.entity_count,
            "bounds": [self.lower_bound, self.upper_bound],
            "as_of_date": self.as_of_date.isoformat(),
            "dry_run": self.dry_run,
        }


@dataclass
class MergeCounts:
    entities_updated: int
    history_upserted: int


@dataclass
class MergeResult:
    skipped: bool
    price_day: date
    reason: Optional[str] = None
    entities_updated: int = 0
    history_upserted: int = 0
    merge_ms: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "price_day": self.price_day.isoformat(),
            "entities_updated": self.entities_updated,
            "history_upserted": self.history_upserted,
            "merge_ms": self.merge_ms,
            "dry_run": self.dry_run,
        }


@dataclass
class RetentionResult:
    skipped: bool
    cutoff: date
    reason: Optional[str] = None
    rows_deleted: int = 0
    batches: int = 0
    retention_ms: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "cutoff": self.cutoff.isoformat(),
            "rows_deleted": self.rows_deleted,
            "batches": self.batches,
            "retention_ms": self.retention_ms,
            "dry_run": self.dry_run,
        }


@dataclass
class DailyRunReport:
    price_day: date
    state: PipelineState = PipelineState.PENDING
    conversion: Optional[ConversionResult] = None
    stage: Optional[StageLoadResult] = None
    gate: Optional[GateDecision] = None
    merge: Optional[MergeResult] = None
    error: Optional[str] = None
    transitions: List[PipelineState] = field(default_factory=list)
    dry_run: bool = False

    def advance(self, state: PipelineState) -> None:
        self.state = state
        self.transitions.append(state)

    @property
    def ok(self) -> bool:
        if self.dry_run and self.state == PipelineState.GATE_ALLOWED:
            # Dry runs stop before the merge
            return True
        return self.state == PipelineState.AUDITED_COMPLETE

    def to_dict(self) -> dict:
        return {
            "price_day": self.price_day.isoformat(),
            "state": self.state.value,
            "transitions": [s.value for s in self.transitions],
            "conversion": self.conversion.to_dict() if self.conversion else None,
            "stage": self.stage.to_dict() if self.stage else None,
            "gate": self.gate.to_dict() if self.gate else None,
            "merge": self.merge.to_dict() if self.merge else None,
            "error": self.error,
            "dry_run": self.dry_run,
        }
