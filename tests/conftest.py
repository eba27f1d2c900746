"""Test fixtures for price feed ingestion tests."""
import json
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

import pytest

from common.config.settings import (
    ConverterConfig,
    DatabaseConfig,
    EntityTableConfig,
    FeedConfig,
    GateConfig,
    PipelineConfig,
    RetentionConfig,
    StagingConfig,
)
from common.errors import TransactionError
from common.models.data_models import GatingState, IngestionRun, MergeCounts, PriceVariant, RunStatus


PRICE_DAY = date(2025, 1, 13)

ID_A = UUID('0000579f-7b35-4ed3-b44c-db2a538066fe')
ID_B = UUID('00006596-1166-4a79-8443-ca9f82e6db4e')
ID_C = UUID('0000a54c-a511-4925-92dc-01b937f9afad')


# Mock classes (importable for direct instantiation in tests)
@dataclass
class PriceHistoryRecord:
    """Row of price_history as kept by the in-memory store."""

    external_id: UUID
    variant: PriceVariant
    price: Decimal
    observed_at: datetime
    source: str
    price_day: date


def staged_prices(row) -> Dict[PriceVariant, Optional[Decimal]]:
    return {
        PriceVariant.PRIMARY: row.price_a,
        PriceVariant.VARIANT_B: row.price_b,
        PriceVariant.VARIANT_C: row.price_c,
    }


class FakeCursor:
    """Cursor double recording every statement it is given."""

    def __init__(self, results: Optional[List[Any]] = None, rowcounts: Optional[List[int]] = None,
                 fail_on: Optional[str] = None):
        self.statements: List[Dict[str, Any]] = []
        self.results = list(results or [])
        self.rowcounts = list(rowcounts or [])
        self.fail_on = fail_on
        self.rowcount = -1

    def execute(self, statement, params=None):
        # Composed statements cannot be rendered without a live connection
        text = statement if isinstance(statement, str) else repr(statement)
        self.statements.append({'sql': text, 'params': params})
        if self.fail_on and self.fail_on in text:
            import psycopg2
            raise psycopg2.DatabaseError(f"simulated failure on {self.fail_on}")
        self.rowcount = self.rowcounts.pop(0) if self.rowcounts else 0

    def fetchone(self):
        return self.results.pop(0) if self.results else None

    def fetchall(self):
        rows = self.results.pop(0) if self.results else []
        return rows


class FakeConnection:
    """Connection double counting commits and rollbacks."""

    def __init__(self, cursor: FakeCursor):
        self._cursor = cursor
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return self._cursor

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class FakePool:
    """Pool double with the same commit/rollback contract as PostgresConnectionPool."""

    def __init__(self, cursor: Optional[FakeCursor] = None):
        self.cursor = cursor or FakeCursor()
        self.connection = FakeConnection(self.cursor)
        self.closed = False

    @contextmanager
    def get_connection(self):
        try:
            yield self.connection
            self.connection.commit()
        except Exception:
            self.connection.rollback()
            raise

    def close(self):
        self.closed = True


class InMemoryPriceStore:
    """
    PriceStore implementation backed by dictionaries.

    Staging reloads and merges are applied only once they complete, the way
    the PostgreSQL transactions behave.
    """

    def __init__(self, entity_ids=()):
        self.staging = {}
        self.entities = {
            eid: {'price_a': None, 'price_b': None, 'price_c': None, 'updated_at': None}
            for eid in entity_ids
        }
        self.history = {}
        self.gating_state: Optional[GatingState] = None
        self.runs: Dict[int, IngestionRun] = {}
        self.fail_merge = False
        self.deleted_batches: List[int] = []
        self.closed = False
        self._next_run_id = 1

    # staging
    def replace_staging(self, batches):
        staged = {}
        for batch in batches:
            for row in batch:
                staged[row.external_id] = row
        self.staging = staged
        return len(staged)

    def count_staged(self):
        return len(self.staging)

    def staged_price_days(self):
        return sorted({row.price_day for row in self.staging.values()})

    def count_entities(self):
        return len(self.entities)

    # gate
    def load_gating_state(self):
        return self.gating_state

    def save_gating_state(self, state):
        self.gating_state = replace(state, updated_at=datetime.now(timezone.utc))

    # merge
    def merge_staged(self, price_day, source):
        if self.fail_merge:
            raise TransactionError(f"Merge for {price_day} rolled back: simulated", stage="merge")

        entities = {eid: dict(values) for eid, values in self.entities.items()}
        history = dict(self.history)
        updated = upserted = 0
        now = datetime.now(timezone.utc)
        for row in self.staging.values():
            if row.price_day != price_day:
                continue
            if row.external_id in entities:
                current = entities[row.external_id]
                for column in ('price_a', 'price_b', 'price_c'):
                    staged = getattr(row, column)
                    if staged is not None:
                        current[column] = staged
                current['updated_at'] = now
                updated += 1
            for variant, price in staged_prices(row).items():
                if price is not None:
                    history[(row.external_id, variant, price_day)] = PriceHistoryRecord(
                        row.external_id, variant, price, now, source, price_day,
                    )
                    upserted += 1

        self.entities = entities
        self.history = history
        return MergeCounts(entities_updated=updated, history_upserted=upserted)

    def count_merge_candidates(self, price_day):
        rows = [r for r in self.staging.values() if r.price_day == price_day]
        matched = sum(1 for r in rows if r.external_id in self.entities)
        candidates = sum(1 for r in rows for p in staged_prices(r).values() if p is not None)
        return matched, candidates

    # retention
    def seed_history(self, external_id, variant, price_day, price='1.00', source='bulk-feed'):
        self.history[(external_id, variant, price_day)] = PriceHistoryRecord(
            external_id, variant, Decimal(price), datetime.now(timezone.utc), source, price_day,
        )

    def count_history_before(self, cutoff):
        return sum(1 for key in self.history if key[2] < cutoff)

    def delete_history_batch(self, cutoff, limit):
        doomed = [key for key in self.history if key[2] < cutoff][:limit]
        for key in doomed:
            del self.history[key]
        self.deleted_batches.append(len(doomed))
        return len(doomed)

    # audit
    def start_run(self, run):
        run.id = self._next_run_id
        self._next_run_id += 1
        self.runs[run.id] = replace(run, status=RunStatus.RUNNING)
        return run.id

    def finish_run(self, run):
        if self.runs[run.id].status != RunStatus.RUNNING:
            return False
        self.runs[run.id] = replace(run)
        return True

    def latest_run_since(self, since, exclude_stage=None):
        candidates = [
            run for run in self.runs.values()
            if run.started_at >= since and run.stage != exclude_stage
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda run: (run.started_at, run.id))

    def add_run(self, stage, status, started_at):
        run = IngestionRun(stage=stage, started_at=started_at, status=status, price_day=PRICE_DAY)
        self.start_run(run)
        self.runs[run.id] = replace(run)
        return run

    def runs_for(self, stage):
        return [run for run in self.runs.values() if run.stage == stage]

    def close(self):
        self.closed = True


def make_record(external_id=None, usd="1.00", usd_foil=None, usd_etched=None, **extra) -> Dict[str, Any]:
    """Feed record shaped like the provider's bulk objects."""
    record = {
        'object': 'card',
        'id': str(external_id or uuid4()),
        'name': extra.pop('name', 'Sample Card'),
        'games': extra.pop('games', ['paper', 'mtgo']),
        'digital': extra.pop('digital', False),
        'set_type': extra.pop('set_type', 'expansion'),
        'prices': {
            'usd': usd,
            'usd_foil': usd_foil,
            'usd_etched': usd_etched,
            'eur': '0.90',
            'tix': None,
        },
    }
    record.update(extra)
    return record


def feed_bytes(records: List[Dict[str, Any]]) -> bytes:
    """Serialize records the way the bulk file is laid out (one object per line)."""
    body = ",\n".join(json.dumps(record) for record in records)
    return f"[\n{body}\n]\n".encode('utf-8')


def chunked(data: bytes, size: int) -> List[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


# Fixtures
@pytest.fixture
def pipeline_config(tmp_path):
    """Pipeline configuration independent of the environment."""
    return PipelineConfig(
        database=DatabaseConfig(url='postgresql://pricefeed@localhost/pricefeed_test', sslmode='disable'),
        feed=FeedConfig(
            bulk_url=None,
            metadata_url='https://feed.example.test/bulk-data',
            dataset='default_cards',
            user_agent='pricefeed-tests/1.0',
            timeout=5.0,
            max_retries=0,
            chunk_size=64,
        ),
        converter=ConverterConfig(
            parse_mode='stream',
            stall_seconds=30.0,
            min_rows=1,
            paper_only=False,
            require_price=False,
            excluded_set_types=(),
        ),
        staging=StagingConfig(batch_size=2, work_dir=str(tmp_path)),
        gate=GateConfig(bounds=(0.95, 1.05), filtered_bounds=(0.90, 1.10)),
        retention=RetentionConfig(days=30, batch_size=2, pause_ms=0),
        entity=EntityTableConfig(
            table='price_entity',
            id_column='external_id',
            price_columns=('price_a', 'price_b', 'price_c'),
            updated_at_column='price_updated_at',
        ),
        timezone='UTC',
        history_source='bulk-feed',
    )


@pytest.fixture
def scenario_records():
    """Three feed records: all three prices, only price_a, and no price at all."""
    return [
        make_record(ID_A, usd="1.00", usd_foil="2.50", usd_etched="3.75"),
        make_record(ID_B, usd="0.10"),
        make_record(ID_C, usd=None),
    ]


@pytest.fixture
def memory_store():
    """In-memory store whose entity table holds the three scenario ids."""
    return InMemoryPriceStore(entity_ids=[ID_A, ID_B, ID_C])
