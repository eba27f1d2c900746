"""PostgreSQL price store - Facade Pattern delegating to specialized components."""
import logging
from datetime import date, datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from common.config.settings import DatabaseConfig, EntityTableConfig
from common.models.data_models import GatingState, IngestionRun, MergeCounts, StagingRow
from ..interfaces import PriceStore
from .pool import PostgresConnectionPool
from .schema import SchemaManager
from .repositories.audit import AuditRepository
from .repositories.entities import EntityRepository
from .repositories.gating import GatingStateRepository
from .repositories.merge import MergeRepository
from .repositories.retention import RetentionRepository
from .repositories.staging import StagingRepository

logger = logging.getLogger(__name__)


class PostgresPriceStore(PriceStore):
    """
    PostgreSQL price store facade - delegates to specialized components.

    Delegates to:
    - PostgresConnectionPool: Connection management
    - SchemaManager: DDL operations
    - Repository classes: Data access per table family
    """

    def __init__(self, database: DatabaseConfig, entity: EntityTableConfig,
                 pool: Optional[PostgresConnectionPool] = None):
        """
        Initialize price store.

        Args:
            database: Database configuration
            entity: Column mapping of the price entity table
            pool: Existing pool (a new one is created from ``database`` otherwise)
        """
        self.entity = entity
        self.pool = pool or PostgresConnectionPool.from_config(database)

        self.schema_manager = SchemaManager(self.pool)
        self.staging_repo = StagingRepository(self.pool)
        self.entity_repo = EntityRepository(self.pool, entity)
        self.gating_repo = GatingStateRepository(self.pool)
        self.merge_repo = MergeRepository(self.pool, entity)
        self.retention_repo = RetentionRepository(self.pool)
        self.audit_repo = AuditRepository(self.pool)

    def initialize_schema(self, with_entity_table: bool = False) -> None:
        """Create pipeline tables (and a development entity table on request)."""
        self.schema_manager.initialize_schema(self.entity if with_entity_table else None)

    def replace_staging(self, batches: Iterable[Sequence[StagingRow]]) -> int:
        return self.staging_repo.replace_all(batches)

    def count_staged(self) -> int:
        return self.staging_repo.count()

    def staged_price_days(self) -> List[date]:
        return self.staging_repo.price_days()

    def count_entities(self) -> int:
        return self.entity_repo.count()

    def load_gating_state(self) -> Optional[GatingState]:
        return self.gating_repo.load()

    def save_gating_state(self, state: GatingState) -> None:
        self.gating_repo.save(state)

    def merge_staged(self, price_day: date, source: str) -> MergeCounts:
        return self.merge_repo.merge(price_day, source)

    def count_merge_candidates(self, price_day: date) -> Tuple[int, int]:
        return self.merge_repo.count_candidates(price_day)

    def count_history_before(self, cutoff: date) -> int:
        return self.retention_repo.count_before(cutoff)

    def delete_history_batch(self, cutoff: date, limit: int) -> int:
        return self.retention_repo.delete_batch(cutoff, limit)

    def start_run(self, run: IngestionRun) -> int:
        return self.audit_repo.start_run(run)

    def finish_run(self, run: IngestionRun) -> bool:
        return self.audit_repo.finish_run(run)

    def latest_run_since(self, since: datetime, exclude_stage: Optional[str] = None) -> Optional[IngestionRun]:
        return self.audit_repo.latest_run_since(since, exclude_stage)

    def close(self):
        """Close all connections in the pool."""
        self.pool.close()
