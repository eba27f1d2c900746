"""Storage interfaces using Protocol for duck typing."""
from datetime import date, datetime
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from common.models.data_models import GatingState, IngestionRun, MergeCounts, StagingRow


@runtime_checkable
class PriceStore(Protocol):
    """
    Protocol defining the persistence used by the pipeline stages.

    PostgresPriceStore implements it against PostgreSQL; tests use an
    in-memory implementation.
    """

    def replace_staging(self, batches: Iterable[Sequence[StagingRow]]) -> int:
        """
        Truncate staging and load every batch in one transaction.

        Returns:
            Number of rows in staging after the load
        """
        ...

    def count_staged(self) -> int:
        """Number of rows in staging."""
        ...

    def staged_price_days(self) -> List[date]:
        """Distinct price days present in staging."""
        ...

    def count_entities(self) -> int:
        """Number of rows in the price entity table."""
        ...

    def load_gating_state(self) -> Optional[GatingState]:
        """Last persisted gate decision, if any."""
        ...

    def save_gating_state(self, state: GatingState) -> None:
        """Persist the gate decision (upsert)."""
        ...

    def merge_staged(self, price_day: date, source: str) -> MergeCounts:
        """
        Apply staged prices to entities and history atomically.

        Raises:
            TransactionError: The transaction was rolled back
        """
        ...

    def count_merge_candidates(self, price_day: date) -> Tuple[int, int]:
        """(matched entities, candidate history rows) for a dry run."""
        ...

    def count_history_before(self, cutoff: date) -> int:
        """History rows with price_day < cutoff."""
        ...

    def delete_history_batch(self, cutoff: date, limit: int) -> int:
        """Delete at most ``limit`` rows with price_day < cutoff and commit."""
        ...

    def start_run(self, run: IngestionRun) -> int:
        """Insert a running audit row; returns its id."""
        ...

    def finish_run(self, run: IngestionRun) -> bool:
        """Finalize a running audit row; False if it was already final."""
        ...

    def latest_run_since(self, since: datetime, exclude_stage: Optional[str] = None) -> Optional[IngestionRun]:
        """Most recent audit row started at or after ``since``."""
        ...

    def close(self) -> None:
        """Close all connections and cleanup resources."""
        ...
