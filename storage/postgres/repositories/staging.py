"""
Staging repository.

Handles replacing the staging table contents with one day's feed rows.
"""
import logging
from datetime import date
from typing import Dict, Iterable, List, Sequence

from psycopg2 import extras

from common.models.data_models import StagingRow

logger = logging.getLogger(__name__)


class StagingRepository:
    """
    Repository for daily_prices_stage.

    Responsibilities:
    - Truncate and reload staging in a single transaction
    - Collapse duplicate ids (last occurrence wins)
    - Report staged row counts and price days
    """

    INSERT_SQL = """
        INSERT INTO daily_prices_stage (external_id, price_a, price_b, price_c, price_day)
        VALUES %s
        ON CONFLICT (external_id) DO UPDATE SET
            price_a = EXCLUDED.price_a,
            price_b = EXCLUDED.price_b,
            price_c = EXCLUDED.price_c,
            price_day = EXCLUDED.price_day
    """

    def __init__(self, pool):
        """
        Initialize staging repository.

        Args:
            pool: PostgresConnectionPool instance
        """
        self.pool = pool

    def replace_all(self, batches: Iterable[Sequence[StagingRow]]) -> int:
        """
        Truncate staging and insert every batch.

        TRUNCATE and all inserts share one transaction, so a failure leaves
        the previous staging contents in place.

        Args:
            batches: Iterable of row batches

        Returns:
            Number of rows in staging after the load
        """
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("TRUNCATE daily_prices_stage")

            inserted = 0
            for batch in batches:
                data = _last_occurrence(batch)
                if not data:
                    continue
                extras.execute_values(cur, self.INSERT_SQL, data, page_size=len(data))
                inserted += len(data)
                logger.debug("Staged batch of %s rows (%s so far)", len(data), inserted)

            cur.execute("SELECT COUNT(*) FROM daily_prices_stage")
            staged = cur.fetchone()[0]

            conn.commit()
            logger.info("Staging reloaded: %s rows sent, %s rows staged", inserted, staged)
            return staged

    def count(self) -> int:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM daily_prices_stage")
            return cur.fetchone()[0]

    def price_days(self) -> List[date]:
        """Distinct price_day values currently staged."""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT DISTINCT price_day FROM daily_prices_stage ORDER BY price_day")
            return [row[0] for row in cur.fetchall()]


def _last_occurrence(batch: Sequence[StagingRow]) -> List[tuple]:
    # One INSERT ... ON CONFLICT DO UPDATE cannot touch the same row twice
    rows: Dict[str, tuple] = {}
    for row in batch:
        data = row.to_db_tuple()
        rows.pop(data[0], None)
        rows[data[0]] = data
    return list(rows.values())
