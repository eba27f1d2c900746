"""
Retention repository for price_history.
"""
import logging
from datetime import date

logger = logging.getLogger(__name__)


class RetentionRepository:
    """
    Deletes history rows older than a cutoff in bounded batches.

    Each batch is its own transaction so long sweeps never hold one big lock.
    """

    def __init__(self, pool):
        """
        Initialize retention repository.

        Args:
            pool: PostgresConnectionPool instance
        """
        self.pool = pool

    def count_before(self, cutoff: date) -> int:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM price_history WHERE price_day < %s", (cutoff,))
            return cur.fetchone()[0]

    def delete_batch(self, cutoff: date, limit: int) -> int:
        """Delete up to ``limit`` rows with price_day < cutoff; returns rows deleted."""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                DELETE FROM price_history
                WHERE id IN (
                    SELECT id FROM price_history
                    WHERE price_day < %s
                    LIMIT %s
                )
                """,
                (cutoff, limit),
            )
            deleted = cur.rowcount
            conn.commit()
            logger.debug("Deleted %s history rows older than %s", deleted, cutoff)
            return deleted
