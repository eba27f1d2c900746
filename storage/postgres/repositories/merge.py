"""
Merge repository.

Applies staged prices to the entity table and the price history in one
transaction.
"""
import logging
from datetime import date
from typing import Tuple

import psycopg2
from psycopg2 import sql

from common.config.settings import EntityTableConfig
from common.errors import TransactionError
from common.models.data_models import MergeCounts, PriceVariant

logger = logging.getLogger(__name__)

# (variant, staging column) pairs, one UNION ALL branch each
HISTORY_BRANCHES = (
    (PriceVariant.PRIMARY, 'price_a'),
    (PriceVariant.VARIANT_B, 'price_b'),
    (PriceVariant.VARIANT_C, 'price_c'),
)


class MergeRepository:
    """
    Repository for the set-based merge.

    Responsibilities:
    - UPDATE every entity row matched by a staged id
    - Upsert one history row per (entity, variant, day) with a non-null price
    - Roll both back together on any database error
    """

    def __init__(self, pool, entity: EntityTableConfig):
        """
        Initialize merge repository.

        Args:
            pool: PostgresConnectionPool instance
            entity: Column mapping of the price entity table
        """
        self.pool = pool
        self.entity = entity

    def _update_statement(self) -> sql.Composed:
        # A null staged price keeps the entity's current value
        price_a, price_b, price_c = self.entity.price_columns
        return sql.SQL("""
            UPDATE {table} AS e SET
                {price_a} = COALESCE(s.price_a, e.{price_a}),
                {price_b} = COALESCE(s.price_b, e.{price_b}),
                {price_c} = COALESCE(s.price_c, e.{price_c}),
                {updated_at} = NOW()
            FROM daily_prices_stage s
            WHERE e.{id} = s.external_id
              AND s.price_day = %(price_day)s
        """).format(
            table=sql.Identifier(self.entity.table),
            id=sql.Identifier(self.entity.id_column),
            price_a=sql.Identifier(price_a),
            price_b=sql.Identifier(price_b),
            price_c=sql.Identifier(price_c),
            updated_at=sql.Identifier(self.entity.updated_at_column),
        )

    @staticmethod
    def _history_statement() -> sql.Composed:
        branches = [
            sql.SQL("""
                SELECT external_id, {variant}, {column}, NOW(), %(source)s, price_day
                FROM daily_prices_stage
                WHERE {column} IS NOT NULL
                  AND price_day = %(price_day)s
            """).format(variant=sql.Literal(variant.value), column=sql.Identifier(column))
            for variant, column in HISTORY_BRANCHES
        ]
        return sql.SQL("""
            INSERT INTO price_history (external_id, variant, price, observed_at, source, price_day)
            {branches}
            ON CONFLICT (external_id, variant, price_day) DO UPDATE SET
                price = EXCLUDED.price,
                observed_at = EXCLUDED.observed_at,
                source = EXCLUDED.source
        """).format(branches=sql.SQL(" UNION ALL ").join(branches))

    def merge(self, price_day: date, source: str) -> MergeCounts:
        """
        Run the UPDATE and the history UPSERT as one transaction.

        Raises:
            TransactionError: Any database error; nothing was committed
        """
        params = {'price_day': price_day, 'source': source}
        try:
            with self.pool.get_connection() as conn:
                cur = conn.cursor()

                cur.execute(self._update_statement(), params)
                entities_updated = cur.rowcount

                cur.execute(self._history_statement(), params)
                history_upserted = cur.rowcount

                conn.commit()
        except psycopg2.Error as e:
            raise TransactionError(f"Merge for {price_day} rolled back: {e}", stage="merge") from e

        logger.info(
            "Merged %s: %s entities updated, %s history rows upserted",
            price_day, entities_updated, history_upserted,
        )
        return MergeCounts(entities_updated=entities_updated, history_upserted=history_upserted)

    def count_candidates(self, price_day: date) -> Tuple[int, int]:
        """
        Dry-run counts: (matched entities, history rows that would be upserted).
        """
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                sql.SQL("""
                    SELECT COUNT(*)
                    FROM {table} e
                    JOIN daily_prices_stage s ON e.{id} = s.external_id
                    WHERE s.price_day = %s
                """).format(
                    table=sql.Identifier(self.entity.table),
                    id=sql.Identifier(self.entity.id_column),
                ),
                (price_day,),
            )
            matched = cur.fetchone()[0]

            cur.execute(
                """
                SELECT
                    COUNT(price_a) + COUNT(price_b) + COUNT(price_c)
                FROM daily_prices_stage
                WHERE price_day = %s
                """,
                (price_day,),
            )
            candidates = cur.fetchone()[0] or 0
            return matched, candidates
