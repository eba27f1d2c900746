"""
Price entity repository (read-only counts over the externally owned table).
"""
import logging

from psycopg2 import sql

from common.config.settings import EntityTableConfig

logger = logging.getLogger(__name__)


class EntityRepository:
    """Counts rows of the configured price entity table."""

    def __init__(self, pool, entity: EntityTableConfig):
        self.pool = pool
        self.entity = entity

    def count(self) -> int:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(self.entity.table))
            )
            return cur.fetchone()[0]
