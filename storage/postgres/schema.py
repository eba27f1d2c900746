"""
Schema management for the price pipeline tables.

Handles table creation, additive column migrations, and indexes.
"""
import logging
from typing import Optional

from psycopg2 import sql

from common.config.settings import EntityTableConfig

logger = logging.getLogger(__name__)


class SchemaManager:
    """
    Manages pipeline schema creation and migrations.

    Responsibilities:
    - Create the staging, history, kv_state and ingestion_runs tables
    - Add audit metric columns missing from older deployments
    - Optionally create a development copy of the price entity table
    """

    # Audit metric columns and their types; added in place when missing
    RUN_METRIC_COLUMNS = {
        'download_ms': 'INTEGER',
        'convert_ms': 'INTEGER',
        'stage_ms': 'INTEGER',
        'merge_ms': 'INTEGER',
        'retention_ms': 'INTEGER',
        'rows_in_source': 'INTEGER',
        'rows_written': 'INTEGER',
        'rows_filtered': 'INTEGER',
        'rows_staged': 'INTEGER',
        'rows_updated': 'INTEGER',
        'history_upserted': 'INTEGER',
        'rows_deleted': 'BIGINT',
        'parse_mode': 'TEXT',
        'fallback_used': 'BOOLEAN',
        'ratio': 'DOUBLE PRECISION',
    }

    def __init__(self, pool):
        """
        Initialize schema manager.

        Args:
            pool: PostgresConnectionPool instance
        """
        self.pool = pool

    def initialize_schema(self, entity: Optional[EntityTableConfig] = None):
        """
        Initialize pipeline schema.

        Args:
            entity: When given, also create the price entity table (development only)
        """
        with self.pool.get_connection() as conn:
            cur = conn.cursor()

            self._create_staging_table(cur)
            self._create_history_table(cur)
            self._create_kv_state_table(cur)
            self._create_ingestion_runs_table(cur)

            if entity is not None:
                self._create_entity_table(cur, entity)

            conn.commit()
            logger.info("Database schema initialized")

    def _create_staging_table(self, cur):
        """Create staging table (one row per external id)."""
        cur.execute("""
            CREATE TABLE IF NOT EXISTS daily_prices_stage (
                external_id UUID PRIMARY KEY,
                price_a NUMERIC,
                price_b NUMERIC,
                price_c NUMERIC,
                price_day DATE NOT NULL
            );
        """)
        logger.debug("Created daily_prices_stage table")

    def _create_history_table(self, cur):
        """Create price history table."""
        cur.execute("""
            CREATE TABLE IF NOT EXISTS price_history (
                id BIGSERIAL PRIMARY KEY,
                external_id UUID NOT NULL,
                variant TEXT NOT NULL CHECK (variant IN ('primary', 'variant_b', 'variant_c')),
                price NUMERIC NOT NULL,
                observed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                source TEXT NOT NULL,
                price_day DATE NOT NULL,
                CONSTRAINT price_history_entity_variant_day_key UNIQUE (external_id, variant, price_day)
            );
        """)

        # Retention deletes by day
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_price_history_price_day
            ON price_history (price_day);
        """)
        logger.debug("Created price_history table")

    def _create_kv_state_table(self, cur):
        """Create key-value state table used by the consistency gate."""
        cur.execute("""
            CREATE TABLE IF NOT EXISTS kv_state (
                key TEXT PRIMARY KEY,
                value_text TEXT,
                value_numeric DOUBLE PRECISION,
                value_boolean BOOLEAN,
                value_date DATE,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        logger.debug("Created kv_state table")

    def _create_ingestion_runs_table(self, cur):
        """Create audit table."""
        cur.execute("""
            CREATE TABLE IF NOT EXISTS ingestion_runs (
                id BIGSERIAL PRIMARY KEY,
                stage TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                status TEXT NOT NULL CHECK (status IN ('running', 'completed', 'failed')),
                price_day DATE,
                error_message TEXT
            );
        """)

        for column, column_type in self.RUN_METRIC_COLUMNS.items():
            self._ensure_column(cur, 'ingestion_runs', column, column_type)

        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_ingestion_runs_started
            ON ingestion_runs (started_at DESC);
        """)
        logger.debug("Created ingestion_runs table")

    def _ensure_column(self, cur, table_name: str, column: str, column_type: str):
        """Add a column when an older deployment lacks it."""
        cur.execute(
            """
            SELECT 1
            FROM information_schema.columns
            WHERE table_schema = current_schema()
              AND table_name = %s
              AND column_name = %s
            """,
            (table_name, column),
        )
        if not cur.fetchone():
            logger.info(f"Adding missing {column} column to {table_name}")
            cur.execute(
                sql.SQL("ALTER TABLE {} ADD COLUMN {} {}").format(
                    sql.Identifier(table_name),
                    sql.Identifier(column),
                    sql.SQL(column_type)
                )
            )

    def _create_entity_table(self, cur, entity: EntityTableConfig):
        """Create a development copy of the externally owned entity table."""
        price_a, price_b, price_c = entity.price_columns
        cur.execute(
            sql.SQL("""
                CREATE TABLE IF NOT EXISTS {table} (
                    {id} UUID PRIMARY KEY,
                    {price_a} NUMERIC,
                    {price_b} NUMERIC,
                    {price_c} NUMERIC,
                    {updated_at} TIMESTAMPTZ
                );
            """).format(
                table=sql.Identifier(entity.table),
                id=sql.Identifier(entity.id_column),
                price_a=sql.Identifier(price_a),
                price_b=sql.Identifier(price_b),
                price_c=sql.Identifier(price_c),
                updated_at=sql.Identifier(entity.updated_at_column),
            )
        )
        logger.debug(f"Created entity table {entity.table}")
