"""
Audit repository for ingestion_runs.

Rows are inserted as running and finalized exactly once.
"""
import logging
from datetime import datetime
from typing import Optional

from common.models.data_models import IngestionRun, RunStatus

logger = logging.getLogger(__name__)


class AuditRepository:
    """
    Repository for ingestion run audit rows.

    Responsibilities:
    - Insert a running row when a stage starts
    - Finalize it with status, timings and counts (only while still running)
    - Look up the most recent run for the retention precondition
    """

    def __init__(self, pool):
        """
        Initialize audit repository.

        Args:
            pool: PostgresConnectionPool instance
        """
        self.pool = pool

    def start_run(self, run: IngestionRun) -> int:
        """
        Insert a running audit row and return its id.

        The row is always inserted as running, even for a run that already
        ended (deferred tracking), so ``finish_run`` can finalize it.
        """
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO ingestion_runs (stage, started_at, status, price_day)
                VALUES (%s, %s, %s, %s)
                RETURNING id
                """,
                (run.stage, run.started_at, RunStatus.RUNNING.value, run.price_day),
            )
            run.id = cur.fetchone()[0]
            conn.commit()
            logger.debug("Started %s run #%s", run.stage, run.id)
            return run.id

    def finish_run(self, run: IngestionRun) -> bool:
        """
        Finalize a running audit row.

        Returns:
            False if the row was already finalized (nothing changed)
        """
        assignments = ", ".join(f"{name} = %s" for name in IngestionRun.METRIC_FIELDS)
        values = [getattr(run, name) for name in IngestionRun.METRIC_FIELDS]

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                UPDATE ingestion_runs SET
                    status = %s,
                    completed_at = %s,
                    price_day = COALESCE(%s, price_day),
                    error_message = %s,
                    {assignments}
                WHERE id = %s AND status = 'running'
                """,
                [run.status.value, run.completed_at, run.price_day, run.error_message, *values, run.id],
            )
            updated = cur.rowcount == 1
            conn.commit()

        if not updated:
            logger.warning("Audit row #%s was already finalized; leaving it untouched", run.id)
        return updated

    def latest_run_since(self, since: datetime, exclude_stage: Optional[str] = None) -> Optional[IngestionRun]:
        """Most recent run started at or after ``since``."""
        query = """
            SELECT id, stage, started_at, completed_at, status, price_day, error_message
            FROM ingestion_runs
            WHERE started_at >= %s
        """
        params = [since]
        if exclude_stage:
            query += " AND stage <> %s"
            params.append(exclude_stage)
        query += " ORDER BY started_at DESC, id DESC LIMIT 1"

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(query, params)
            row = cur.fetchone()
        return IngestionRun.from_db_row(row) if row else None
