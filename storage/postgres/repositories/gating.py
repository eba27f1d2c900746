"""
Gating state repository.

Persists the consistency gate decision in kv_state.
"""
import logging
from typing import Optional

from common.models.data_models import GATE_ALLOWED_KEY, GATE_RATIO_KEY, GatingState

logger = logging.getLogger(__name__)


class GatingStateRepository:
    """
    Repository for the gate rows of kv_state.

    ``stage_allowed`` carries the decision, ratio and as-of date;
    ``stage_ratio`` carries the ratio alone for dashboards.
    """

    UPSERT_SQL = """
        INSERT INTO kv_state (key, value_text, value_numeric, value_boolean, value_date, updated_at)
        VALUES (%s, %s, %s, %s, %s, NOW())
        ON CONFLICT (key) DO UPDATE SET
            value_text = EXCLUDED.value_text,
            value_numeric = EXCLUDED.value_numeric,
            value_boolean = EXCLUDED.value_boolean,
            value_date = EXCLUDED.value_date,
            updated_at = NOW()
    """

    def __init__(self, pool):
        """
        Initialize gating repository.

        Args:
            pool: PostgresConnectionPool instance
        """
        self.pool = pool

    def save(self, state: GatingState) -> None:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(self.UPSERT_SQL, (
                GATE_ALLOWED_KEY,
                'allowed' if state.allowed else 'denied',
                state.ratio,
                state.allowed,
                state.as_of_date,
            ))
            cur.execute(self.UPSERT_SQL, (
                GATE_RATIO_KEY,
                None,
                state.ratio,
                None,
                state.as_of_date,
            ))
            conn.commit()
            logger.debug("Saved gating state: %s", state.to_dict())

    def load(self) -> Optional[GatingState]:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT value_boolean, value_numeric, value_date, updated_at
                FROM kv_state
                WHERE key = %s
                """,
                (GATE_ALLOWED_KEY,),
            )
            row = cur.fetchone()

        if row is None or row[0] is None or row[2] is None:
            return None
        return GatingState(
            allowed=bool(row[0]),
            ratio=float(row[1]) if row[1] is not None else 0.0,
            as_of_date=row[2],
            updated_at=row[3],
        )
