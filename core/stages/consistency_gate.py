"""
Consistency gate: compares staged volume against the entity table before a
merge is allowed.
"""
import logging
from datetime import date
from typing import Optional

from common.config.settings import PipelineConfig
from common.errors import VolumeAnomaly
from common.models.data_models import GateDecision, GatingState
from core.stages.audit import AuditTracker
from storage.interfaces import PriceStore

logger = logging.getLogger(__name__)


def compute_ratio(rows_staged: int, entity_count: int) -> float:
    """Staged rows per entity row; 0.0 when there are no entities."""
    if entity_count <= 0:
        return 0.0
    return rows_staged / entity_count


class ConsistencyGate:
    """
    Decides whether today's staging may be merged.

    The decision is persisted in kv_state keyed by date so a separately
    scheduled merge can read it. A denial is recorded as a failed gate run.
    """

    def __init__(self, config: PipelineConfig, store: PriceStore):
        self.config = config
        self.store = store

    def evaluate(self, price_day: date, dry_run: bool = False,
                 rows_staged: Optional[int] = None) -> GateDecision:
        """
        Compute and persist the gate decision for ``price_day``.

        Args:
            price_day: As-of date stored with the decision
            dry_run: Compute only; nothing is persisted
            rows_staged: Use this count instead of the staging table (dry runs
                of the full pipeline, where staging was not reloaded)
        """
        low, high = self.config.gate.bounds_for(self.config.filtered_feed)

        with AuditTracker(self.store, 'gate', price_day, enabled=not dry_run) as tracker:
            if rows_staged is None:
                rows_staged = self.store.count_staged()
            entity_count = self.store.count_entities()
            ratio = compute_ratio(rows_staged, entity_count)
            allowed = entity_count > 0 and low <= ratio <= high

            decision = GateDecision(
                allowed=allowed,
                ratio=ratio,
                rows_staged=rows_staged,
                entity_count=entity_count,
                lower_bound=low,
                upper_bound=high,
                as_of_date=price_day,
                dry_run=dry_run,
            )
            tracker.record(rows_staged=rows_staged, ratio=ratio)

            if not dry_run:
                self.store.save_gating_state(GatingState(allowed=allowed, ratio=ratio, as_of_date=price_day))

            if allowed:
                logger.info(
                    "Gate allowed %s: %s staged / %s entities = %.4f within [%s, %s]",
                    price_day, rows_staged, entity_count, ratio, low, high,
                )
            else:
                tracker.fail(VolumeAnomaly(
                    f"Staged/entity ratio {ratio:.4f} ({rows_staged}/{entity_count}) outside [{low}, {high}]",
                    observed=ratio,
                    expected=f"[{low}, {high}]",
                    stage="gate",
                ))
                logger.warning(
                    "Gate denied %s: %s staged / %s entities = %.4f outside [%s, %s]",
                    price_day, rows_staged, entity_count, ratio, low, high,
                )

        return decision
