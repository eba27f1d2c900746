"""
Merge engine: applies the gated staging table to current prices and history.
"""
import logging
import time
from datetime import date
from typing import Optional

from common.config.settings import PipelineConfig
from common.models.data_models import MergeResult
from core.stages.audit import AuditTracker
from storage.interfaces import PriceStore

logger = logging.getLogger(__name__)


class MergeEngine:
    """
    Runs the set-based merge once the consistency gate allowed the day.

    A skipped merge leaves entities, history and the audit table untouched.
    """

    def __init__(self, config: PipelineConfig, store: PriceStore):
        self.config = config
        self.store = store

    def skip_reason(self, price_day: date) -> Optional[str]:
        """Why the merge must not run for ``price_day``, or None."""
        state = self.store.load_gating_state()
        if state is None:
            return "no gating state recorded"
        if state.as_of_date != price_day:
            return f"gating state is from {state.as_of_date}, expected {price_day}"
        if not state.allowed:
            return f"gate denied {price_day} (ratio {state.ratio:.4f})"

        staged_days = self.store.staged_price_days()
        if not staged_days:
            return "staging table is empty"
        if staged_days != [price_day]:
            listed = ", ".join(d.isoformat() for d in staged_days)
            return f"staging holds price days {listed}, expected {price_day}"
        return None

    def merge(self, price_day: date, dry_run: bool = False) -> MergeResult:
        """
        Merge staging into the entity table and price history.

        Raises:
            TransactionError: The merge transaction was rolled back
        """
        reason = self.skip_reason(price_day)
        if reason:
            logger.warning("Skipping merge for %s: %s", price_day, reason)
            return MergeResult(skipped=True, price_day=price_day, reason=reason, dry_run=dry_run)

        if dry_run:
            matched, candidates = self.store.count_merge_candidates(price_day)
            logger.info(
                "Dry run: merge for %s would update %s entities and upsert %s history rows",
                price_day, matched, candidates,
            )
            return MergeResult(skipped=False, price_day=price_day, entities_updated=matched,
                               history_upserted=candidates, dry_run=True)

        # Deferred: the audit row is only written once the merge transaction has finished
        with AuditTracker(self.store, 'merge', price_day, deferred=True) as tracker:
            start = time.monotonic()
            counts = self.store.merge_staged(price_day, self.config.history_source)
            merge_ms = int((time.monotonic() - start) * 1000)
            tracker.record(
                merge_ms=merge_ms,
                rows_updated=counts.entities_updated,
                history_upserted=counts.history_upserted,
            )

        return MergeResult(
            skipped=False,
            price_day=price_day,
            entities_updated=counts.entities_updated,
            history_upserted=counts.history_upserted,
            merge_ms=merge_ms,
        )
