"""
Retention sweeper: deletes price history older than the retention window.
"""
import logging
import time
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from common.config.settings import PipelineConfig
from common.models.data_models import RetentionResult, RunStatus
from core.stages.audit import AuditTracker, utc_now
from storage.interfaces import PriceStore

logger = logging.getLogger(__name__)

RETENTION_STAGE = 'retention'
LOOKBACK = timedelta(hours=24)


class RetentionSweeper:
    """
    Batched history cleanup.

    Runs only when the most recent ingestion run of the last 24 hours
    completed, so a broken day never shrinks the history further.
    """

    def __init__(self, config: PipelineConfig, store: PriceStore,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime] = utc_now):
        self.config = config
        self.store = store
        self.sleep = sleep
        self.clock = clock

    def cutoff_for(self, target_day: date) -> date:
        """Rows with price_day strictly before this date are deleted."""
        return target_day - timedelta(days=self.config.retention.days)

    def skip_reason(self) -> Optional[str]:
        latest = self.store.latest_run_since(self.clock() - LOOKBACK, exclude_stage=RETENTION_STAGE)
        if latest is None:
            return "no ingestion run in the last 24h"
        if latest.status != RunStatus.COMPLETED:
            return f"latest ingestion run #{latest.id} ({latest.stage}) is {latest.status.value}"
        return None

    def sweep(self, target_day: date, dry_run: bool = False) -> RetentionResult:
        cutoff = self.cutoff_for(target_day)

        reason = self.skip_reason()
        if reason:
            logger.warning("Skipping retention: %s", reason)
            return RetentionResult(skipped=True, cutoff=cutoff, reason=reason, dry_run=dry_run)

        if dry_run:
            count = self.store.count_history_before(cutoff)
            logger.info("Dry run: %s history rows older than %s would be deleted", count, cutoff)
            return RetentionResult(skipped=False, cutoff=cutoff, rows_deleted=count, dry_run=True)

        retention = self.config.retention
        total = 0
        batches = 0
        with AuditTracker(self.store, RETENTION_STAGE, target_day) as tracker:
            start = time.monotonic()
            while True:
                deleted = self.store.delete_history_batch(cutoff, retention.batch_size)
                if deleted:
                    total += deleted
                    batches += 1
                    logger.info("Retention batch %s: deleted %s rows (%s total)", batches, deleted, total)
                if deleted < retention.batch_size:
                    break
                self.sleep(retention.pause_ms / 1000.0)
            retention_ms = int((time.monotonic() - start) * 1000)
            tracker.record(rows_deleted=total, retention_ms=retention_ms)

        logger.info("Retention removed %s rows older than %s in %s batches", total, cutoff, batches)
        return RetentionResult(skipped=False, cutoff=cutoff, rows_deleted=total,
                               batches=batches, retention_ms=retention_ms)
