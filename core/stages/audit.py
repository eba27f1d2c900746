"""Audit trail for stage invocations (ingestion_runs)."""
import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional

from common.errors import PriceFeedError
from common.models.data_models import IngestionRun, RunStatus
from storage.interfaces import PriceStore

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def describe_error(exc: BaseException) -> str:
    """Message stored in ingestion_runs.error_message."""
    if isinstance(exc, PriceFeedError):
        return exc.audit_message()
    return f"{type(exc).__name__}: {exc}"


class AuditTracker:
    """
    Context manager that records one IngestionRun per stage invocation.

    The row is inserted as running on entry and finalized on exit: completed
    on a clean exit, failed when an exception escapes or ``fail()`` was
    called. With ``deferred=True`` nothing is written until exit, so the
    row only appears once the stage's own transaction has committed.
    A disabled tracker (dry runs) collects metrics without writing.
    """

    def __init__(self, store: PriceStore, stage: str, price_day: Optional[date],
                 enabled: bool = True, deferred: bool = False,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.enabled = enabled
        self.deferred = deferred
        self.clock = clock
        self.run = IngestionRun(stage=stage, started_at=clock(), price_day=price_day)

    def record(self, **metrics) -> None:
        self.run.record(**metrics)

    def fail(self, error: BaseException) -> None:
        """Mark the run failed without raising (e.g. a gate denial)."""
        self.run.status = RunStatus.FAILED
        self.run.error_message = describe_error(error)

    def __enter__(self) -> 'AuditTracker':
        if self.enabled and not self.deferred:
            self.store.start_run(self.run)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        run = self.run
        run.completed_at = self.clock()
        if exc_val is not None:
            run.status = RunStatus.FAILED
            run.error_message = describe_error(exc_val)
        elif run.status == RunStatus.RUNNING:
            run.status = RunStatus.COMPLETED

        if not self.enabled:
            return False

        try:
            if self.deferred:
                self.store.start_run(run)
            self.store.finish_run(run)
        except Exception as e:
            if exc_val is None:
                raise
            # Keep the stage's own exception as the one that propagates
            logger.error("Failed to record %s audit row: %s", run.stage, e)
        else:
            logger.info("Recorded %s run #%s as %s", run.stage, run.id, run.status.value)
        return False
