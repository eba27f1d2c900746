"""Daily runner: convert, stage, gate and merge in one invocation."""
import logging
from datetime import date
from pathlib import Path
from typing import Optional, Union

from common.config.settings import PipelineConfig
from common.errors import PriceFeedError
from common.models.data_models import DailyRunReport, PipelineState
from core.stages.audit import describe_error
from core.stages.consistency_gate import ConsistencyGate
from core.stages.converter import FeedConverter
from core.stages.merge_engine import MergeEngine
from core.stages.stage_loader import StageLoader
from storage.interfaces import PriceStore

logger = logging.getLogger(__name__)


class DailyRunner:
    """
    Drives one day through the pipeline state machine:

        PENDING -> CONVERTING -> STAGED -> GATE_ALLOWED -> MERGED -> AUDITED_COMPLETE
                                         \\-> GATE_DENIED
        any state -> FAILED

    Retention is scheduled separately and is not part of the daily run.
    """

    def __init__(self, config: PipelineConfig, store: PriceStore,
                 converter: Optional[FeedConverter] = None):
        self.config = config
        self.store = store
        self.converter = converter or FeedConverter(config)
        self.loader = StageLoader(config, store, converter=self.converter)
        self.gate = ConsistencyGate(config, store)
        self.merge_engine = MergeEngine(config, store)

    def run(self, price_day: Optional[date] = None, file: Optional[Union[str, Path]] = None,
            url: Optional[str] = None, dry_run: bool = False) -> DailyRunReport:
        """
        Run the daily cycle; stops at the first failure or at a gate denial.

        Args:
            price_day: Target day (default: today in the configured timezone)
            file: Local bulk JSON file instead of downloading
            url: Bulk JSON URL instead of resolving it
            dry_run: Convert and count, but write nothing to the database

        Returns:
            DailyRunReport with every stage result and the final state
        """
        price_day = price_day or self.config.today()
        report = DailyRunReport(price_day=price_day, dry_run=dry_run)

        try:
            report.advance(PipelineState.CONVERTING)
            # Conversion runs inside the stage invocation so its failure is audited
            report.stage = self.loader.load(price_day, dry_run=dry_run, feed_file=file, feed_url=url)
            report.conversion = report.stage.conversion
            report.advance(PipelineState.STAGED)

            report.gate = self.gate.evaluate(
                price_day, dry_run=dry_run, rows_staged=report.stage.rows_staged if dry_run else None,
            )
            if not report.gate.allowed:
                report.advance(PipelineState.GATE_DENIED)
                report.error = f"gate denied (ratio {report.gate.ratio:.4f})"
                return report
            report.advance(PipelineState.GATE_ALLOWED)

            if dry_run:
                logger.info("Dry run stops before the merge for %s", price_day)
                return report

            report.merge = self.merge_engine.merge(price_day)
            if report.merge.skipped:
                report.advance(PipelineState.FAILED)
                report.error = f"merge skipped: {report.merge.reason}"
                return report
            report.advance(PipelineState.MERGED)

            # The merge engine has written the audit row by the time it returns
            report.advance(PipelineState.AUDITED_COMPLETE)
        except PriceFeedError as e:
            logger.error("Daily run for %s failed in state %s: %s", price_day, report.state.value, e)
            report.error = describe_error(e)
            report.advance(PipelineState.FAILED)

        return report
