"""
Stage loader: replaces the staging table with one day's CSV.
"""
import csv
import logging
import time
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union
from uuid import UUID

from common.config.settings import PipelineConfig
from common.errors import SourceError
from common.models.data_models import STAGING_COLUMNS, StageLoadResult, StagingRow
from core.stages.audit import AuditTracker
from core.stages.converter import FeedConverter
from storage.interfaces import PriceStore

logger = logging.getLogger(__name__)


class StagingCsvReader:
    """
    Reads a staging CSV in batches, validating every row.

    Raises SourceError on a malformed file or a row whose price_day is not
    the run's target day.
    """

    def __init__(self, path: Union[str, Path], price_day: date, batch_size: int):
        self.path = Path(path)
        self.price_day = price_day
        self.batch_size = batch_size
        self.rows_read = 0

    def batches(self) -> Iterator[List[StagingRow]]:
        if not self.path.is_file():
            raise SourceError(f"Staging CSV not found: {self.path}", stage="stage")

        with open(self.path, newline='', encoding='utf-8') as fh:
            reader = csv.reader(fh)
            header = next(reader, None)
            if header is None or tuple(header) != STAGING_COLUMNS:
                raise SourceError(
                    f"{self.path} has header {header}, expected {list(STAGING_COLUMNS)}", stage="stage"
                )

            batch: List[StagingRow] = []
            for fields in reader:
                if not fields:
                    continue
                batch.append(self._parse_row(fields, reader.line_num))
                self.rows_read += 1
                if len(batch) >= self.batch_size:
                    yield batch
                    batch = []
            if batch:
                yield batch

    def _parse_row(self, fields: List[str], line: int) -> StagingRow:
        if len(fields) != len(STAGING_COLUMNS):
            raise SourceError(f"{self.path}:{line}: expected {len(STAGING_COLUMNS)} fields, got {len(fields)}", stage="stage")
        raw_id, price_a, price_b, price_c, raw_day = fields
        try:
            external_id = UUID(raw_id)
            row_day = date.fromisoformat(raw_day)
            prices = [_decimal_or_none(v) for v in (price_a, price_b, price_c)]
        except (ValueError, InvalidOperation) as e:
            raise SourceError(f"{self.path}:{line}: malformed row: {e}", stage="stage") from e

        if row_day != self.price_day:
            raise SourceError(
                f"{self.path}:{line}: price_day {row_day} does not match target day {self.price_day}",
                stage="stage",
            )
        return StagingRow(external_id, prices[0], prices[1], prices[2], row_day)


def _decimal_or_none(value: str) -> Optional[Decimal]:
    if value == "":
        return None
    if "_" in value:
        raise ValueError(f"invalid price {value!r}")
    price = Decimal(value)
    if not price.is_finite() or price < 0:
        raise ValueError(f"invalid price {value!r}")
    return price


class StageLoader:
    """
    Loads the staging table.

    Input selection: ``file`` (local CSV), ``url`` (remote CSV, gunzipped
    when compressed), or neither, in which case the feed is converted first.
    """

    def __init__(self, config: PipelineConfig, store: PriceStore,
                 converter: Optional[FeedConverter] = None):
        self.config = config
        self.store = store
        self._converter = converter

    @property
    def converter(self) -> FeedConverter:
        if self._converter is None:
            self._converter = FeedConverter(self.config)
        return self._converter

    def load(self, price_day: date, file: Optional[Union[str, Path]] = None,
             url: Optional[str] = None, dry_run: bool = False,
             feed_file: Optional[Union[str, Path]] = None,
             feed_url: Optional[str] = None) -> StageLoadResult:
        """
        Truncate staging and load the day's rows.

        Args:
            price_day: Target day; every row must carry it
            file: Local staging CSV
            url: Remote staging CSV (optionally .gz)
            dry_run: Parse and count without touching the database
            feed_file: Bulk JSON file to convert when no CSV is given
            feed_url: Bulk JSON URL to convert when no CSV is given

        Returns:
            StageLoadResult with row counts and timing
        """
        with AuditTracker(self.store, 'stage', price_day, enabled=not dry_run) as tracker:
            download_ms = None
            conversion = None
            if file:
                csv_path = Path(file)
            elif url:
                csv_path, download_ms = self._download_csv(url)
            else:
                conversion = self.converter.convert(price_day, file=feed_file, url=feed_url)
                csv_path = conversion.csv_path

            if conversion is not None:
                tracker.record(
                    convert_ms=conversion.elapsed_ms,
                    rows_in_source=conversion.rows_in_source,
                    rows_written=conversion.rows_written,
                    rows_filtered=conversion.rows_filtered_out,
                    parse_mode=conversion.parse_mode.value,
                    fallback_used=conversion.fallback_used,
                )

            start = time.monotonic()
            reader = StagingCsvReader(csv_path, price_day, self.config.staging.batch_size)
            if dry_run:
                ids = set()
                for batch in reader.batches():
                    ids.update(row.external_id for row in batch)
                rows_staged = len(ids)
            else:
                rows_staged = self.store.replace_staging(reader.batches())
            elapsed_ms = int((time.monotonic() - start) * 1000)

            tracker.record(download_ms=download_ms, stage_ms=elapsed_ms, rows_staged=rows_staged)

        logger.info(
            "Staged %s rows (%s read) from %s in %sms%s",
            rows_staged, reader.rows_read, csv_path, elapsed_ms, " (dry run)" if dry_run else "",
        )
        return StageLoadResult(
            rows_read=reader.rows_read,
            rows_staged=rows_staged,
            elapsed_ms=elapsed_ms,
            dry_run=dry_run,
            download_ms=download_ms,
            conversion=conversion,
        )

    def _download_csv(self, url: str) -> Tuple[Path, int]:
        name = url.rstrip('/').rsplit('/', 1)[-1].split('?', 1)[0] or 'staging.csv'
        if name.endswith('.gz'):
            name = name[:-3]
        target = Path(self.config.staging.work_dir) / name
        return target, self.converter.client.download_to_file(url, target)
