"""Feed conversion stage: pick the byte source and run the stream converter."""
import logging
import time
from datetime import date
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from common.config.settings import PipelineConfig
from common.models.data_models import ConversionResult
from core.stages.audit import AuditTracker
from feed.clients.bulk_data_client import BulkDataClient
from feed.pipeline.byte_sources import iter_file_chunks
from feed.pipeline.csv_converter import StreamConverter
from storage.interfaces import PriceStore

logger = logging.getLogger(__name__)


def default_csv_path(work_dir: Union[str, Path], price_day: date) -> Path:
    return Path(work_dir) / f"daily_prices_{price_day.isoformat()}.csv"


class FeedConverter:
    """
    Converts the day's bulk feed into the staging CSV.

    Input selection: a local JSON file, an explicit URL, or (neither given)
    the URL resolved from the feed configuration.
    """

    def __init__(self, config: PipelineConfig, client: Optional[BulkDataClient] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._client = client
        self.converter = StreamConverter(config.converter, clock=clock)

    @property
    def client(self) -> BulkDataClient:
        if self._client is None:
            self._client = BulkDataClient(self.config.feed)
        return self._client

    def open_source(self, file: Optional[Union[str, Path]] = None,
                    url: Optional[str] = None) -> Iterator[bytes]:
        chunk_size = self.config.feed.chunk_size
        if file:
            return iter_file_chunks(file, chunk_size)
        if not url:
            url = self.client.resolve_download_url().url
        return self.client.iter_chunks(url, chunk_size)

    def convert(self, price_day: date, output_path: Optional[Union[str, Path]] = None,
                file: Optional[Union[str, Path]] = None, url: Optional[str] = None) -> ConversionResult:
        """
        Convert the feed for ``price_day``.

        Raises:
            SourceError: Download or input file failure
            ParseError: Whole-document parse failure
            VolumeAnomaly: Row floor not met
        """
        output_path = Path(output_path) if output_path else default_csv_path(
            self.config.staging.work_dir, price_day
        )
        logger.info("Converting feed for %s into %s", price_day, output_path)
        return self.converter.convert(self.open_source(file=file, url=url), output_path, price_day)

    def convert_audited(self, store: Optional[PriceStore], price_day: date,
                        output_path: Optional[Union[str, Path]] = None,
                        file: Optional[Union[str, Path]] = None, url: Optional[str] = None,
                        dry_run: bool = False) -> ConversionResult:
        """
        Standalone conversion, recorded as a 'convert' run when a store is given.

        Without a store (no database configured) or on a dry run nothing is
        audited; failures still propagate.
        """
        with AuditTracker(store, 'convert', price_day, enabled=store is not None and not dry_run) as tracker:
            result = self.convert(price_day, output_path=output_path, file=file, url=url)
            tracker.record(
                convert_ms=result.elapsed_ms,
                rows_in_source=result.rows_in_source,
                rows_written=result.rows_written,
                rows_filtered=result.rows_filtered_out,
                parse_mode=result.parse_mode.value,
                fallback_used=result.fallback_used,
            )
        return result

    def close(self):
        if self._client is not None:
            self._client.close()
