"""
Bulk JSON to staging CSV converter.

Streams the feed through ``IncrementalArrayParser`` and writes one CSV row per
kept record. A watchdog abandons the streaming attempt when no row has been
written for ``stall_seconds`` and re-parses the whole document in memory.
"""
import csv
import json
import logging
import os
import tempfile
import time
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Iterator, Union

from common.config.settings import ConverterConfig
from common.errors import ParseError, VolumeAnomaly
from common.models.data_models import STAGING_COLUMNS, ConversionResult, ParseMode
from feed.pipeline.json_stream import IncrementalArrayParser
from feed.pipeline.price_record import RecordFilter, RecordTransformer

logger = logging.getLogger(__name__)

# Bytes kept in memory before the replay spool moves to disk
SPOOL_MAX_MEMORY = 64 * 1024 * 1024


class StreamStalled(Exception):
    """Internal signal: the streaming attempt made no progress in time."""


class CsvRowSink:
    """Staging CSV writer (header, ``\\n`` line endings, minimal quoting)."""

    def __init__(self, path: Path):
        self.path = path
        self._fh = open(path, 'w', newline='', encoding='utf-8')
        self._writer = csv.writer(self._fh, lineterminator='\n', quoting=csv.QUOTE_MINIMAL)
        self._writer.writerow(STAGING_COLUMNS)
        self.rows = 0

    def write(self, row) -> None:
        self._writer.writerow(row.to_csv_fields())
        self.rows += 1

    def reset(self) -> None:
        """Drop everything written so far, keeping only the header."""
        self._fh.seek(0)
        self._fh.truncate()
        self._writer.writerow(STAGING_COLUMNS)
        self.rows = 0

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()


class StreamConverter:
    """
    Converts a bulk JSON array into the staging CSV.

    Features:
    - Bounded-memory streaming parse (default)
    - Stall watchdog with whole-document fallback
    - Forced whole-document mode (``parse_mode='buffer'``)
    - Row-count safety floor
    """

    def __init__(self, config: ConverterConfig, clock: Callable[[], float] = time.monotonic):
        """
        Initialize converter.

        Args:
            config: Converter configuration
            clock: Monotonic clock used by the watchdog (tests inject a fake)
        """
        self.config = config
        self.clock = clock
        self.record_filter = RecordFilter.from_config(config)

    def convert(self, chunks: Iterable[bytes], output_path: Union[str, Path],
                price_day: date) -> ConversionResult:
        """
        Convert a stream of JSON bytes into a staging CSV at ``output_path``.

        Args:
            chunks: Decompressed byte chunks of the bulk JSON document
            output_path: Destination CSV path
            price_day: Value written in every row's price_day column

        Returns:
            ConversionResult with row counts and timing

        Raises:
            ParseError: Whole-document parse failed or the stream was truncated
            VolumeAnomaly: Fewer rows than the configured floor
            SourceError: Propagated from the byte source
        """
        start = self.clock()
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        partial_path = output_path.with_name(output_path.name + '.partial')

        transformer = RecordTransformer(price_day, self.record_filter)
        sink = CsvRowSink(partial_path)
        chunk_iter = iter(chunks)
        parse_errors = 0
        fallback_used = False

        try:
            if self.config.parse_mode == ParseMode.BUFFER.value:
                parse_mode = ParseMode.BUFFER
                with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
                    self._buffer_parse(spool, chunk_iter, transformer, sink)
            else:
                with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
                    try:
                        parse_errors = self._stream_parse(spool, chunk_iter, transformer, sink)
                        parse_mode = ParseMode.STREAM
                    except StreamStalled:
                        logger.warning(
                            "No row written for %ss after %s rows; falling back to whole-document parse",
                            self.config.stall_seconds, sink.rows,
                        )
                        fallback_used = True
                        parse_mode = ParseMode.BUFFER
                        parse_errors = 0
                        sink.reset()
                        transformer.stats.reset()
                        self._buffer_parse(spool, chunk_iter, transformer, sink)
        except BaseException:
            sink.close()
            _unlink_quietly(partial_path)
            raise
        sink.close()

        stats = transformer.stats
        result = ConversionResult(
            csv_path=output_path,
            price_day=price_day,
            rows_in_source=stats.seen + parse_errors,
            rows_written=stats.written,
            rows_filtered_out=stats.filtered,
            parse_errors=parse_errors,
            invalid_prices=stats.invalid_prices,
            parse_mode=parse_mode,
            fallback_used=fallback_used,
            elapsed_ms=int((self.clock() - start) * 1000),
        )

        if result.rows_written < self.config.min_rows:
            _unlink_quietly(partial_path)
            raise VolumeAnomaly(
                f"Only {result.rows_written} rows written, below the floor of {self.config.min_rows}",
                observed=result.rows_written,
                expected=f">= {self.config.min_rows}",
                stage="convert",
            )

        os.replace(partial_path, output_path)
        logger.info(
            "Converted %s source records into %s rows (%s filtered, %s parse errors, mode=%s, fallback=%s) in %sms",
            result.rows_in_source, result.rows_written, result.rows_filtered_out,
            result.parse_errors, result.parse_mode.value, result.fallback_used, result.elapsed_ms,
        )
        return result

    def _stream_parse(self, spool, chunk_iter: Iterator[bytes],
                      transformer: RecordTransformer, sink: CsvRowSink) -> int:
        parser = IncrementalArrayParser()
        last_progress = self.clock()

        for chunk in chunk_iter:
            if not chunk:
                continue
            # Kept so the fallback can replay the bytes already consumed
            spool.write(chunk)
            for record in parser.feed(chunk):
                row = transformer.transform(record)
                if row is not None:
                    sink.write(row)
                    last_progress = self.clock()
            if parser.array_closed:
                break
            if self.clock() - last_progress > self.config.stall_seconds:
                raise StreamStalled()

        parser.finish()
        return parser.parse_errors

    def _buffer_parse(self, spool, chunk_iter: Iterator[bytes],
                      transformer: RecordTransformer, sink: CsvRowSink) -> None:
        for chunk in chunk_iter:
            spool.write(chunk)
        spool.seek(0)
        document = spool.read()
        logger.info("Parsing %s bytes as a single JSON document", len(document))

        try:
            records = json.loads(document, parse_float=Decimal)
        except (ValueError, UnicodeDecodeError) as e:
            raise ParseError(f"Bulk document is not valid JSON: {e}", stage="convert") from e
        del document
        if not isinstance(records, list):
            raise ParseError(
                f"Bulk document must be a JSON array, got {type(records).__name__}",
                stage="convert",
            )

        for row in transformer.transform_all(records):
            sink.write(row)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
