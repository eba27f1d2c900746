"""
Pipeline components for bulk JSON to staging CSV conversion
"""
from .byte_sources import gunzip_chunks, iter_file_chunks, maybe_gunzip
from .json_stream import IncrementalArrayParser, ScanState
from .price_record import ParsedPrice, RecordFilter, RecordTransformer, parse_price
from .csv_converter import StreamConverter

__all__ = [
    'gunzip_chunks',
    'iter_file_chunks',
    'maybe_gunzip',
    'IncrementalArrayParser',
    'ScanState',
    'ParsedPrice',
    'RecordFilter',
    'RecordTransformer',
    'parse_price',
    'StreamConverter'
]
