"""
Byte-chunk sources for the stream converter.

Everything downstream consumes plain iterators of ``bytes`` so a local file,
a gzipped file and an HTTP body all look the same to the parser.
"""
import logging
import zlib
from pathlib import Path
from typing import Iterable, Iterator, Union

from common.errors import SourceError

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
DEFAULT_CHUNK_SIZE = 256 * 1024


def gunzip_chunks(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """Incrementally decompress a gzip byte stream."""
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        for chunk in chunks:
            if not chunk:
                continue
            data = decompressor.decompress(chunk)
            if data:
                yield data
        tail = decompressor.flush()
        if tail:
            yield tail
    except zlib.error as e:
        raise SourceError(f"Failed to decompress gzip stream: {e}") from e
    if not decompressor.eof:
        raise SourceError("Gzip stream ended before the end-of-stream marker")


def maybe_gunzip(chunks: Iterable[bytes], force: bool = False) -> Iterator[bytes]:
    """
    Sniff the first chunk for the gzip magic number and decompress if found.

    Args:
        chunks: Raw byte chunks
        force: Decompress without sniffing (e.g. the URL ends with .gz)
    """
    iterator = iter(chunks)
    first = b""
    for first in iterator:
        if first:
            break
    if not first:
        return

    def replay() -> Iterator[bytes]:
        yield first
        yield from iterator

    if force or first[:2] == GZIP_MAGIC:
        logger.debug("Gzip payload detected; decompressing while streaming")
        yield from gunzip_chunks(replay())
    else:
        yield from replay()


def iter_file_chunks(path: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """
    Read a local file in chunks, gunzipping ``.gz`` files on the fly.

    Raises:
        SourceError: If the file is missing or unreadable
    """
    path = Path(path)
    if not path.is_file():
        raise SourceError(f"Input file not found: {path}")

    def raw() -> Iterator[bytes]:
        try:
            with open(path, "rb") as fh:
                while True:
                    chunk = fh.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
        except OSError as e:
            raise SourceError(f"Failed to read {path}: {e}") from e

    logger.info("Reading local feed file %s", path)
    yield from maybe_gunzip(raw(), force=path.suffix == ".gz")
