"""
Bulk data HTTP client.
Resolves the day's bulk download URL and streams the payload with retry
logic and connection reuse.
"""
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from common.config.settings import FeedConfig
from common.errors import SourceError
from feed.pipeline.byte_sources import maybe_gunzip

logger = logging.getLogger(__name__)


@dataclass
class FeedLocation:
    """Where today's bulk file lives."""
    url: str
    dataset: str
    updated_at: Optional[str] = None
    size: Optional[int] = None
    configured: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'dataset': self.dataset,
            'updated_at': self.updated_at,
            'size': self.size,
            'configured': self.configured,
        }


class BulkDataClient:
    """
    HTTP client for the bulk feed provider.

    Features:
    - Configured URL short-circuit, metadata endpoint discovery otherwise
    - Automatic retry with exponential backoff on 429/5xx
    - Streaming downloads with incremental gunzip
    """

    def __init__(self, config: FeedConfig, session: Optional[requests.Session] = None):
        """
        Initialize bulk data client.

        Args:
            config: Feed configuration
            session: Pre-built session (tests inject a mock)
        """
        self.config = config
        self.timeout = config.timeout

        if session is None:
            session = requests.Session()
            retry_strategy = Retry(
                total=config.max_retries,
                backoff_factor=2,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET", "HEAD"]
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("https://", adapter)
            session.mount("http://", adapter)

        self.session = session
        self.session.headers.update({
            'User-Agent': config.user_agent,
            'Accept': 'application/json',
        })

    def resolve_download_url(self) -> FeedLocation:
        """
        Determine the bulk download URL for today's dataset.

        Returns:
            FeedLocation with the download URL

        Raises:
            SourceError: If the metadata endpoint fails or lacks the dataset
        """
        if self.config.bulk_url:
            logger.info("Using configured bulk URL: %s", self.config.bulk_url)
            return FeedLocation(url=self.config.bulk_url, dataset=self.config.dataset, configured=True)

        dataset = self.config.dataset
        logger.info("Fetching bulk data index for dataset %s from %s", dataset, self.config.metadata_url)
        try:
            response = self.session.get(self.config.metadata_url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise SourceError(f"Failed to fetch bulk data info: {e}") from e
        except ValueError as e:
            raise SourceError(f"Bulk data index is not valid JSON: {e}") from e

        entries = payload.get('data') if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise SourceError("Invalid bulk data index: missing data array")

        entry = next((item for item in entries if isinstance(item, dict) and item.get('type') == dataset), None)
        if not entry or not entry.get('download_uri'):
            raise SourceError(f"{dataset} bulk data not found")

        location = FeedLocation(
            url=entry['download_uri'],
            dataset=dataset,
            updated_at=entry.get('updated_at'),
            size=entry.get('size'),
        )
        logger.info("Resolved %s bulk URL: %s (updated %s)", dataset, location.url, location.updated_at)
        return location

    def iter_chunks(self, url: str, chunk_size: Optional[int] = None) -> Iterator[bytes]:
        """
        Stream the body of ``url`` as byte chunks, gunzipping when needed.

        Raises:
            SourceError: On connection, HTTP or decompression failure
        """
        chunk_size = chunk_size or self.config.chunk_size
        logger.info("Streaming %s", url)
        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise SourceError(f"Failed to download {url}: {e}") from e

        def body() -> Iterator[bytes]:
            try:
                yield from response.iter_content(chunk_size=chunk_size)
            except requests.RequestException as e:
                raise SourceError(f"Download of {url} interrupted: {e}") from e
            finally:
                response.close()

        # requests already undoes Content-Encoding; .gz payloads are sniffed by magic number
        yield from maybe_gunzip(body())

    def download_to_file(self, url: str, output_path: Union[str, Path]) -> int:
        """
        Download ``url`` to ``output_path`` (decompressed).

        Returns:
            Elapsed milliseconds
        """
        start = time.monotonic()
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        try:
            with open(output_path, 'wb') as fh:
                for chunk in self.iter_chunks(url):
                    fh.write(chunk)
                    written += len(chunk)
        except OSError as e:
            raise SourceError(f"Failed to write {output_path}: {e}") from e

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Downloaded %s bytes to %s in %sms", written, output_path, duration_ms)
        return duration_ms

    def close(self):
        """Close the HTTP session"""
        self.session.close()
        logger.debug("Closed bulk data client session")
