"""Tests for the bulk data HTTP client."""
import gzip
from dataclasses import replace
from unittest.mock import MagicMock

import pytest
import requests

from common.errors import SourceError
from feed.clients.bulk_data_client import BulkDataClient

BULK_INDEX = {
    'object': 'list',
    'has_more': False,
    'data': [
        {
            'object': 'bulk_data',
            'type': 'oracle_cards',
            'download_uri': 'https://data.example.test/oracle-cards.json',
        },
        {
            'object': 'bulk_data',
            'type': 'default_cards',
            'updated_at': '2025-01-13T10:02:11.512+00:00',
            'size': 501234567,
            'download_uri': 'https://data.example.test/default-cards-20250113.json',
        },
    ],
}


def make_response(json_data=None, chunks=None, status_error=None):
    response = MagicMock()
    response.json.return_value = json_data
    response.iter_content.return_value = iter(chunks or [])
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


@pytest.fixture
def session():
    mock_session = MagicMock(spec=requests.Session)
    mock_session.headers = {}
    return mock_session


class TestResolveDownloadUrl:
    """Test bulk URL resolution."""

    def test_configured_url_short_circuits(self, pipeline_config, session):
        """Test a configured bulk URL is returned without any request."""
        config = replace(pipeline_config.feed, bulk_url='https://mirror.example.test/prices.json.gz')
        location = BulkDataClient(config, session=session).resolve_download_url()

        assert location.url == 'https://mirror.example.test/prices.json.gz'
        assert location.configured
        session.get.assert_not_called()

    def test_dataset_entry_is_selected(self, pipeline_config, session):
        """Test the download_uri of the configured dataset is returned."""
        session.get.return_value = make_response(BULK_INDEX)
        location = BulkDataClient(pipeline_config.feed, session=session).resolve_download_url()

        assert location.url == 'https://data.example.test/default-cards-20250113.json'
        assert location.dataset == 'default_cards'
        assert location.size == 501234567
        session.get.assert_called_once_with('https://feed.example.test/bulk-data', timeout=5.0)

    def test_user_agent_header_is_set(self, pipeline_config, session):
        """Test requests identify themselves with the configured user agent."""
        BulkDataClient(pipeline_config.feed, session=session)

        assert session.headers['User-Agent'] == 'pricefeed-tests/1.0'

    def test_missing_dataset_is_source_error(self, pipeline_config, session):
        """Test an index without the dataset raises SourceError."""
        config = replace(pipeline_config.feed, dataset='unique_prints')
        session.get.return_value = make_response(BULK_INDEX)

        with pytest.raises(SourceError, match='unique_prints'):
            BulkDataClient(config, session=session).resolve_download_url()

    def test_http_error_is_source_error(self, pipeline_config, session):
        """Test HTTP failures raise SourceError."""
        session.get.return_value = make_response(status_error=requests.HTTPError('503 Server Error'))

        with pytest.raises(SourceError, match='bulk data info'):
            BulkDataClient(pipeline_config.feed, session=session).resolve_download_url()

    def test_invalid_index_is_source_error(self, pipeline_config, session):
        """Test an index without a data array raises SourceError."""
        session.get.return_value = make_response({'object': 'error'})

        with pytest.raises(SourceError, match='missing data array'):
            BulkDataClient(pipeline_config.feed, session=session).resolve_download_url()


class TestStreaming:
    """Test streaming downloads."""

    def test_plain_body_is_passed_through(self, pipeline_config, session):
        """Test an uncompressed body is yielded as-is."""
        session.get.return_value = make_response(chunks=[b'[{"id": 1}', b']'])
        chunks = list(BulkDataClient(pipeline_config.feed, session=session).iter_chunks('https://x/y.json'))

        assert b''.join(chunks) == b'[{"id": 1}]'
        session.get.assert_called_once_with('https://x/y.json', stream=True, timeout=5.0)

    def test_gzip_body_is_decompressed(self, pipeline_config, session):
        """Test a gzip body is detected by magic number and decompressed."""
        payload = gzip.compress(b'[{"id": 1}, {"id": 2}]')
        session.get.return_value = make_response(chunks=[payload[:10], payload[10:]])
        chunks = list(BulkDataClient(pipeline_config.feed, session=session).iter_chunks('https://x/y.json.gz'))

        assert b''.join(chunks) == b'[{"id": 1}, {"id": 2}]'

    def test_connection_error_is_source_error(self, pipeline_config, session):
        """Test connection failures raise SourceError."""
        session.get.side_effect = requests.ConnectionError('connection refused')

        with pytest.raises(SourceError, match='Failed to download'):
            list(BulkDataClient(pipeline_config.feed, session=session).iter_chunks('https://x/y.json'))

    def test_download_to_file(self, pipeline_config, session, tmp_path):
        """Test downloads are written decompressed to the target path."""
        payload = gzip.compress(b'id,price_a,price_b,price_c,price_day\n')
        session.get.return_value = make_response(chunks=[payload])
        target = tmp_path / 'nested' / 'prices.csv'

        elapsed = BulkDataClient(pipeline_config.feed, session=session).download_to_file('https://x/p.csv.gz', target)

        assert target.read_bytes() == b'id,price_a,price_b,price_c,price_day\n'
        assert elapsed >= 0
