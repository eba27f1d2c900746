"""
Bulk feed HTTP clients
"""
from .bulk_data_client import BulkDataClient, FeedLocation

__all__ = [
    'BulkDataClient',
    'FeedLocation'
]
