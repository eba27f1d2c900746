"""
Error taxonomy for the price ingestion pipeline.

Every stage raises one of these at its boundary so the audit trail and the
CLI exit code can tell the failure classes apart.
"""
from typing import Optional


class PriceFeedError(Exception):
    """Base class for all pipeline errors."""

    kind = "error"

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def audit_message(self) -> str:
        """Message stored in ingestion_runs.error_message."""
        return f"{type(self).__name__}: {self.message}"


class ConfigError(PriceFeedError):
    """Invalid or missing configuration value."""

    kind = "config"


class SourceError(PriceFeedError):
    """Download, decompression or input file failure. Always fatal."""

    kind = "source"


class ParseError(PriceFeedError):
    """
    Malformed JSON.

    Skipped per record while streaming; fatal when the whole document is
    parsed at once (buffer mode or watchdog fallback).
    """

    kind = "parse"

    def __init__(self, message: str, *, offset: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.offset = offset


class VolumeAnomaly(PriceFeedError):
    """Row counts far outside the expected range."""

    kind = "volume"

    def __init__(self, message: str, *, observed: Optional[float] = None,
                 expected: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.observed = observed
        self.expected = expected


class TransactionError(PriceFeedError):
    """The merge transaction failed and was rolled back."""

    kind = "transaction"
