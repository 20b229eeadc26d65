"""Playwright report ingestion: extraction, normalization and persistence."""

from .errors import (
    IngestError,
    InvalidReportFormatError,
    LookupNotFoundError,
    StorageFailureError,
    UnsupportedFormatError,
)
from .pipeline import IngestPipeline

__all__ = [
    "IngestError",
    "IngestPipeline",
    "InvalidReportFormatError",
    "LookupNotFoundError",
    "StorageFailureError",
    "UnsupportedFormatError",
]
