"""Error taxonomy for the ingestion pipeline.

Every failure raised inside the pipeline is an ``IngestError`` subclass so the
upload entry point can turn it into a structured ``UploadResult`` without
guessing at status codes. Anything else that escapes is reported by the
pipeline as a generic 500 failure.

Hierarchy:
    IngestError
    ├── UnsupportedFormatError   archive is not a recognizable Playwright report
    ├── InvalidReportFormatError report found but fails schema validation
    ├── LookupNotFoundError      environment / trigger / suite missing
    └── StorageFailureError      database or blob store read/write failed
"""

from typing import Optional


class IngestError(Exception):
    """Base class for ingestion failures with an HTTP-style status code."""

    status_code: int = 500
    default_message: str = "Failed to process upload"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class UnsupportedFormatError(IngestError):
    """Archive is neither an HTML nor a JSON Playwright report."""

    status_code = 400
    default_message = "Unsupported report format"


class InvalidReportFormatError(IngestError):
    """Report was located but its contents do not match the expected schema."""

    status_code = 400
    default_message = "Invalid report format"


class LookupNotFoundError(IngestError):
    """A named environment, trigger or suite does not exist."""

    status_code = 400

    def __init__(self, entity: str, name: str, message: Optional[str] = None):
        self.entity = entity
        self.name = name
        super().__init__(message or f"{entity.capitalize()} '{name}' not found")


class StorageFailureError(IngestError):
    """Downstream persistence failed."""

    status_code = 500
    default_message = "Failed to store test results"
