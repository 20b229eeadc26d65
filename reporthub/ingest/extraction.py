"""Format detection and dispatch to the matching report extractor."""

import structlog

from ..models.report_models import ExtractionResult
from .archive import ReportArchive
from .html_report import extract_tests_from_html_report
from .json_report import extract_tests_from_json_report

logger = structlog.get_logger()

EXTRACTORS = {
    "html": extract_tests_from_html_report,
    "json": extract_tests_from_json_report,
}


def extract_tests(archive: ReportArchive) -> ExtractionResult:
    """Detect the report format and run its extractor.

    Raises:
        UnsupportedFormatError: Neither format is recognized
        InvalidReportFormatError: The report was found but could not be read
    """
    report_format = archive.detect_format()
    logger.info("Detected report format", format=report_format)
    return EXTRACTORS[report_format](archive)
