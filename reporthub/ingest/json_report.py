"""Extraction of tests from Playwright JSON reporter output.

The JSON reporter writes one document with a recursive ``suites`` tree.
Every spec (or every per-project entry nested under a spec) becomes one
``ExtractedTest``. The report is validated as a whole; any schema error is
fatal because there is no way to tell which parts of a malformed document
are trustworthy.

Data Flow:
    archive → locate report file → JSON parse → schema validation →
    suite walk → ExtractedTest list
"""

import json
from collections.abc import Iterator
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from ..models.playwright_schema import (
    PlaywrightReport,
    ReportAnnotation,
    ReportLocation,
    ReportSpec,
    ReportSuite,
    ReportTestResult,
    format_validation_errors,
)
from ..models.report_models import ExtractedTest, ExtractionResult, StepLocation, TestMetadata
from .archive import ReportArchive
from .errors import InvalidReportFormatError
from .report_utils import (
    build_attempt,
    determine_test_status,
    extract_environment_data,
    fallback_last_status,
    image_attachment_paths,
    result_errors,
    tags_from_annotations,
)

logger = structlog.get_logger()


def load_json_report(archive: ReportArchive) -> PlaywrightReport:
    """Locate, parse and validate the JSON report inside the archive.

    Raises:
        InvalidReportFormatError: Missing file, unparsable JSON, or schema errors
    """
    report_path = archive.find_json_report()
    if report_path is None:
        raise InvalidReportFormatError("No JSON report found in archive")

    try:
        raw = archive.read_json(report_path)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidReportFormatError(
            "Invalid report format", details=f"{report_path}: {e}"
        ) from e

    try:
        return PlaywrightReport.model_validate(raw)
    except ValidationError as e:
        details = format_validation_errors(e)
        logger.warning("JSON report failed validation", path=report_path, errors=details)
        raise InvalidReportFormatError("Invalid report format", details=details) from e


def _walk_specs(suites: list[ReportSuite]) -> Iterator[tuple[ReportSuite, ReportSpec]]:
    for suite in suites:
        for spec in suite.specs:
            yield suite, spec
        yield from _walk_specs(suite.suites)


def _build_test(
    test_id: str,
    title: str,
    file: str,
    outcome: Optional[str],
    project_name: Optional[str],
    annotations: list[ReportAnnotation],
    results: list[ReportTestResult],
    location: Optional[ReportLocation],
) -> ExtractedTest:
    last = results[-1] if results else None
    last_status = last.status if last else fallback_last_status(outcome)
    errors = result_errors(last) if last else []

    attempts = [build_attempt(r, i, include_attachments=False) for i, r in enumerate(results)]

    return ExtractedTest(
        id=test_id,
        name=title,
        status=determine_test_status(outcome, last_status),
        duration=sum(r.duration for r in results),
        file=file,
        error=errors[0] if errors else None,
        errorStack="\n\n".join(errors) if errors else None,
        screenshots=image_attachment_paths(last) if last else [],
        attempts=attempts,
        workerIndex=last.workerIndex if last else None,
        startedAt=last.startTime if last else None,
        location=StepLocation(**location.model_dump()) if location else None,
        metadata=TestMetadata(
            browser=project_name,
            tags=tags_from_annotations(annotations),
            annotations=[a.model_dump(exclude_none=True) for a in annotations],
        ),
    )


def _spec_tests(suite: ReportSuite, spec: ReportSpec) -> Iterator[ExtractedTest]:
    file = (spec.location.file if spec.location else None) or spec.file or suite.file or "unknown"
    base_id = spec.testId or spec.id or f"{file}:{spec.title}"

    if spec.results is not None:
        yield _build_test(
            base_id,
            spec.title,
            file,
            spec.outcome,
            spec.projectName,
            spec.annotations,
            spec.results,
            spec.location,
        )
        return

    nested = spec.tests or []
    for index, entry in enumerate(nested):
        test_id = base_id if len(nested) == 1 else f"{base_id}-{entry.projectName or index}"
        yield _build_test(
            test_id,
            spec.title,
            file,
            entry.status,
            entry.projectName,
            spec.annotations + entry.annotations,
            entry.results,
            spec.location,
        )


def extract_tests_from_json_report(archive: ReportArchive) -> ExtractionResult:
    """Extract every test from a JSON-format report archive.

    Args:
        archive: Opened upload archive

    Returns:
        ExtractionResult with tests, report start time and environment data

    Raises:
        InvalidReportFormatError: If the report cannot be located or validated
    """
    report = load_json_report(archive)

    tests = [test for suite, spec in _walk_specs(report.suites) for test in _spec_tests(suite, spec)]

    ci_metadata: Optional[dict[str, Any]] = None
    config_extra = report.config.model_extra or {}
    if isinstance(config_extra.get("metadata"), dict):
        ci = config_extra["metadata"].get("ci")
        if isinstance(ci, dict):
            ci_metadata = ci

    logger.info("Extracted tests from JSON report", tests=len(tests))

    return ExtractionResult(
        tests=tests,
        format="json",
        ciMetadata=ci_metadata,
        testExecutionTime=report.stats.startTime if report.stats else None,
        environmentData=extract_environment_data(archive),
    )
