"""Extraction of tests from Playwright HTML reports.

Playwright's HTML reporter inlines the whole report into ``index.html`` as a
base64-encoded ZIP assigned to ``window.playwrightReportBase64``. Inside that
nested archive, ``report.json`` carries run-level metadata and every other
JSON file holds the tests of one source file.

Fragment validation is three-way:
    - ok: the fragment matches ``HTMLReportTestFile``
    - partial: validation failed but a ``tests`` list is present; each test
      is coerced individually and the ones that cannot be salvaged are
      dropped with a warning
    - error: unreadable or without ``tests``; the fragment is skipped

One corrupted fragment therefore never aborts the upload.

Key Features:
    - Per-attempt details: errors, stack, screenshots, textual attachments,
      start time and step tree
    - ``.dat`` sidecar metadata (labels, parameters, descriptions, epic)
      matched through result attachments
    - Report start time from ``report.json`` (epoch ms or ISO string)
"""

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

import structlog
from pydantic import ValidationError

from ..models.playwright_schema import (
    HTMLReportTestFile,
    PlaywrightTest,
    ReportTestResult,
    format_validation_errors,
)
from ..models.report_models import ExtractedTest, ExtractionResult, StepLocation, TestMetadata
from .archive import IGNORED_PREFIX, ReportArchive
from .errors import InvalidReportFormatError
from .report_utils import (
    build_attempt,
    determine_test_status,
    epoch_ms_to_iso,
    extract_dat_metadata,
    extract_environment_data,
    fallback_last_status,
    merge_dat_metadata,
    tags_from_annotations,
)

logger = structlog.get_logger()

REPORT_METADATA_FILE = "report.json"


@dataclass
class FragmentValidation:
    """Outcome of validating one per-file fragment."""

    kind: Literal["ok", "partial", "error"]
    tests: list[PlaywrightTest] = field(default_factory=list)
    errors: str = ""
    file_name: Optional[str] = None


def _coerce_test(raw: Any, position: int) -> Optional[PlaywrightTest]:
    """Best-effort conversion of a raw test entry from a fragment that failed validation."""
    if not isinstance(raw, dict):
        return None

    candidate = dict(raw)
    candidate.setdefault("testId", f"unknown-{position}")
    candidate.setdefault("title", "Untitled test")
    candidate.setdefault("outcome", "unexpected")

    results = []
    for raw_result in candidate.get("results") or []:
        try:
            results.append(ReportTestResult.model_validate(raw_result))
        except ValidationError:
            continue
    candidate["results"] = results

    if not isinstance(candidate.get("annotations"), list):
        candidate["annotations"] = []
    else:
        candidate["annotations"] = [
            a for a in candidate["annotations"] if isinstance(a, dict) and "type" in a
        ]
    if not isinstance(candidate.get("location"), dict):
        candidate.pop("location", None)

    try:
        return PlaywrightTest.model_validate(candidate)
    except ValidationError:
        return None


def validate_test_fragment(raw: Any) -> FragmentValidation:
    try:
        parsed = HTMLReportTestFile.model_validate(raw)
        return FragmentValidation(kind="ok", tests=parsed.tests, file_name=parsed.fileName)
    except ValidationError as e:
        errors = format_validation_errors(e)

    if isinstance(raw, dict) and isinstance(raw.get("tests"), list):
        coerced = [_coerce_test(t, i) for i, t in enumerate(raw["tests"])]
        file_name = raw.get("fileName")
        return FragmentValidation(
            kind="partial",
            tests=[t for t in coerced if t is not None],
            errors=errors,
            file_name=file_name if isinstance(file_name, str) else None,
        )
    return FragmentValidation(kind="error", errors=errors)


def map_test(
    test: PlaywrightTest,
    dat_metadata: dict[str, dict[str, Any]],
    file_name: Optional[str] = None,
) -> ExtractedTest:
    """Map one report test; a test without a location takes its fragment's file name."""
    results = test.results
    last = results[-1] if results else None
    last_status = last.status if last else fallback_last_status(test.outcome)
    attempts = [build_attempt(r, i) for i, r in enumerate(results)]
    last_attempt = attempts[-1] if attempts else None

    extra = merge_dat_metadata(last, dat_metadata)

    return ExtractedTest(
        id=test.testId,
        name=test.title,
        status=determine_test_status(test.outcome, last_status),
        duration=sum(r.duration for r in results),
        file=(test.location.file if test.location else None) or file_name or "unknown",
        error=last_attempt.error if last_attempt else None,
        errorStack=last_attempt.errorStack if last_attempt else None,
        screenshots=list(last_attempt.screenshots) if last_attempt else [],
        attempts=attempts,
        workerIndex=last.workerIndex if last else None,
        startedAt=last.startTime if last else None,
        location=StepLocation(**test.location.model_dump()) if test.location else None,
        metadata=TestMetadata(
            browser=test.projectName,
            tags=tags_from_annotations(test.annotations),
            annotations=[a.model_dump(exclude_none=True) for a in test.annotations],
            epic=extra.get("epic"),
            labels=extra["labels"],
            parameters=extra["parameters"],
            description=extra.get("description"),
            descriptionHtml=extra.get("descriptionHtml"),
        ),
    )


def _read_report_metadata(inner: ReportArchive) -> tuple[Optional[dict], Optional[str]]:
    if not inner.has_file(REPORT_METADATA_FILE):
        return None, None
    try:
        report = inner.read_json(REPORT_METADATA_FILE)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Failed to parse embedded report.json", error=str(e))
        return None, None
    if not isinstance(report, dict):
        return None, None

    metadata = report.get("metadata")
    ci = metadata.get("ci") if isinstance(metadata, dict) else None
    return (ci if isinstance(ci, dict) else None), epoch_ms_to_iso(report.get("startTime"))


def extract_tests_from_html_report(archive: ReportArchive) -> ExtractionResult:
    """Extract every test from an HTML-format report archive.

    Args:
        archive: Opened upload archive containing ``index.html``

    Returns:
        ExtractionResult with tests, CI metadata, start time, environment
        data and one warning per skipped or partially salvaged fragment

    Raises:
        InvalidReportFormatError: If the embedded report is missing or unreadable
    """
    encoded = archive.embedded_report()
    if encoded is None:
        raise InvalidReportFormatError("No embedded report found in index.html")

    dat_metadata = extract_dat_metadata(archive)
    tests: list[ExtractedTest] = []
    warnings: list[str] = []

    with ReportArchive.from_base64(encoded) as inner:
        ci_metadata, execution_time = _read_report_metadata(inner)

        for name in inner.list_files():
            if name == REPORT_METADATA_FILE or not name.endswith(".json"):
                continue
            if name.startswith(IGNORED_PREFIX):
                continue

            try:
                raw = inner.read_json(name)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning("Skipping unreadable report fragment", file=name, error=str(e))
                warnings.append(f"Skipped {name}: {e}")
                continue

            validation = validate_test_fragment(raw)
            if validation.kind == "error":
                logger.warning(
                    "Skipping invalid report fragment", file=name, errors=validation.errors
                )
                warnings.append(f"Skipped {name}: {validation.errors}")
                continue
            if validation.kind == "partial":
                logger.warning(
                    "Report fragment failed validation, using raw data",
                    file=name,
                    errors=validation.errors,
                    salvaged=len(validation.tests),
                )
                warnings.append(f"Partially parsed {name}: {validation.errors}")

            tests.extend(
                map_test(t, dat_metadata, validation.file_name) for t in validation.tests
            )

    logger.info(
        "Extracted tests from HTML report",
        tests=len(tests),
        skipped_fragments=len(warnings),
    )

    return ExtractionResult(
        tests=tests,
        format="html",
        ciMetadata=ci_metadata,
        testExecutionTime=execution_time,
        environmentData=extract_environment_data(archive),
        warnings=warnings,
    )
