"""Helpers shared by the HTML and JSON report extractors.

Both extractors end up turning a Playwright test plus its results into an
``ExtractedTest``; the pieces that do not depend on the report format live
here: status derivation, attempt mapping, lenient step-tree parsing, and the
Allure-style ``.dat`` sidecar metadata some projects ship next to the report.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError

from ..models.playwright_schema import ReportAnnotation, ReportError, ReportTestResult
from ..models.report_models import (
    AttemptAttachment,
    ExtractedTestAttempt,
    TestStatus,
    TestStep,
)
from .archive import ReportArchive

logger = structlog.get_logger()

DAT_METADATA_CONTENT_TYPE = "application/vnd.allure.message+json"
IMAGE_CONTENT_PREFIX = "image/"


def determine_test_status(outcome: Optional[str], last_status: Optional[str]) -> TestStatus:
    """Derive the canonical test status from Playwright's outcome and last attempt.

    Args:
        outcome: Test-level outcome (expected, unexpected, flaky, skipped)
        last_status: Raw status of the final attempt

    Returns:
        ``skipped`` when the last attempt was skipped, the last attempt's own
        status when the outcome was expected (``failed`` for statuses
        outside passed, failed and timedOut), ``flaky`` for flaky outcomes,
        ``failed`` otherwise.
    """
    if last_status == "skipped":
        return "skipped"
    if outcome == "expected":
        if last_status in ("passed", "failed", "timedOut"):
            return last_status  # type: ignore[return-value]
        return "failed"
    if outcome == "flaky":
        return "flaky"
    return "failed"


def fallback_last_status(outcome: Optional[str]) -> str:
    """Status to assume for a test that recorded no attempts."""
    if outcome == "skipped":
        return "skipped"
    if outcome == "expected":
        return "passed"
    return "failed"


def tags_from_annotations(annotations: list[ReportAnnotation]) -> list[str]:
    return [a.description for a in annotations if a.type == "tag" and a.description]


def error_text(error: Union[ReportError, str, None]) -> Optional[str]:
    if error is None:
        return None
    if isinstance(error, str):
        return error
    return error.message


def error_stack(error: Union[ReportError, str, None]) -> Optional[str]:
    if isinstance(error, ReportError):
        return error.stack
    return None


def result_errors(result: ReportTestResult) -> list[str]:
    """Error messages of an attempt, preferring the ``errors`` list."""
    messages = []
    for item in result.errors or []:
        text = error_text(item)
        if text:
            messages.append(text)
    if not messages:
        text = error_text(result.error)
        if text:
            messages.append(text)
    return messages


def image_attachment_paths(result: ReportTestResult) -> list[str]:
    return [
        a.path
        for a in result.attachments
        if a.contentType.startswith(IMAGE_CONTENT_PREFIX) and a.path
    ]


def text_attachments(result: ReportTestResult) -> list[AttemptAttachment]:
    return [
        AttemptAttachment(
            name=a.name or "Attachment",
            contentType=a.contentType or "text/plain",
            content=a.body,
        )
        for a in result.attachments
        if not a.contentType.startswith(IMAGE_CONTENT_PREFIX) and a.body
    ]


def build_step_tree(raw_steps: Optional[list[Any]]) -> list[TestStep]:
    """Parse raw step dictionaries, dropping nodes that are not valid steps.

    Children are parsed with the same rule, so one malformed nested node
    does not discard its valid siblings.
    """
    steps: list[TestStep] = []
    for raw in raw_steps or []:
        if not isinstance(raw, dict) or not isinstance(raw.get("title"), str):
            continue
        node = {k: v for k, v in raw.items() if k != "steps"}
        try:
            step = TestStep.model_validate(node)
        except ValidationError:
            logger.debug("Skipping invalid step", title=raw.get("title"))
            continue
        step.steps = build_step_tree(raw.get("steps"))
        steps.append(step)
    return steps


def build_attempt(
    result: ReportTestResult, index: int, include_attachments: bool = True
) -> ExtractedTestAttempt:
    """Map one Playwright result onto an ``ExtractedTestAttempt``."""
    errors = result_errors(result)
    stack = "\n\n".join(errors) if errors else error_stack(result.error)
    return ExtractedTestAttempt(
        attemptIndex=index,
        retryIndex=result.retry or index,
        status=result.status,
        duration=result.duration,
        error=errors[0] if errors else None,
        errorStack=stack,
        screenshots=image_attachment_paths(result),
        attachments=text_attachments(result) if include_attachments else [],
        startTime=result.startTime,
        steps=build_step_tree(result.steps),
    )


def epoch_ms_to_iso(value: Union[int, float, str, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return (
            datetime.fromtimestamp(value / 1000, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z")
        )
    return str(value)


def extract_environment_data(archive: ReportArchive) -> Optional[dict[str, Any]]:
    """Read ``environment.json`` from the archive root, if present and valid."""
    if not archive.has_file("environment.json"):
        return None
    try:
        data = archive.read_json("environment.json")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Failed to parse environment.json", error=str(e))
        return None
    if not isinstance(data, dict):
        logger.warning("environment.json is not an object", type=type(data).__name__)
        return None
    return data


def extract_dat_metadata(archive: ReportArchive) -> dict[str, dict[str, Any]]:
    """Collect ``.dat`` sidecar metadata keyed by file name without extension.

    Only files whose JSON body is ``{"type": "metadata", "data": {...}}`` are
    kept; anything else is ignored.
    """
    metadata: dict[str, dict[str, Any]] = {}
    for name in archive.list_files():
        if not name.endswith(".dat"):
            continue
        try:
            parsed = json.loads(archive.read_text(name))
        except (json.JSONDecodeError, UnicodeDecodeError):
            continue
        if isinstance(parsed, dict) and parsed.get("type") == "metadata":
            data = parsed.get("data")
            if isinstance(data, dict):
                key = name.rsplit("/", 1)[-1][: -len(".dat")]
                metadata[key] = data
    if metadata:
        logger.info("Loaded sidecar metadata", files=len(metadata))
    return metadata


def merge_dat_metadata(
    result: Optional[ReportTestResult], dat_metadata: dict[str, dict[str, Any]]
) -> dict[str, Any]:
    """Merge sidecar metadata referenced by a result's attachments.

    Labels and parameters accumulate across files; the first description
    (plain or HTML) wins. ``epic`` is taken from the ``epic`` label.
    """
    merged: dict[str, Any] = {"labels": [], "parameters": []}
    if result is None or not dat_metadata:
        return merged

    for attachment in result.attachments:
        if attachment.contentType != DAT_METADATA_CONTENT_TYPE or not attachment.path:
            continue
        key = attachment.path.rsplit("/", 1)[-1]
        if key.endswith(".dat"):
            key = key[: -len(".dat")]
        data = dat_metadata.get(key)
        if not data:
            continue
        merged["labels"].extend(x for x in data.get("labels") or [] if isinstance(x, dict))
        merged["parameters"].extend(
            x for x in data.get("parameters") or [] if isinstance(x, dict)
        )
        if data.get("description") and "description" not in merged:
            merged["description"] = data["description"]
        if data.get("descriptionHtml") and "descriptionHtml" not in merged:
            merged["descriptionHtml"] = data["descriptionHtml"]

    for label in merged["labels"]:
        if isinstance(label, dict) and label.get("name") == "epic":
            merged["epic"] = label.get("value")
            break
    return merged
