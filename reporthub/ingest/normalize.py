"""Normalization of extracted tests into a ``ProcessedUpload``.

Extractors report what Playwright wrote; this module decides what the run
*means*: which branch and environment it belongs to, its aggregate counts,
its durations and its content fingerprint.

Branch Resolution (first match wins):
    1. A caller-supplied branch other than ``"unknown"``
    2. CI metadata keys GITHUB_HEAD_REF, GITHUB_REF_NAME, BRANCH,
       GIT_BRANCH, CI_COMMIT_BRANCH
    3. The pull-request title: a leading ticket key (``ABC-123``), else the
       title up to its first colon, else ``pr-<number>`` from the PR link
    4. A ``/tree/<branch>`` segment of the commit link
    5. ``"main"``
    The result is sanitized to ``[A-Za-z0-9-_/]`` and capped at 60
    characters plus an ellipsis.

Environment Resolution:
    A supplied environment is passed through the alias mapping (``prod`` →
    ``production`` ...). Without one, it is inferred from the branch name.

Statistics:
    ``total`` counts non-skipped tests; ``totalDuration`` sums per-test
    durations (each itself the sum of all attempts), while
    ``wallClockDuration`` spans the earliest attempt start to the latest
    attempt end so parallel workers are not double counted.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from ..models.report_models import (
    ContentHashMetadata,
    ExtractedTest,
    ExtractionResult,
    ProcessedUpload,
    RunStats,
    UploadParams,
)
from .hashing import calculate_content_hash

logger = structlog.get_logger()

ENVIRONMENT_MAPPING = {
    "preview": "development",
    "dev": "development",
    "prod": "production",
    "stage": "staging",
    "test": "testing",
}

BRANCH_CI_KEYS = ("GITHUB_HEAD_REF", "GITHUB_REF_NAME", "BRANCH", "GIT_BRANCH", "CI_COMMIT_BRANCH")
MAX_BRANCH_LENGTH = 60
UNKNOWN = "unknown"

_UNSAFE_BRANCH_CHARS = re.compile(r"[^a-zA-Z0-9\-_/]")
_TICKET_PREFIX = re.compile(r"^([A-Z]+-\d+)")
_PR_NUMBER = re.compile(r"/pull/(\d+)$")
_TREE_SEGMENT = re.compile(r"/tree/([^/]+)")


def sanitize_branch(branch: str) -> str:
    safe = _UNSAFE_BRANCH_CHARS.sub("-", branch)
    if len(safe) > MAX_BRANCH_LENGTH:
        return safe[:MAX_BRANCH_LENGTH] + "..."
    return safe


def _branch_from_ci(ci: dict[str, Any]) -> Optional[str]:
    for key in BRANCH_CI_KEYS:
        value = ci.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    pr_title = ci.get("prTitle")
    if isinstance(pr_title, str) and pr_title.strip():
        ticket = _TICKET_PREFIX.match(pr_title)
        if ticket:
            return ticket.group(1)
        prefix = pr_title.split(":", 1)[0].strip()
        if prefix:
            return prefix
        pr_href = ci.get("prHref")
        if isinstance(pr_href, str):
            pr_number = _PR_NUMBER.search(pr_href)
            if pr_number:
                return f"pr-{pr_number.group(1)}"

    commit_href = ci.get("commitHref")
    if isinstance(commit_href, str):
        tree = _TREE_SEGMENT.search(commit_href)
        if tree:
            return tree.group(1)
    return None


def resolve_branch(ci_metadata: Optional[dict[str, Any]], explicit_branch: str = UNKNOWN) -> str:
    """Resolve and sanitize the branch a run belongs to.

    Args:
        ci_metadata: CI block from the report, if any
        explicit_branch: Branch supplied by the uploader

    Returns:
        Sanitized branch name, never empty
    """
    if explicit_branch and explicit_branch != UNKNOWN:
        return sanitize_branch(explicit_branch)

    detected = _branch_from_ci(ci_metadata) if ci_metadata else None
    if detected:
        return sanitize_branch(detected)

    logger.warning("Branch could not be determined, defaulting to main")
    return "main"


def resolve_commit(ci_metadata: Optional[dict[str, Any]], explicit_commit: str = UNKNOWN) -> str:
    if explicit_commit and explicit_commit != UNKNOWN:
        return explicit_commit
    if ci_metadata and isinstance(ci_metadata.get("commitHash"), str) and ci_metadata["commitHash"]:
        return ci_metadata["commitHash"]
    return UNKNOWN


def detect_trigger_from_ci(ci_metadata: Optional[dict[str, Any]]) -> Optional[str]:
    """Infer the trigger from a CI build link, if there is one."""
    build_href = (ci_metadata or {}).get("buildHref")
    if not isinstance(build_href, str) or not build_href:
        return None
    if "pull_request" in build_href:
        return "pull_request"
    if "workflow_dispatch" in build_href:
        return "ci"
    return "merge_queue"


def normalize_environment(environment: str) -> str:
    return ENVIRONMENT_MAPPING.get(environment.lower(), environment)


def infer_environment_from_branch(branch: str) -> str:
    lowered = branch.lower()
    if "prod" in lowered or lowered in ("main", "master"):
        return "production"
    if "stag" in lowered:
        return "staging"
    return "development"


def resolve_environment(explicit_environment: Optional[str], branch: str) -> str:
    if explicit_environment and explicit_environment != UNKNOWN:
        return normalize_environment(explicit_environment)
    return infer_environment_from_branch(branch)


def detect_metadata_from_filename(
    filename: str,
    environments: list[str],
    triggers: list[str],
) -> dict[str, Optional[str]]:
    """Guess environment and trigger names from an uploaded file name.

    Matching is against the configured names, with the common aliases
    (prod, stage, dev/preview, pr). Falls back to ``merge_queue`` for the
    trigger when that trigger exists.
    """
    name = filename.lower()

    detected_env = None
    for env in environments:
        env_name = env.lower()
        if (
            env_name in name
            or (env_name == "production" and "prod" in name)
            or (env_name == "staging" and "stage" in name)
            or (env_name == "development" and ("dev" in name or "preview" in name))
        ):
            detected_env = env
            break

    detected_trigger = None
    for trigger in triggers:
        trigger_name = trigger.lower()
        if (
            trigger_name in name
            or trigger_name.replace("_", "-") in name
            or (trigger_name == "pull_request" and "pr" in name)
        ):
            detected_trigger = trigger
            break
    if detected_trigger is None and "merge_queue" in triggers:
        detected_trigger = "merge_queue"

    return {"environment": detected_env, "trigger": detected_trigger}


def calculate_test_stats(tests: list[ExtractedTest]) -> RunStats:
    stats = RunStats()
    for test in tests:
        if test.status == "passed":
            stats.passed += 1
        elif test.status == "failed":
            stats.failed += 1
        elif test.status == "flaky":
            stats.flaky += 1
        elif test.status == "skipped":
            stats.skipped += 1
    stats.total = len(tests) - stats.skipped
    return stats


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_wall_clock_duration(tests: list[ExtractedTest]) -> Optional[float]:
    """Milliseconds from the earliest attempt start to the latest attempt end.

    Tests without attempt timings fall back to their own start time and
    total duration. Returns None when no timing information exists.
    """
    starts: list[float] = []
    ends: list[float] = []

    for test in tests:
        intervals = [
            (parse_timestamp(a.startTime), a.duration) for a in test.attempts if a.startTime
        ]
        if not intervals and test.startedAt:
            intervals = [(parse_timestamp(test.startedAt), test.duration)]
        for started, duration in intervals:
            if started is None:
                continue
            start_ms = started.timestamp() * 1000
            starts.append(start_ms)
            ends.append(start_ms + duration)

    if not starts:
        return None
    return max(ends) - min(starts)


def format_duration(duration_ms: float) -> str:
    total_seconds = int(duration_ms // 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}m {seconds}s"


def normalize_extraction(extraction: ExtractionResult, params: UploadParams) -> ProcessedUpload:
    """Turn extractor output plus upload parameters into a ``ProcessedUpload``.

    Args:
        extraction: Result of the HTML or JSON extractor
        params: Caller-supplied environment, trigger, branch and commit; an
            unknown commit is taken from the CI ``commitHash``

    Returns:
        ProcessedUpload with resolved branch/environment, stats, durations
        and the content hash (the caller's pre-computed hash if supplied)
    """
    branch = resolve_branch(extraction.ciMetadata, params.branch)
    environment = resolve_environment(params.environment, branch)
    commit = resolve_commit(extraction.ciMetadata, params.commit)

    tests = extraction.tests
    stats = calculate_test_stats(tests)
    total_duration = sum(t.duration for t in tests)

    content_hash = params.contentHash or calculate_content_hash(
        ContentHashMetadata(
            environment=environment,
            trigger=params.trigger,
            branch=branch,
            commit=commit,
        ),
        tests,
    )

    timestamp = parse_timestamp(extraction.testExecutionTime) or datetime.now(timezone.utc)

    logger.info(
        "Normalized upload",
        branch=branch,
        environment=environment,
        total=stats.total,
        failed=stats.failed,
        flaky=stats.flaky,
    )

    return ProcessedUpload(
        tests=tests,
        stats=stats,
        contentHash=content_hash,
        branch=branch,
        environment=environment,
        timestamp=timestamp,
        commit=commit,
        totalDuration=total_duration,
        wallClockDuration=calculate_wall_clock_duration(tests),
        durationFormatted=format_duration(total_duration),
        ciMetadata=extraction.ciMetadata,
        environmentData=extraction.environmentData,
        format=extraction.format,
    )
