"""Screenshot upload, screenshot URL mapping and step-tree offloading.

Screenshots referenced by tests are read from the upload archive, pushed to
object storage with bounded concurrency, and the references on each test
and attempt are rewritten to public URLs. References that cannot be
resolved are dropped (and logged) rather than failing the upload.

Step trees can be large (thousands of nodes for long end-to-end tests), so
trees above the inline thresholds are serialized to JSON and stored next to
the screenshots. The deepest failing step is always extracted first so the
dashboard can show it without downloading the whole tree.

Storage Layout:
    - screenshots: ``screenshots/<epoch ms>-<digest>-<file name>``
    - steps: ``<run id>/<test id>-<retry index>.json`` in the steps bucket;
      this key (not a URL) is what the attempt row keeps as ``steps_url``
"""

import asyncio
import hashlib
import json
import mimetypes
import re
import time
from typing import Optional

import structlog

from ..config import IngestSettings
from ..models.report_models import (
    AttemptAttachment,
    ExtractedTest,
    LastFailedStep,
    StepsOffloadResult,
    TestStep,
)
from ..storage.blob_store import BlobStore, BlobUploadError
from .archive import ReportArchive

logger = structlog.get_logger()

SCREENSHOT_EXTENSIONS = (".png", ".jpg", ".jpeg")
TRUNCATION_MARKER = "\n... [truncated]"
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def jpg_variant(path: str) -> Optional[str]:
    if path.lower().endswith(".png"):
        return path[: -len(".png")] + ".jpg"
    return None


def _safe_key_part(value: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", value).strip("._") or "item"


def screenshot_storage_key(entry: str, timestamp_ms: Optional[int] = None) -> str:
    timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    basename = entry.rsplit("/", 1)[-1]
    digest = hashlib.sha1(entry.encode("utf-8")).hexdigest()[:8]
    return f"screenshots/{timestamp_ms}-{digest}-{_safe_key_part(basename)}"


def referenced_screenshots(tests: list[ExtractedTest]) -> list[str]:
    seen: dict[str, None] = {}
    for test in tests:
        for path in test.screenshots:
            seen.setdefault(path, None)
        for attempt in test.attempts:
            for path in attempt.screenshots:
                seen.setdefault(path, None)
    return list(seen)


def resolve_archive_entry(
    archive: ReportArchive, reference: str, basename_index: dict[str, list[str]]
) -> Optional[str]:
    """Find the archive entry a screenshot reference points at.

    Tries the reference as written, without a leading slash, and with a
    ``.png`` → ``.jpg`` swap. Absolute paths from JSON reports fall back to
    a unique file-name match.
    """
    candidates = [reference, reference.lstrip("/")]
    variant = jpg_variant(reference)
    if variant:
        candidates += [variant, variant.lstrip("/")]
    for candidate in candidates:
        if archive.has_file(candidate):
            return candidate

    for name in (reference, variant):
        if not name:
            continue
        matches = basename_index.get(name.rsplit("/", 1)[-1], [])
        if len(matches) == 1:
            return matches[0]
    return None


async def upload_screenshots(
    archive: ReportArchive,
    tests: list[ExtractedTest],
    blob_store: BlobStore,
    settings: IngestSettings,
) -> dict[str, str]:
    """Upload every referenced screenshot and return reference → URL.

    Uploads run concurrently, at most ``settings.upload_concurrency`` at a
    time. A failed upload is logged and leaves the reference unmapped.
    """
    references = referenced_screenshots(tests)
    if not references:
        return {}

    basename_index: dict[str, list[str]] = {}
    for entry in archive.list_files():
        if entry.lower().endswith(SCREENSHOT_EXTENSIONS):
            basename_index.setdefault(entry.rsplit("/", 1)[-1], []).append(entry)

    entry_for_reference: dict[str, str] = {}
    for reference in references:
        entry = resolve_archive_entry(archive, reference, basename_index)
        if entry:
            entry_for_reference[reference] = entry

    semaphore = asyncio.Semaphore(settings.upload_concurrency)
    timestamp_ms = int(time.time() * 1000)

    async def _upload(entry: str) -> tuple[str, Optional[str]]:
        async with semaphore:
            content_type = mimetypes.guess_type(entry)[0] or "image/png"
            try:
                url = await blob_store.upload(
                    f"{settings.screenshot_bucket}/{screenshot_storage_key(entry, timestamp_ms)}",
                    archive.read_bytes(entry),
                    content_type,
                )
            except BlobUploadError as e:
                logger.error("Failed to upload screenshot", entry=entry, error=str(e))
                return entry, None
            return entry, url

    entries = sorted(set(entry_for_reference.values()))
    uploaded = dict(await asyncio.gather(*(_upload(e) for e in entries)))

    urls: dict[str, str] = {}
    for reference, entry in entry_for_reference.items():
        url = uploaded.get(entry)
        if url:
            urls[reference] = url
            urls[entry] = url

    logger.info(
        "Uploaded screenshots",
        referenced=len(references),
        uploaded=sum(1 for u in uploaded.values() if u),
    )
    return urls


def _lookup_url(path: str, urls: dict[str, str]) -> Optional[str]:
    if path in urls:
        return urls[path]
    variant = jpg_variant(path)
    if variant and variant in urls:
        return urls[variant]
    return None


def _map_paths(paths: list[str], urls: dict[str, str], test: ExtractedTest) -> list[str]:
    mapped = []
    for path in paths:
        url = _lookup_url(path, urls)
        if url:
            mapped.append(url)
        else:
            logger.warning("Screenshot not found in storage map", test=test.name, path=path)
    return mapped


def map_screenshot_paths(tests: list[ExtractedTest], urls: dict[str, str]) -> list[ExtractedTest]:
    """Return copies of ``tests`` with screenshot references replaced by URLs.

    A reference that has no URL is dropped. Losing every screenshot of a
    test that had some is logged as an error.
    """
    mapped_tests = []
    for test in tests:
        screenshots = _map_paths(test.screenshots, urls, test)
        if test.screenshots and not screenshots:
            logger.error(
                "All screenshots lost for test",
                test=test.name,
                original_count=len(test.screenshots),
            )
        attempts = [
            a.model_copy(update={"screenshots": _map_paths(a.screenshots, urls, test)})
            for a in test.attempts
        ]
        mapped_tests.append(test.model_copy(update={"screenshots": screenshots, "attempts": attempts}))
    return mapped_tests


def find_last_failed_step(steps: list[TestStep]) -> Optional[LastFailedStep]:
    """Deepest failing step, searching from the last step backwards.

    Children are searched before their parent, so a failing ``expect`` wins
    over the ``test.step`` that contains it.
    """
    for step in reversed(steps):
        nested = find_last_failed_step(step.steps)
        if nested:
            return nested
        if step.error is not None:
            return LastFailedStep(
                title=step.title or "Unknown step",
                duration=step.duration or 0,
                error=step.error_message() or str(step.error),
            )
    return None


def count_steps(steps: list[TestStep]) -> int:
    return sum(1 + count_steps(s.steps) for s in steps)


def steps_storage_key(run_id: str, test_id: str, retry_index: int) -> str:
    return f"{_safe_key_part(run_id)}/{_safe_key_part(test_id)}-{retry_index}.json"


def _should_offload(steps: list[TestStep], payload: bytes, settings: IngestSettings) -> bool:
    if settings.steps_inline_max_bytes == 0 and settings.steps_inline_max_count == 0:
        return True
    if settings.steps_inline_max_bytes and len(payload) > settings.steps_inline_max_bytes:
        return True
    if settings.steps_inline_max_count and count_steps(steps) > settings.steps_inline_max_count:
        return True
    return False


async def offload_steps(
    steps: list[TestStep],
    run_id: str,
    test_id: str,
    retry_index: int,
    blob_store: BlobStore,
    settings: IngestSettings,
) -> StepsOffloadResult:
    """Store an attempt's step tree out-of-band when it exceeds the inline limits.

    Args:
        steps: Step tree of one attempt
        run_id: Id of the persisted test run
        test_id: Playwright test id
        retry_index: Retry counter of the attempt
        blob_store: Destination store
        settings: Bucket name and inline thresholds

    Returns:
        StepsOffloadResult with either ``stepsUrl`` (the storage key) or
        ``inlineSteps`` set (neither for an empty tree) and the last failed
        step. An upload failure yields no URL but keeps the last failed step.
    """
    if not steps:
        return StepsOffloadResult()

    last_failed = find_last_failed_step(steps)
    payload = json.dumps(
        [s.model_dump(exclude_none=True) for s in steps], indent=2
    ).encode("utf-8")

    if not _should_offload(steps, payload, settings):
        return StepsOffloadResult(inlineSteps=steps, lastFailedStep=last_failed)

    key = steps_storage_key(run_id, test_id, retry_index)
    try:
        await blob_store.upload(f"{settings.steps_bucket}/{key}", payload, "application/json")
    except BlobUploadError as e:
        logger.error("Failed to upload steps", test_id=test_id, retry=retry_index, error=str(e))
        return StepsOffloadResult(lastFailedStep=last_failed)

    return StepsOffloadResult(stepsUrl=key, lastFailedStep=last_failed)


def truncate_attachments(
    attachments: list[AttemptAttachment], max_bytes: int
) -> list[AttemptAttachment]:
    """Cap each attachment body at ``max_bytes`` of UTF-8 (0 disables the cap)."""
    if max_bytes <= 0:
        return attachments
    capped = []
    for attachment in attachments:
        encoded = attachment.content.encode("utf-8")
        if len(encoded) <= max_bytes:
            capped.append(attachment)
            continue
        content = encoded[:max_bytes].decode("utf-8", errors="ignore") + TRUNCATION_MARKER
        capped.append(attachment.model_copy(update={"content": content}))
    return capped
