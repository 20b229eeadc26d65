"""End-to-end processing of an uploaded Playwright report archive.

``IngestPipeline`` is the single entry point used by both the interactive
upload route and the CI upload route. It never raises: every outcome is
returned as an ``UploadResult`` carrying the HTTP status the service should
answer with.

Processing Order:
    1. Resolve suite, environment and trigger to row ids
    2. Open the archive and extract tests (HTML or JSON report)
    3. Normalize: branch, environment, commit, stats, durations, content hash
    4. Duplicate check against stored runs of the same project
    5. Upload referenced screenshots and rewrite their paths to URLs
    6. Persist run, suite tests, tests and attempts (offloading step trees)
    7. Post-ingest hooks: failure webhooks and daily metrics

Nothing is written before step 4 passes, so a duplicate upload leaves no
trace in storage.

Result Status Codes:
    - 200: stored
    - 409: duplicate of an existing run
    - 400: unknown environment/trigger/suite or unreadable report
    - 500: storage failure or anything unexpected
"""

from typing import Any, Optional

import structlog
from structlog.contextvars import bound_contextvars

from ..config import IngestSettings
from ..db.metrics import PostgresMetricsAggregator
from ..db.postgres_store import PostgresRunStore
from ..models.report_models import (
    DuplicateCheckResult,
    ProcessedUpload,
    TestRunRecord,
    UploadParams,
    UploadResult,
)
from ..notifications.webhooks import WebhookNotifier
from ..storage.blob_store import BlobStore
from .archive import ReportArchive
from .attachments import map_screenshot_paths, upload_screenshots
from .duplicates import check_duplicate
from .errors import IngestError
from .extraction import extract_tests
from .hooks import run_post_ingest_hooks
from .normalize import detect_metadata_from_filename, detect_trigger_from_ci, normalize_extraction
from .persistence import insert_test_run, lookup_database_ids

logger = structlog.get_logger()

GENERIC_FAILURE = "Failed to process upload"
DUPLICATE_ERROR = "Duplicate upload detected"


def _failure(error: IngestError) -> UploadResult:
    return UploadResult(
        success=False,
        statusCode=error.status_code,
        error=error.message,
        details=error.details,
    )


def _success(
    run_id: str, params: UploadParams, processed: ProcessedUpload, warnings: list[str]
) -> UploadResult:
    stats = processed.stats
    record = TestRunRecord(
        id=run_id,
        timestamp=processed.timestamp,
        environment=processed.environment,
        trigger=params.trigger,
        suite=params.suite,
        branch=processed.branch,
        commit=processed.commit,
        total=stats.total,
        passed=stats.passed,
        failed=stats.failed,
        flaky=stats.flaky,
        skipped=stats.skipped,
        duration=processed.durationFormatted,
        wallClockDuration=processed.wallClockDuration,
        contentHash=processed.contentHash,
        tests=processed.tests,
    )
    return UploadResult(
        success=True,
        testRunId=run_id,
        testRun=record,
        message=(
            f"Successfully uploaded {len(processed.tests)} tests "
            f"({stats.passed} passed, {stats.failed} failed)"
        ),
        warnings=warnings,
    )


class IngestPipeline:
    """Turns report archives into stored test runs.

    Args:
        store: Run store used for lookups, duplicate checks and writes
        blob_store: Destination for screenshots and offloaded step trees
        settings: Buckets, concurrency and size limits
        notifier: Failure webhook sender, optional
        aggregator: Daily metrics aggregator, optional
    """

    def __init__(
        self,
        store: PostgresRunStore,
        blob_store: BlobStore,
        settings: IngestSettings,
        notifier: Optional[WebhookNotifier] = None,
        aggregator: Optional[PostgresMetricsAggregator] = None,
    ):
        self.store = store
        self.blob_store = blob_store
        self.settings = settings
        self.notifier = notifier
        self.aggregator = aggregator

    async def process_upload(
        self,
        archive_bytes: bytes,
        params: UploadParams,
        project_id: Optional[str] = None,
        filename: Optional[str] = None,
        upload_source: str = "upload",
    ) -> UploadResult:
        """Process one uploaded report archive.

        Args:
            archive_bytes: Raw ZIP bytes of the Playwright report
            params: Environment, trigger, suite, branch and commit
            project_id: Project the caller is authenticated for; the suite
                must belong to it
            filename: Original file name, stored with the run
            upload_source: Label for logs (``upload`` or ``ci``)

        Returns:
            UploadResult in its success, duplicate or failure shape
        """
        with bound_contextvars(upload_source=upload_source, filename=filename, suite=params.suite):
            try:
                return await self._process(archive_bytes, params, project_id or params.projectId, filename)
            except IngestError as e:
                logger.warning("Upload rejected", error=e.message, details=e.details)
                return _failure(e)
            except Exception as e:
                logger.error("Unexpected error processing upload", error=str(e), exc_info=True)
                return UploadResult(
                    success=False, statusCode=500, error=GENERIC_FAILURE, details=str(e)
                )

    async def _process(
        self,
        archive_bytes: bytes,
        params: UploadParams,
        project_id: Optional[str],
        filename: Optional[str],
    ) -> UploadResult:
        ids = await lookup_database_ids(
            self.store, params.environment, params.trigger, params.suite, project_id
        )

        with ReportArchive(archive_bytes) as archive:
            extraction = extract_tests(archive)
            processed = normalize_extraction(extraction, params)
            logger.info(
                "Report extracted",
                format=extraction.format,
                tests=len(extraction.tests),
                warnings=len(extraction.warnings),
            )

            duplicate = await check_duplicate(self.store, processed.contentHash, ids.projectId)
            if duplicate.isDuplicate and duplicate.existingRun is not None:
                existing = duplicate.existingRun
                return UploadResult(
                    success=False,
                    statusCode=409,
                    error=DUPLICATE_ERROR,
                    message=(
                        f"This exact test run was already uploaded on "
                        f"{existing.timestamp.isoformat()}."
                    ),
                    isDuplicate=True,
                    existingRunId=existing.id,
                )

            urls = await upload_screenshots(
                archive, processed.tests, self.blob_store, self.settings
            )

        processed = processed.model_copy(
            update={"tests": map_screenshot_paths(processed.tests, urls)}
        )

        run_id = await insert_test_run(
            self.store, self.blob_store, self.settings, ids, processed, filename
        )

        await run_post_ingest_hooks(
            self.store,
            self.notifier,
            self.aggregator,
            processed,
            run_id,
            ids.projectId,
            self.settings.app_url,
        )

        logger.info(
            "Upload processed",
            run_id=run_id,
            total=processed.stats.total,
            passed=processed.stats.passed,
            failed=processed.stats.failed,
        )
        return _success(run_id, params, processed, extraction.warnings)

    async def check_duplicate_upload(
        self,
        params: UploadParams,
        archive_bytes: Optional[bytes] = None,
        project_id: Optional[str] = None,
    ) -> DuplicateCheckResult:
        """Check whether an upload would be a duplicate without storing it.

        Uses ``params.contentHash`` when the caller computed it; otherwise
        the archive is extracted and normalized to compute the hash.

        Raises:
            IngestError: Lookup failed or the archive could not be read
        """
        ids = await lookup_database_ids(
            self.store, params.environment, params.trigger, params.suite, project_id
        )
        content_hash = params.contentHash
        if content_hash is None:
            if archive_bytes is None:
                raise IngestError("Either contentHash or a report file is required")
            with ReportArchive(archive_bytes) as archive:
                content_hash = normalize_extraction(extract_tests(archive), params).contentHash
        return await check_duplicate(self.store, content_hash, ids.projectId)

    async def detect_upload_metadata(
        self, filename: str, archive_bytes: Optional[bytes] = None
    ) -> dict[str, Any]:
        """Guess environment and trigger for uploads that omit them.

        The file name is matched against the configured environments and
        triggers. When an archive is given and its CI metadata carries a
        build link, the trigger inferred from that link wins.
        """
        environments = await self.store.list_environment_names()
        triggers = await self.store.list_trigger_names()
        detected = detect_metadata_from_filename(filename, environments, triggers)

        if archive_bytes is not None:
            try:
                with ReportArchive(archive_bytes) as archive:
                    ci_trigger = detect_trigger_from_ci(extract_tests(archive).ciMetadata)
            except IngestError as e:
                logger.warning("Could not read CI metadata for detection", error=e.message)
                ci_trigger = None
            if ci_trigger and ci_trigger in triggers:
                detected["trigger"] = ci_trigger

        logger.info("Detected upload metadata", filename=filename, **detected)
        return detected
