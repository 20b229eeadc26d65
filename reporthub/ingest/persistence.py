"""Lookup of reference rows and persistence of a processed upload.

Write Order:
    1. test run row (returns the run id every later row references)
    2. suite test registry upsert keyed on (project, suite, file, name)
    3. test rows, each linked to its suite test via ``file::name``
    4. attempt rows, after step trees were offloaded where needed

Each step commits on its own. A failure part-way through leaves the rows
already written in place; the error is raised as ``StorageFailureError``
and logged with the run id so the partial run can be found.
"""

import asyncio
import uuid
from typing import Any, Optional

import structlog

from ..config import IngestSettings
from ..db.postgres_store import PostgresRunStore
from ..models.report_models import DatabaseIds, ExtractedTest, ProcessedUpload
from ..storage.blob_store import BlobStore
from .attachments import offload_steps, truncate_attachments
from .errors import LookupNotFoundError, StorageFailureError
from .normalize import ENVIRONMENT_MAPPING, parse_timestamp

logger = structlog.get_logger()


async def lookup_database_ids(
    store: PostgresRunStore,
    environment_name: str,
    trigger_name: str,
    suite_id: str,
    project_id: Optional[str] = None,
) -> DatabaseIds:
    """Resolve suite, environment and trigger names to row ids.

    The project is taken from the suite. When ``project_id`` is given (CI
    uploads authenticated by a project key) the suite must belong to it.

    Raises:
        LookupNotFoundError: Any of the three does not exist
        StorageFailureError: The lookup itself failed
    """
    environment_name = ENVIRONMENT_MAPPING.get(environment_name, environment_name)
    try:
        suite = await store.get_suite_by_id(suite_id)
        if suite is None or (project_id and suite["project_id"] != project_id):
            raise LookupNotFoundError(
                "suite", suite_id, f'Suite "{suite_id}" not found. Please create it first.'
            )

        environment = await store.get_environment_by_name(environment_name)
        if environment is None:
            raise LookupNotFoundError(
                "environment",
                environment_name,
                f"Environment '{environment_name}' not found. "
                "Please add it to the database first.",
            )

        trigger = await store.get_trigger_by_name(trigger_name)
        if trigger is None:
            raise LookupNotFoundError(
                "trigger",
                trigger_name,
                f"Trigger '{trigger_name}' not found. Please add it to the database first.",
            )
    except LookupNotFoundError as e:
        logger.warning("Lookup failed", entity=e.entity, name=e.name)
        raise
    except Exception as e:
        logger.error("Lookup query failed", error=str(e))
        raise StorageFailureError("Failed to look up upload references", details=str(e)) from e

    return DatabaseIds(
        projectId=suite["project_id"],
        environmentId=environment["id"],
        triggerId=trigger["id"],
        suiteId=suite["id"],
    )


def _test_key(test: ExtractedTest) -> str:
    return f"{test.file}::{test.name}"


def build_test_rows(
    run_id: str, tests: list[ExtractedTest], suite_test_ids: dict[str, str]
) -> list[dict[str, Any]]:
    rows = []
    for test in tests:
        rows.append(
            {
                "id": str(uuid.uuid4()),
                "test_run_id": run_id,
                "suite_test_id": suite_test_ids.get(_test_key(test)),
                "name": test.name,
                "file": test.file,
                "status": test.status,
                "duration": int(round(test.duration)),
                "error": test.error,
                "screenshots": test.screenshots,
                "attempts": max(len(test.attempts), 1),
                "worker_index": test.workerIndex,
                "started_at": parse_timestamp(test.startedAt),
                "location": test.location.model_dump() if test.location else None,
                "metadata": test.metadata.model_dump(exclude_none=True),
            }
        )
    return rows


async def build_attempt_rows(
    run_id: str,
    tests: list[ExtractedTest],
    test_rows: list[dict[str, Any]],
    blob_store: BlobStore,
    settings: IngestSettings,
) -> list[dict[str, Any]]:
    """Offload step trees and build ``test_results`` rows for every attempt."""
    semaphore = asyncio.Semaphore(settings.upload_concurrency)

    async def _attempt_row(test: ExtractedTest, test_row_id: str, attempt) -> dict[str, Any]:
        async with semaphore:
            offload = await offload_steps(
                attempt.steps, run_id, test.id, attempt.retryIndex, blob_store, settings
            )
        return {
            "test_id": test_row_id,
            "retry_index": attempt.retryIndex,
            "status": attempt.status,
            "duration": int(round(attempt.duration)),
            "error": attempt.error,
            "error_stack": attempt.errorStack,
            "screenshots": attempt.screenshots,
            "attachments": [
                a.model_dump()
                for a in truncate_attachments(attempt.attachments, settings.attachment_max_bytes)
            ],
            "started_at": parse_timestamp(attempt.startTime),
            "steps": (
                [s.model_dump(exclude_none=True) for s in offload.inlineSteps]
                if offload.inlineSteps
                else None
            ),
            "steps_url": offload.stepsUrl,
            "last_failed_step": offload.lastFailedStep.model_dump() if offload.lastFailedStep else None,
        }

    jobs = [
        _attempt_row(test, row["id"], attempt)
        for test, row in zip(tests, test_rows)
        for attempt in test.attempts
    ]
    return list(await asyncio.gather(*jobs))


async def insert_test_run(
    store: PostgresRunStore,
    blob_store: BlobStore,
    settings: IngestSettings,
    ids: DatabaseIds,
    processed: ProcessedUpload,
    filename: Optional[str] = None,
) -> str:
    """Persist a processed upload and return the new run id.

    Raises:
        StorageFailureError: Any write failed
    """
    run_id: Optional[str] = None
    try:
        run_id = await store.create_run(
            {
                "project_id": ids.projectId,
                "environment_id": ids.environmentId,
                "trigger_id": ids.triggerId,
                "suite_id": ids.suiteId,
                "branch": processed.branch,
                "commit": processed.commit,
                "timestamp": processed.timestamp,
                "total": processed.stats.total,
                "passed": processed.stats.passed,
                "failed": processed.stats.failed,
                "flaky": processed.stats.flaky,
                "skipped": processed.stats.skipped,
                "duration": int(round(processed.totalDuration)),
                "wall_clock_duration": (
                    int(round(processed.wallClockDuration))
                    if processed.wallClockDuration is not None
                    else None
                ),
                "content_hash": processed.contentHash,
                "uploaded_filename": filename,
                "ci_metadata": processed.ciMetadata,
                "environment_data": processed.environmentData,
            }
        )

        suite_test_ids = await store.upsert_suite_tests(
            ids.projectId,
            ids.suiteId,
            [(t.file, t.name) for t in processed.tests],
        )

        test_rows = build_test_rows(run_id, processed.tests, suite_test_ids)
        await store.insert_tests(test_rows)

        attempt_rows = await build_attempt_rows(
            run_id, processed.tests, test_rows, blob_store, settings
        )
        await store.insert_attempts(attempt_rows)
    except Exception as e:
        logger.error("Failed to persist test run", run_id=run_id, error=str(e))
        raise StorageFailureError("Failed to store test results", details=str(e)) from e

    logger.info(
        "Test run stored",
        run_id=run_id,
        tests=len(processed.tests),
        attempts=len(attempt_rows),
    )
    return run_id
