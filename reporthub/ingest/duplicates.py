"""Duplicate-run detection by content hash."""

from typing import Optional

import structlog

from ..db.postgres_store import PostgresRunStore
from ..models.report_models import DuplicateCheckResult, ExistingRun

logger = structlog.get_logger()


async def check_duplicate(
    store: PostgresRunStore, content_hash: str, project_id: Optional[str]
) -> DuplicateCheckResult:
    """Look up a stored run with the same fingerprint in the same project.

    A failed lookup is logged and reported as "not a duplicate": duplicate
    detection is advisory and must not block an upload.
    """
    if not content_hash or not project_id:
        return DuplicateCheckResult(isDuplicate=False, contentHash=content_hash)

    try:
        existing = await store.find_by_content_hash(content_hash, project_id)
    except Exception as e:
        logger.error(
            "Duplicate lookup failed", project_id=project_id, content_hash=content_hash, error=str(e)
        )
        return DuplicateCheckResult(isDuplicate=False, contentHash=content_hash)

    if existing is None:
        return DuplicateCheckResult(isDuplicate=False, contentHash=content_hash)

    logger.info("Duplicate run detected", existing_run_id=existing["id"], content_hash=content_hash)
    return DuplicateCheckResult(
        isDuplicate=True,
        existingRun=ExistingRun(id=existing["id"], timestamp=existing["timestamp"]),
        contentHash=content_hash,
    )
