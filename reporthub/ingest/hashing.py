"""Content fingerprinting for duplicate detection.

The fingerprint covers run metadata and each test's identity and status.
Durations, attempts, screenshots and error text are not part of it, so a
re-run of the same suite with the same outcomes on the same commit hashes
identically.
"""

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any, Union

from ..models.report_models import ContentHashMetadata, ExtractedTest


def _test_identity(test: Union[ExtractedTest, Mapping[str, Any]]) -> dict[str, str]:
    if isinstance(test, ExtractedTest):
        return {"name": test.name, "file": test.file, "status": test.status}
    return {
        "name": str(test.get("name", "")),
        "file": str(test.get("file", "")),
        "status": str(test.get("status", "")),
    }


def canonical_payload(
    metadata: Union[ContentHashMetadata, Mapping[str, Any]],
    tests: Iterable[Union[ExtractedTest, Mapping[str, Any]]],
) -> str:
    """Deterministic JSON text the fingerprint is computed over."""
    meta = metadata.model_dump() if isinstance(metadata, ContentHashMetadata) else dict(metadata)
    identities = sorted(
        (_test_identity(t) for t in tests),
        key=lambda t: (f"{t['file']}:{t['name']}", t["status"]),
    )
    payload = {
        "environment": meta.get("environment"),
        "trigger": meta.get("trigger"),
        "branch": meta.get("branch"),
        "commit": meta.get("commit"),
        "tests": identities,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def calculate_content_hash(
    metadata: Union[ContentHashMetadata, Mapping[str, Any]],
    tests: Iterable[Union[ExtractedTest, Mapping[str, Any]]],
) -> str:
    """SHA-256 hex digest of the canonical run payload.

    Independent of test order; sensitive to any change in metadata or in a
    test's name, file or status.
    """
    return hashlib.sha256(canonical_payload(metadata, tests).encode("utf-8")).hexdigest()
