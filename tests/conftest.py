"""Global test configuration and fixtures.

Provides report archive builders (HTML with an embedded base64 ZIP, and
JSON reporter output), an in-memory run store, an in-memory blob store and
settings pointing at a temporary directory.
"""

import base64
import io
import json
import uuid
import zipfile
from typing import Any, Optional, Union

import pytest

from reporthub.config import IngestSettings
from reporthub.storage.blob_store import BlobStore, BlobUploadError

SUITE_ID = "11111111-1111-1111-1111-111111111111"
PROJECT_ID = "22222222-2222-2222-2222-222222222222"
ORG_ID = "33333333-3333-3333-3333-333333333333"


def make_zip(files: dict[str, Union[str, bytes]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content.encode("utf-8") if isinstance(content, str) else content)
    return buffer.getvalue()


def make_result(
    status: str = "passed",
    duration: float = 100,
    retry: int = 0,
    start_time: Optional[str] = "2024-05-01T10:00:00.000Z",
    errors: Optional[list[Any]] = None,
    attachments: Optional[list[dict[str, Any]]] = None,
    steps: Optional[list[dict[str, Any]]] = None,
    worker_index: int = 0,
) -> dict[str, Any]:
    return {
        "workerIndex": worker_index,
        "status": status,
        "duration": duration,
        "errors": errors or [],
        "attachments": attachments or [],
        "retry": retry,
        "startTime": start_time,
        "steps": steps or [],
    }


def make_html_test(
    test_id: str,
    title: str,
    file: str = "tests/example.spec.ts",
    outcome: str = "expected",
    results: Optional[list[dict[str, Any]]] = None,
    annotations: Optional[list[dict[str, Any]]] = None,
    project_name: str = "chromium",
) -> dict[str, Any]:
    results = results if results is not None else [make_result()]
    return {
        "testId": test_id,
        "title": title,
        "projectName": project_name,
        "location": {"file": file, "line": 10, "column": 5},
        "outcome": outcome,
        "duration": sum(r["duration"] for r in results),
        "annotations": annotations or [],
        "results": results,
    }


def build_html_report(
    fragments: dict[str, Union[dict[str, Any], str]],
    report_meta: Optional[dict[str, Any]] = None,
    extra_files: Optional[dict[str, Union[str, bytes]]] = None,
) -> bytes:
    """HTML report ZIP: ``index.html`` embedding a base64 ZIP of fragments.

    Fragment values that are strings are written verbatim (for corrupt JSON).
    """
    inner_files: dict[str, Union[str, bytes]] = {
        name: body if isinstance(body, str) else json.dumps(body)
        for name, body in fragments.items()
    }
    if report_meta is not None:
        inner_files["report.json"] = json.dumps(report_meta)
    encoded = base64.b64encode(make_zip(inner_files)).decode("ascii")
    index_html = (
        "<!DOCTYPE html><html><body><script>"
        f'window.playwrightReportBase64 = "data:application/zip;base64,{encoded}";'
        "</script></body></html>"
    )
    files: dict[str, Union[str, bytes]] = {"index.html": index_html}
    files.update(extra_files or {})
    return make_zip(files)


def build_json_report(
    specs: list[dict[str, Any]],
    ci: Optional[dict[str, Any]] = None,
    start_time: str = "2024-05-01T10:00:00.000Z",
    path: str = "report.json",
    extra_files: Optional[dict[str, Union[str, bytes]]] = None,
) -> bytes:
    """ZIP holding a JSON reporter document with one suite per spec file."""
    suites: dict[str, dict[str, Any]] = {}
    for spec in specs:
        file = spec.get("file", "tests/example.spec.ts")
        suites.setdefault(file, {"title": file, "file": file, "specs": [], "suites": []})
        suites[file]["specs"].append(spec)
    config: dict[str, Any] = {"rootDir": "/repo"}
    if ci is not None:
        config["metadata"] = {"ci": ci}
    report = {
        "config": config,
        "suites": list(suites.values()),
        "stats": {"startTime": start_time, "duration": 1000},
    }
    files: dict[str, Union[str, bytes]] = {path: json.dumps(report)}
    files.update(extra_files or {})
    return make_zip(files)


def make_json_spec(
    title: str,
    file: str = "tests/example.spec.ts",
    status: str = "expected",
    results: Optional[list[dict[str, Any]]] = None,
    project_name: str = "chromium",
) -> dict[str, Any]:
    """A spec in the JSON reporter's native shape (results under ``tests``)."""
    return {
        "title": title,
        "id": f"id-{title}",
        "file": file,
        "location": {"file": file, "line": 3, "column": 1},
        "tests": [
            {
                "projectName": project_name,
                "status": status,
                "annotations": [],
                "results": results if results is not None else [make_result()],
            }
        ],
    }


class FakeRunStore:
    """In-memory stand-in for ``PostgresRunStore``."""

    def __init__(self):
        self.suites = {SUITE_ID: {"id": SUITE_ID, "project_id": PROJECT_ID, "name": "Smoke"}}
        self.environments = {
            name: {"id": str(uuid.uuid4()), "name": name}
            for name in ("production", "staging", "development")
        }
        self.triggers = {
            name: {"id": str(uuid.uuid4()), "name": name}
            for name in ("ci", "pull_request", "merge_queue")
        }
        self.projects = {
            PROJECT_ID: {
                "id": PROJECT_ID,
                "name": "web",
                "display_name": "Web App",
                "organization_id": ORG_ID,
                "organization_name": "Acme",
            }
        }
        self.runs: list[dict[str, Any]] = []
        self.suite_tests: dict[str, str] = {}
        self.tests: list[dict[str, Any]] = []
        self.attempts: list[dict[str, Any]] = []
        self.fail_on: Optional[str] = None
        self.initialized = False
        self.schema_applied = False
        self.closed = False

    def _maybe_fail(self, operation: str) -> None:
        if self.fail_on == operation:
            raise RuntimeError(f"{operation} failed")

    async def initialize(self):
        self.initialized = True

    async def execute_schema(self, schema_file=None):
        self.schema_applied = True

    async def close(self):
        self.closed = True

    async def health_check(self) -> bool:
        return True

    async def get_statistics(self) -> dict[str, int]:
        return {
            "test_runs": len(self.runs),
            "tests": len(self.tests),
            "attempts": len(self.attempts),
            "suite_tests": len(self.suite_tests),
        }

    async def get_suite_by_id(self, suite_id):
        self._maybe_fail("get_suite_by_id")
        return self.suites.get(suite_id)

    async def get_environment_by_name(self, name):
        return self.environments.get(name)

    async def get_trigger_by_name(self, name):
        return self.triggers.get(name)

    async def list_environment_names(self):
        return sorted(self.environments)

    async def list_trigger_names(self):
        return sorted(self.triggers)

    async def get_project_with_organization(self, project_id):
        return self.projects.get(project_id)

    async def find_by_content_hash(self, content_hash, project_id):
        self._maybe_fail("find_by_content_hash")
        matches = [
            r
            for r in self.runs
            if r["content_hash"] == content_hash and r["project_id"] == project_id
        ]
        if not matches:
            return None
        newest = max(matches, key=lambda r: r["timestamp"])
        return {"id": newest["id"], "timestamp": newest["timestamp"]}

    async def create_run(self, run):
        self._maybe_fail("create_run")
        run_id = str(uuid.uuid4())
        self.runs.append({**run, "id": run_id})
        return run_id

    async def upsert_suite_tests(self, project_id, suite_id, entries):
        self._maybe_fail("upsert_suite_tests")
        ids = {}
        for file, name in entries:
            key = f"{file}::{name}"
            ids[key] = self.suite_tests.setdefault(key, str(uuid.uuid4()))
        return ids

    async def insert_tests(self, rows):
        self._maybe_fail("insert_tests")
        self.tests.extend(rows)

    async def insert_attempts(self, rows):
        self._maybe_fail("insert_attempts")
        self.attempts.extend(rows)


class FakeBlobStore(BlobStore):
    """Records uploads in memory; every upload raises while ``fail_all`` is set."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.fail_all = False
        self.closed = False

    def public_url(self, path: str) -> str:
        return f"https://blobs.test/{path}"

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        if self.fail_all:
            raise BlobUploadError(f"Failed to store {path}")
        self.objects[path] = data
        self.content_types[path] = content_type
        return self.public_url(path)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def run_store() -> FakeRunStore:
    return FakeRunStore()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def settings(tmp_path) -> IngestSettings:
    return IngestSettings(
        database_url="postgresql://test@localhost/test",
        blob_local_dir=str(tmp_path / "blobs"),
        blob_public_base_url="http://localhost:8000/blobs",
        app_url="https://reports.test",
        api_keys={"ci-secret-key": PROJECT_ID},
        upload_concurrency=4,
    )
