"""Tests for helpers shared by the report extractors."""

import pytest

from conftest import make_result, make_zip
from reporthub.ingest.archive import ReportArchive
from reporthub.ingest.report_utils import (
    build_attempt,
    build_step_tree,
    determine_test_status,
    epoch_ms_to_iso,
    extract_dat_metadata,
    extract_environment_data,
    fallback_last_status,
    merge_dat_metadata,
    tags_from_annotations,
)
from reporthub.models.playwright_schema import ReportAnnotation, ReportTestResult


class TestStatusDerivation:
    """Final status from outcome plus the last attempt."""

    @pytest.mark.parametrize(
        "outcome,last_status,expected",
        [
            ("expected", "passed", "passed"),
            ("expected", "failed", "failed"),
            ("expected", "timedOut", "timedOut"),
            ("flaky", "passed", "flaky"),
            ("flaky", "failed", "flaky"),
            ("unexpected", "failed", "failed"),
            ("unexpected", "timedOut", "failed"),
            ("expected", "skipped", "skipped"),
            ("unexpected", "skipped", "skipped"),
            ("flaky", "skipped", "skipped"),
            ("skipped", "skipped", "skipped"),
            ("skipped", "failed", "failed"),
            ("expected", "interrupted", "failed"),
        ],
    )
    def test_status_table(self, outcome, last_status, expected):
        """Each (outcome, last status) pair maps to one canonical status."""
        assert determine_test_status(outcome, last_status) == expected

    def test_fallback_without_attempts(self):
        """Tests with no results get a status implied by their outcome."""
        assert fallback_last_status("skipped") == "skipped"
        assert fallback_last_status("expected") == "passed"
        assert fallback_last_status("unexpected") == "failed"
        assert determine_test_status("expected", fallback_last_status("expected")) == "passed"


class TestAttempts:
    """Mapping of Playwright results onto attempts."""

    def test_errors_and_attachments(self):
        """Errors, screenshots and text attachments are carried over."""
        result = ReportTestResult.model_validate(
            make_result(
                status="failed",
                errors=[{"message": "expect(received).toBe(1)"}, "Second error"],
                attachments=[
                    {"name": "screenshot", "contentType": "image/png", "path": "data/a.png"},
                    {"name": "stdout", "contentType": "text/plain", "body": "hello"},
                    {"name": "trace", "contentType": "application/zip", "path": "data/t.zip"},
                ],
            )
        )
        attempt = build_attempt(result, 0)

        assert attempt.error == "expect(received).toBe(1)"
        assert attempt.errorStack == "expect(received).toBe(1)\n\nSecond error"
        assert attempt.screenshots == ["data/a.png"]
        assert [a.content for a in attempt.attachments] == ["hello"]

    def test_retry_index_falls_back_to_position(self):
        """A missing retry counter uses the attempt position."""
        result = ReportTestResult.model_validate(make_result(retry=0))
        assert build_attempt(result, 2).retryIndex == 2
        result = ReportTestResult.model_validate(make_result(retry=1))
        assert build_attempt(result, 1).retryIndex == 1

    def test_attachments_can_be_skipped(self):
        """The JSON extractor builds attempts without attachments."""
        result = ReportTestResult.model_validate(
            make_result(attachments=[{"name": "log", "contentType": "text/plain", "body": "x"}])
        )
        assert build_attempt(result, 0, include_attachments=False).attachments == []


class TestStepTree:
    """Lenient recursive step parsing."""

    def test_invalid_nodes_are_dropped(self):
        """Malformed nodes are skipped without losing valid siblings or children."""
        steps = build_step_tree(
            [
                {"title": "Before Hooks", "duration": 5},
                "not a step",
                {"duration": 3},
                {
                    "title": "test.step",
                    "duration": 10,
                    "steps": [
                        {"title": "expect.toBe", "duration": 1, "error": {"message": "nope"}},
                        {"title": 42},
                    ],
                },
            ]
        )
        assert [s.title for s in steps] == ["Before Hooks", "test.step"]
        assert [s.title for s in steps[1].steps] == ["expect.toBe"]
        assert steps[1].steps[0].error_message() == "nope"

    def test_none_is_empty(self):
        """A missing step list is an empty tree."""
        assert build_step_tree(None) == []


class TestMetadataHelpers:
    """Annotations, timestamps and sidecar files."""

    def test_tags_from_annotations(self):
        """Only ``tag`` annotations with a description become tags."""
        annotations = [
            ReportAnnotation(type="tag", description="@smoke"),
            ReportAnnotation(type="issue", description="JIRA-1"),
            ReportAnnotation(type="tag"),
        ]
        assert tags_from_annotations(annotations) == ["@smoke"]

    def test_epoch_ms_to_iso(self):
        """Epoch milliseconds become ISO strings; strings pass through."""
        assert epoch_ms_to_iso(0) == "1970-01-01T00:00:00.000Z"
        assert epoch_ms_to_iso("2024-05-01T10:00:00Z") == "2024-05-01T10:00:00Z"
        assert epoch_ms_to_iso(None) is None

    def test_environment_data(self):
        """environment.json is read when valid and ignored otherwise."""
        with ReportArchive(make_zip({"environment.json": '{"os": "linux"}'})) as archive:
            assert extract_environment_data(archive) == {"os": "linux"}
        with ReportArchive(make_zip({"environment.json": "{broken"})) as archive:
            assert extract_environment_data(archive) is None
        with ReportArchive(make_zip({"other.txt": "x"})) as archive:
            assert extract_environment_data(archive) is None

    def test_dat_metadata_merge(self):
        """Sidecar labels and parameters merge; the first description wins."""
        files = {
            "data/one.dat": (
                '{"type": "metadata", "data": {"labels": [{"name": "epic", "value": "Checkout"}],'
                ' "description": "First"}}'
            ),
            "data/two.dat": (
                '{"type": "metadata", "data": {"parameters": [{"name": "browser", "value": "x"}],'
                ' "description": "Second", "descriptionHtml": "<p>Second</p>"}}'
            ),
            "data/ignored.dat": '{"type": "other"}',
        }
        with ReportArchive(make_zip(files)) as archive:
            dat = extract_dat_metadata(archive)
        assert set(dat) == {"one", "two"}

        content_type = "application/vnd.allure.message+json"
        result = ReportTestResult.model_validate(
            make_result(
                attachments=[
                    {"name": "meta", "contentType": content_type, "path": "data/one.dat"},
                    {"name": "meta", "contentType": content_type, "path": "data/two.dat"},
                ]
            )
        )
        merged = merge_dat_metadata(result, dat)
        assert merged["epic"] == "Checkout"
        assert merged["description"] == "First"
        assert merged["descriptionHtml"] == "<p>Second</p>"
        assert merged["parameters"] == [{"name": "browser", "value": "x"}]
