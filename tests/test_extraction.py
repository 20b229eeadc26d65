"""Tests for archive handling, format detection and both report extractors."""

import base64

import pytest

from conftest import (
    build_html_report,
    build_json_report,
    make_html_test,
    make_json_spec,
    make_result,
    make_zip,
)
from reporthub.ingest.archive import ReportArchive
from reporthub.ingest.errors import InvalidReportFormatError, UnsupportedFormatError
from reporthub.ingest.extraction import extract_tests
from reporthub.ingest.html_report import (
    extract_tests_from_html_report,
    validate_test_fragment,
)
from reporthub.ingest.json_report import extract_tests_from_json_report


class TestReportArchive:
    """ZIP access and format detection."""

    def test_not_a_zip(self):
        """Non-ZIP bytes are an unsupported format."""
        with pytest.raises(UnsupportedFormatError):
            ReportArchive(b"definitely not a zip")

    def test_macos_resource_forks_ignored(self):
        """``__MACOSX/`` entries are not listed."""
        data = make_zip({"report.json": "{}", "__MACOSX/._report.json": "x"})
        with ReportArchive(data) as archive:
            assert archive.list_files() == ["report.json"]

    def test_detect_html(self):
        """index.html with the embedded report marker is an HTML report."""
        data = build_html_report({"a.json": {"tests": []}})
        with ReportArchive(data) as archive:
            assert archive.detect_format() == "html"

    @pytest.mark.parametrize("path", ["report.json", "data/results.json", "results.json"])
    def test_detect_json(self, path):
        """A JSON report in any of the known locations is detected."""
        data = build_json_report([make_json_spec("a")], path=path)
        with ReportArchive(data) as archive:
            assert archive.detect_format() == "json"
            assert archive.find_json_report() == path

    def test_environment_json_is_not_a_report(self):
        """environment.json alone does not make a JSON report."""
        data = make_zip({"environment.json": "{}", "readme.txt": "hi"})
        with ReportArchive(data) as archive:
            with pytest.raises(UnsupportedFormatError):
                archive.detect_format()

    def test_from_base64_strips_data_url(self):
        """The ``data:`` prefix of the embedded report is tolerated."""
        encoded = base64.b64encode(make_zip({"x.json": "{}"})).decode("ascii")
        with ReportArchive.from_base64("data:application/zip;base64," + encoded) as inner:
            assert inner.has_file("x.json")


class TestHtmlExtraction:
    """HTML report extraction."""

    def test_extracts_tests_and_metadata(self):
        """Tests, CI metadata, start time and environment data are extracted."""
        fragment = {
            "fileId": "abc",
            "fileName": "tests/login.spec.ts",
            "tests": [
                make_html_test(
                    "t1",
                    "logs in",
                    file="tests/login.spec.ts",
                    annotations=[{"type": "tag", "description": "@smoke"}],
                    results=[
                        make_result(
                            status="passed",
                            duration=120,
                            attachments=[
                                {"name": "shot", "contentType": "image/png", "path": "data/s1.png"}
                            ],
                        )
                    ],
                ),
                make_html_test(
                    "t2",
                    "retries",
                    file="tests/login.spec.ts",
                    outcome="flaky",
                    results=[
                        make_result(status="failed", duration=100, errors=[{"message": "boom"}]),
                        make_result(status="passed", duration=200, retry=1),
                    ],
                ),
            ],
        }
        data = build_html_report(
            {"abc.json": fragment},
            report_meta={
                "startTime": 1714557600000,
                "metadata": {"ci": {"commitHash": "deadbeef", "buildHref": "https://ci/run/1"}},
            },
            extra_files={"environment.json": '{"browser": "chromium"}'},
        )

        with ReportArchive(data) as archive:
            result = extract_tests_from_html_report(archive)

        assert result.format == "html"
        assert result.warnings == []
        assert result.ciMetadata["commitHash"] == "deadbeef"
        assert result.testExecutionTime == "2024-05-01T10:00:00.000Z"
        assert result.environmentData == {"browser": "chromium"}

        by_id = {t.id: t for t in result.tests}
        assert by_id["t1"].status == "passed"
        assert by_id["t1"].file == "tests/login.spec.ts"
        assert by_id["t1"].screenshots == ["data/s1.png"]
        assert by_id["t1"].metadata.tags == ["@smoke"]
        assert by_id["t1"].metadata.browser == "chromium"
        assert by_id["t2"].status == "flaky"
        assert by_id["t2"].duration == 300
        assert [a.retryIndex for a in by_id["t2"].attempts] == [0, 1]
        assert by_id["t2"].attempts[0].error == "boom"

    def test_partial_corruption_keeps_valid_fragments(self):
        """One malformed fragment among five is skipped with a warning."""
        fragments = {
            f"file{i}.json": {"tests": [make_html_test(f"t{i}", f"test {i}")]} for i in range(4)
        }
        fragments["broken.json"] = '{"tests": [ this is not json'
        data = build_html_report(fragments, report_meta={"startTime": 0})

        with ReportArchive(data) as archive:
            result = extract_tests(archive)

        assert sorted(t.id for t in result.tests) == ["t0", "t1", "t2", "t3"]
        assert len(result.warnings) == 1
        assert "broken.json" in result.warnings[0]

    def test_fragment_without_tests_is_skipped(self):
        """A fragment with no ``tests`` list is an error and contributes nothing."""
        data = build_html_report(
            {"good.json": {"tests": [make_html_test("t1", "ok")]}, "bad.json": {"foo": 1}}
        )
        with ReportArchive(data) as archive:
            result = extract_tests_from_html_report(archive)
        assert [t.id for t in result.tests] == ["t1"]
        assert len(result.warnings) == 1

    def test_partial_fragment_salvages_tests(self):
        """Validation failures with a tests array are coerced test by test."""
        raw = {
            "tests": [
                {"title": "missing id and outcome", "results": [make_result()]},
                make_html_test("t2", "valid"),
                "garbage",
            ]
        }
        validation = validate_test_fragment(raw)
        assert validation.kind == "partial"
        assert [t.testId for t in validation.tests] == ["unknown-0", "t2"]
        assert validation.errors

    def test_test_without_results(self):
        """A test with no results takes its status from the outcome."""
        data = build_html_report(
            {"a.json": {"tests": [make_html_test("t1", "skipped one", outcome="skipped", results=[])]}}
        )
        with ReportArchive(data) as archive:
            result = extract_tests_from_html_report(archive)
        assert result.tests[0].status == "skipped"
        assert result.tests[0].attempts == []

    def test_location_less_tests_use_fragment_file_name(self):
        """Tests without a location keep apart by their fragment's file name."""
        first = make_html_test("t1", "same title")
        second = make_html_test("t2", "same title")
        orphan = make_html_test("t3", "no file anywhere")
        for test in (first, second, orphan):
            del test["location"]
        data = build_html_report(
            {
                "a.json": {"fileId": "a", "fileName": "tests/auth.spec.ts", "tests": [first]},
                "b.json": {"fileId": "b", "fileName": "tests/cart.spec.ts", "tests": [second]},
                "c.json": {"fileId": "c", "tests": [orphan]},
            }
        )
        with ReportArchive(data) as archive:
            result = extract_tests_from_html_report(archive)

        files = {t.id: t.file for t in result.tests}
        assert files == {"t1": "tests/auth.spec.ts", "t2": "tests/cart.spec.ts", "t3": "unknown"}
        assert all(t.location is None for t in result.tests)

    def test_missing_embedded_report(self):
        """index.html with the marker but no payload is an invalid report."""
        data = make_zip({"index.html": 'window.playwrightReportBase64 = "";'})
        with ReportArchive(data) as archive:
            with pytest.raises(InvalidReportFormatError):
                extract_tests_from_html_report(archive)


class TestJsonExtraction:
    """JSON reporter extraction."""

    def test_native_spec_shape(self):
        """Specs with nested per-project tests are extracted."""
        data = build_json_report(
            [
                make_json_spec("passes", file="a.spec.ts"),
                make_json_spec(
                    "fails",
                    file="b.spec.ts",
                    status="unexpected",
                    results=[
                        make_result(status="failed", duration=100, errors=[{"message": "e1"}]),
                        make_result(status="failed", duration=200, retry=1, errors=["e2"]),
                        make_result(status="failed", duration=50, retry=2, errors=["e3"]),
                    ],
                ),
            ],
            ci={"commitHash": "cafe", "GITHUB_HEAD_REF": "feature/x"},
        )
        with ReportArchive(data) as archive:
            result = extract_tests_from_json_report(archive)

        assert result.format == "json"
        assert result.ciMetadata == {"commitHash": "cafe", "GITHUB_HEAD_REF": "feature/x"}
        assert result.testExecutionTime == "2024-05-01T10:00:00.000Z"

        by_name = {t.name: t for t in result.tests}
        assert by_name["passes"].status == "passed"
        assert by_name["passes"].file == "a.spec.ts"
        assert by_name["fails"].status == "failed"
        assert by_name["fails"].duration == 350
        assert by_name["fails"].error == "e3"
        assert len(by_name["fails"].attempts) == 3

    def test_flat_spec_shape(self):
        """Specs that carry results directly are extracted too."""
        spec = {
            "title": "flat",
            "testId": "flat-1",
            "file": "flat.spec.ts",
            "outcome": "expected",
            "results": [make_result(status="passed", duration=10)],
        }
        data = build_json_report([spec])
        with ReportArchive(data) as archive:
            result = extract_tests_from_json_report(archive)
        assert [(t.id, t.status) for t in result.tests] == [("flat-1", "passed")]

    def test_nested_suites(self):
        """Specs in nested suites are found at any depth."""
        report = (
            '{"config": {"rootDir": "/r"}, "suites": [{"title": "outer", "specs": [],'
            ' "suites": [{"title": "inner", "file": "deep.spec.ts", "specs": ['
            '{"title": "deep", "tests": [{"status": "expected", "results": ['
            '{"status": "passed", "duration": 5}]}]}]}]}]}'
        )
        with ReportArchive(make_zip({"report.json": report})) as archive:
            result = extract_tests_from_json_report(archive)
        assert [(t.name, t.file) for t in result.tests] == [("deep", "deep.spec.ts")]

    def test_schema_error_is_fatal(self):
        """A JSON report that fails validation aborts with field-level details."""
        data = make_zip({"report.json": '{"config": {}, "suites": "nope"}'})
        with ReportArchive(data) as archive:
            with pytest.raises(InvalidReportFormatError) as exc_info:
                extract_tests_from_json_report(archive)
        assert "config.rootDir" in exc_info.value.details
        assert "suites" in exc_info.value.details

    def test_unparsable_json(self):
        """Broken JSON is an invalid report, not a crash."""
        data = make_zip({"report.json": "{not json"})
        with ReportArchive(data) as archive:
            with pytest.raises(InvalidReportFormatError):
                extract_tests(archive)
