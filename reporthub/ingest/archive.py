"""In-memory access to uploaded report archives.

Uploads arrive as a single ZIP produced by zipping Playwright's report
directory. ``ReportArchive`` wraps ``zipfile`` with the lookups the
extractors need: listing entries without macOS resource forks, reading
text and JSON, finding the JSON report, and detecting the report format.

Format Detection:
    - HTML: ``index.html`` exists and contains the embedded-report marker
    - JSON: a ``data/*.json`` file, ``report.json`` or another top-level
      JSON file (other than ``environment.json``) exists
    - Anything else raises ``UnsupportedFormatError``
"""

import base64
import binascii
import io
import json
import re
import zipfile
from typing import Any, Optional

import structlog

from ..models.report_models import ReportFormat
from .errors import InvalidReportFormatError, UnsupportedFormatError

logger = structlog.get_logger()

HTML_REPORT_MARKER = "window.playwrightReportBase64 = \""
EMBEDDED_REPORT_PATTERN = re.compile(r'window\.playwrightReportBase64 = "([^"]+)"')
EMBEDDED_ZIP_PREFIX = "data:application/zip;base64,"
JSON_REPORT_PATTERN = re.compile(r"(^|/)data/[^/]+\.json$")
IGNORED_PREFIX = "__MACOSX/"


class ReportArchive:
    """Read-only view over a ZIP archive held in memory."""

    def __init__(self, data: bytes):
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, ValueError) as e:
            raise UnsupportedFormatError(
                "Uploaded file is not a valid ZIP archive", details=str(e)
            ) from e

    @classmethod
    def from_base64(cls, encoded: str) -> "ReportArchive":
        """Open a base64-encoded ZIP, tolerating a ``data:`` URL prefix."""
        if encoded.startswith(EMBEDDED_ZIP_PREFIX):
            encoded = encoded[len(EMBEDDED_ZIP_PREFIX):]
        try:
            raw = base64.b64decode(encoded, validate=False)
        except (binascii.Error, ValueError) as e:
            raise InvalidReportFormatError(
                "Embedded report is not valid base64", details=str(e)
            ) from e
        return cls(raw)

    def __enter__(self) -> "ReportArchive":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._zip.close()

    def list_files(self) -> list[str]:
        """All file entries, excluding directories and ``__MACOSX/`` resource forks."""
        return [
            info.filename
            for info in self._zip.infolist()
            if not info.is_dir() and not info.filename.startswith(IGNORED_PREFIX)
        ]

    def has_file(self, path: str) -> bool:
        try:
            self._zip.getinfo(path)
            return True
        except KeyError:
            return False

    def read_bytes(self, path: str) -> bytes:
        return self._zip.read(path)

    def read_text(self, path: str) -> str:
        return self._zip.read(path).decode("utf-8", errors="replace")

    def read_json(self, path: str) -> Any:
        return json.loads(self.read_text(path))

    def find_json_report(self) -> Optional[str]:
        files = self.list_files()
        for name in files:
            if JSON_REPORT_PATTERN.search(name):
                return name
        if "report.json" in files:
            return "report.json"
        for name in files:
            if "/" not in name and name.endswith(".json") and name != "environment.json":
                return name
        return None

    def embedded_report(self) -> Optional[str]:
        """Return the base64 payload embedded in ``index.html``, if any."""
        if not self.has_file("index.html"):
            return None
        match = EMBEDDED_REPORT_PATTERN.search(self.read_text("index.html"))
        return match.group(1) if match else None

    def detect_format(self) -> ReportFormat:
        if self.has_file("index.html") and HTML_REPORT_MARKER in self.read_text("index.html"):
            return "html"
        if self.find_json_report():
            return "json"
        logger.warning("No Playwright report found in archive", entries=len(self.list_files()))
        raise UnsupportedFormatError(
            "Unsupported report format",
            details="Expected index.html with an embedded report or a JSON report file",
        )
