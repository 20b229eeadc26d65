"""Pydantic models for raw Playwright report payloads.

These models validate what Playwright writes to disk before any of it is
trusted by the extractors. Two payload families are covered:

    - The JSON reporter output (``PlaywrightReport``): config, a recursive
      tree of suites, and specs carrying per-attempt results.
    - The per-file test fragments embedded in the HTML reporter's nested
      archive (``HTMLReportTestFile``).

Result and fragment models keep unknown keys (``extra="allow"``) because
Playwright adds fields between releases and the extractors read a few of
them opportunistically (``attachments``, ``errors``, ``steps``).

Validation Errors:
    ``format_validation_errors`` flattens a pydantic ``ValidationError`` into
    the ``path: message`` strings reported back to uploaders.
"""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

RawResultStatus = Literal["passed", "failed", "timedOut", "skipped", "flaky", "interrupted"]
TestOutcome = Literal["expected", "unexpected", "flaky", "skipped"]


class ReportAnnotation(BaseModel):
    type: str
    description: Optional[str] = None


class ReportLocation(BaseModel):
    file: str
    line: int
    column: int


class ReportError(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: Optional[str] = None
    stack: Optional[str] = None


class ReportAttachment(BaseModel):
    name: str
    contentType: str
    path: Optional[str] = None
    body: Optional[str] = None


class ReportStep(BaseModel):
    """One node of a Playwright step tree."""

    model_config = ConfigDict(extra="allow")

    title: str
    category: Optional[str] = None
    startTime: Optional[str] = None
    duration: float = 0
    error: Optional[Union[ReportError, str]] = None
    location: Optional[ReportLocation] = None
    steps: Optional[list["ReportStep"]] = None


class ReportTestResult(BaseModel):
    """A single execution attempt of a test."""

    model_config = ConfigDict(extra="allow")

    workerIndex: Optional[int] = None
    status: RawResultStatus
    duration: float
    error: Optional[Union[ReportError, str]] = None
    errors: Optional[list[Union[str, ReportError]]] = None
    attachments: list[ReportAttachment] = Field(default_factory=list)
    retry: int = 0
    startTime: Optional[str] = None
    # kept raw; the extractors build the step tree leniently
    steps: Optional[list[Any]] = None


class ReportSpecTest(BaseModel):
    """Per-project test entry nested under a JSON reporter spec."""

    model_config = ConfigDict(extra="allow")

    projectName: Optional[str] = None
    status: Optional[TestOutcome] = None
    annotations: list[ReportAnnotation] = Field(default_factory=list)
    results: list[ReportTestResult] = Field(default_factory=list)


class PlaywrightTest(BaseModel):
    """A test as it appears in HTML report fragments and flat JSON specs."""

    model_config = ConfigDict(extra="allow")

    testId: str
    title: str
    projectName: Optional[str] = None
    location: Optional[ReportLocation] = None
    outcome: TestOutcome
    duration: float = 0
    annotations: list[ReportAnnotation] = Field(default_factory=list)
    results: list[ReportTestResult] = Field(default_factory=list)


class ReportSpec(BaseModel):
    """A spec node of the JSON reporter.

    Accepts both the flattened shape (``testId``/``outcome``/``results`` on
    the spec itself) and the reporter's native shape, where results hang off
    one nested entry per project under ``tests``.
    """

    model_config = ConfigDict(extra="allow")

    title: str
    testId: Optional[str] = None
    id: Optional[str] = None
    file: Optional[str] = None
    projectName: Optional[str] = None
    location: Optional[ReportLocation] = None
    outcome: Optional[TestOutcome] = None
    duration: float = 0
    annotations: list[ReportAnnotation] = Field(default_factory=list)
    results: Optional[list[ReportTestResult]] = None
    tests: Optional[list[ReportSpecTest]] = None

    @model_validator(mode="after")
    def require_results(self) -> "ReportSpec":
        if self.results is None and self.tests is None:
            raise ValueError("spec must contain either results or tests")
        return self


class ReportSuite(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    specs: list[ReportSpec] = Field(default_factory=list)
    suites: list["ReportSuite"] = Field(default_factory=list)


class ReportConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    rootDir: str
    configFile: Optional[str] = None


class ReportStats(BaseModel):
    model_config = ConfigDict(extra="allow")

    startTime: Optional[str] = None
    duration: Optional[float] = None


class PlaywrightReport(BaseModel):
    """Top-level JSON reporter document."""

    model_config = ConfigDict(extra="allow")

    config: ReportConfig
    suites: list[ReportSuite]
    stats: Optional[ReportStats] = None


class HTMLReportTestFile(BaseModel):
    """One per-file JSON fragment inside the HTML report's embedded archive."""

    model_config = ConfigDict(extra="allow")

    fileId: Optional[str] = None
    fileName: Optional[str] = None
    tests: list[PlaywrightTest]


ReportStep.model_rebuild()
ReportSuite.model_rebuild()


def format_validation_errors(error: ValidationError) -> str:
    """Flatten validation errors into ``path: message`` entries joined by ``, ``."""
    parts = []
    for item in error.errors():
        path = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{path}: {item.get('msg', 'invalid')}")
    return ", ".join(parts)
