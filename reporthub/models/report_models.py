"""Pydantic models for extracted tests, processed uploads and upload results.

This module defines the format-independent representation every extractor
produces, plus the request and response shapes of the ingestion pipeline.
Raw Playwright payload validation lives in ``playwright_schema``; by the time
data reaches these models it has already been trusted and normalized.

Model Categories:
    - Extraction Models: TestStep, AttemptAttachment, ExtractedTestAttempt,
      ExtractedTest, ExtractionResult
    - Normalization Models: RunStats, ProcessedUpload, ContentHashMetadata
    - Persistence Models: DatabaseIds, LastFailedStep, StepsOffloadResult
    - API Models: UploadParams, UploadResult, DuplicateCheckResult

Key Features:
    - Recursive step trees via a self-referencing model
    - camelCase field names matching the wire format Playwright emits, so
      extractors can hand values through without renaming
    - ``TestStatus`` restricted to the canonical statuses the dashboard shows

Used by:
    - reporthub.ingest.*: extraction, normalization, persistence
    - reporthub.service.main: request/response bodies
    - reporthub.notifications.webhooks: failure summaries
"""

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

TestStatus = Literal["passed", "failed", "flaky", "skipped", "timedOut"]
ReportFormat = Literal["html", "json"]


class StepError(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: Optional[str] = None
    stack: Optional[str] = None


class StepLocation(BaseModel):
    file: str
    line: int
    column: int


class TestStep(BaseModel):
    """A node in a test's step tree.

    Steps nest arbitrarily deep (``test.step`` blocks, fixtures, hooks, and
    the expect/locator calls inside them). Errors may be a structured object
    or a bare string depending on the Playwright version.
    """

    title: str
    category: Optional[str] = None
    startTime: Optional[str] = None
    duration: float = 0
    error: Optional[Union[StepError, str]] = None
    location: Optional[StepLocation] = None
    steps: list["TestStep"] = Field(default_factory=list)

    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        if isinstance(self.error, str):
            return self.error
        return self.error.message


TestStep.model_rebuild()


class AttemptAttachment(BaseModel):
    """Textual attachment captured during one attempt (console output, logs)."""

    name: str = "Attachment"
    contentType: str = "text/plain"
    content: str


class LastFailedStep(BaseModel):
    title: str
    duration: float = 0
    error: str


class ExtractedTestAttempt(BaseModel):
    """One execution attempt of a test.

    Attributes:
        attemptIndex: Position of the attempt in the result list
        retryIndex: Playwright retry counter (falls back to attemptIndex)
        stepsUrl: Set after the step tree was offloaded to object storage
        lastFailedStep: Deepest failing step, kept even when offload fails
    """

    attemptIndex: int = Field(..., ge=0)
    retryIndex: int = Field(..., ge=0)
    status: str
    duration: float = 0
    error: Optional[str] = None
    errorStack: Optional[str] = None
    screenshots: list[str] = Field(default_factory=list)
    attachments: list[AttemptAttachment] = Field(default_factory=list)
    startTime: Optional[str] = None
    steps: list[TestStep] = Field(default_factory=list)
    stepsUrl: Optional[str] = None
    lastFailedStep: Optional[LastFailedStep] = None


class TestMetadata(BaseModel):
    """Descriptive metadata merged from annotations and sidecar files."""

    browser: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    annotations: list[dict[str, Any]] = Field(default_factory=list)
    epic: Optional[str] = None
    labels: list[dict[str, Any]] = Field(default_factory=list)
    parameters: list[dict[str, Any]] = Field(default_factory=list)
    description: Optional[str] = None
    descriptionHtml: Optional[str] = None


class ExtractedTest(BaseModel):
    """Format-independent view of one test in an uploaded report.

    The identity used for de-duplication and history is ``(file, name)``;
    ``id`` is Playwright's own test id and is only stable within a report.
    ``duration`` is the sum of every attempt's duration.
    """

    id: str
    name: str
    status: TestStatus
    duration: float = Field(0, ge=0)
    file: str = "unknown"
    error: Optional[str] = None
    errorStack: Optional[str] = None
    screenshots: list[str] = Field(default_factory=list)
    attempts: list[ExtractedTestAttempt] = Field(default_factory=list)
    workerIndex: Optional[int] = None
    startedAt: Optional[str] = None
    location: Optional[StepLocation] = None
    metadata: TestMetadata = Field(default_factory=TestMetadata)


class ExtractionResult(BaseModel):
    tests: list[ExtractedTest] = Field(default_factory=list)
    format: ReportFormat
    ciMetadata: Optional[dict[str, Any]] = None
    testExecutionTime: Optional[str] = None
    environmentData: Optional[dict[str, Any]] = None
    warnings: list[str] = Field(default_factory=list)


class RunStats(BaseModel):
    """Aggregate counts for a run. ``total`` excludes skipped tests."""

    total: int = 0
    passed: int = 0
    failed: int = 0
    flaky: int = 0
    skipped: int = 0

    @property
    def pass_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.passed / self.total * 100, 1)


class ContentHashMetadata(BaseModel):
    environment: str
    trigger: str
    branch: str
    commit: str


class ProcessedUpload(BaseModel):
    """Normalized extraction output ready for duplicate checks and persistence."""

    tests: list[ExtractedTest]
    stats: RunStats
    contentHash: str
    branch: str
    environment: str
    timestamp: datetime
    commit: str = "unknown"
    totalDuration: float = 0
    wallClockDuration: Optional[float] = None
    durationFormatted: str = "0m 0s"
    ciMetadata: Optional[dict[str, Any]] = None
    environmentData: Optional[dict[str, Any]] = None
    format: ReportFormat = "html"


class DatabaseIds(BaseModel):
    projectId: str
    environmentId: str
    triggerId: str
    suiteId: str


class StepsOffloadResult(BaseModel):
    stepsUrl: Optional[str] = None
    inlineSteps: Optional[list[TestStep]] = None
    lastFailedStep: Optional[LastFailedStep] = None


class UploadParams(BaseModel):
    """Caller-supplied context for an upload.

    ``branch`` and ``commit`` default to ``"unknown"``; an unknown branch is
    resolved from CI metadata during normalization.
    """

    environment: str = Field(..., min_length=1, max_length=100)
    trigger: str = Field(..., min_length=1, max_length=100)
    suite: str = Field(..., min_length=1, max_length=200)
    branch: str = Field("unknown", max_length=500)
    commit: str = Field("unknown", max_length=200)
    projectId: Optional[str] = None
    contentHash: Optional[str] = Field(None, pattern=r"^[0-9a-f]{64}$")

    @field_validator("environment", "trigger", "suite")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Value cannot be empty")
        return v

    @field_validator("branch", "commit")
    @classmethod
    def default_unknown(cls, v: str) -> str:
        return v.strip() or "unknown"


class ExistingRun(BaseModel):
    id: str
    timestamp: datetime


class DuplicateCheckResult(BaseModel):
    isDuplicate: bool
    existingRun: Optional[ExistingRun] = None
    contentHash: Optional[str] = None


class TestRunRecord(BaseModel):
    """The stored run as echoed back to the uploader."""

    id: str
    timestamp: datetime
    environment: str
    trigger: str
    suite: str
    branch: str
    commit: str
    total: int
    passed: int
    failed: int
    flaky: int
    skipped: int
    duration: str
    wallClockDuration: Optional[float] = None
    contentHash: str
    tests: list[ExtractedTest] = Field(default_factory=list)


class UploadResult(BaseModel):
    """Outcome of ``process_upload``. Exactly one of the shapes below is used.

    - success: ``success`` True, ``testRunId``, ``testRun`` and ``message`` set
    - duplicate: ``success`` False, ``error`` "Duplicate upload detected",
      ``isDuplicate`` True, ``existingRunId`` set
    - failure: ``success`` False, ``error`` (and usually ``details``) set

    ``statusCode`` is the HTTP status the service responds with; it is not
    part of the serialized body.
    """

    success: bool
    statusCode: int = Field(200, exclude=True)
    message: Optional[str] = None
    testRunId: Optional[str] = None
    testRun: Optional[TestRunRecord] = None
    isDuplicate: bool = False
    existingRunId: Optional[str] = None
    error: Optional[str] = None
    details: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class RunFailureSummary(BaseModel):
    """Payload delivered to failure webhooks."""

    projectName: str
    environment: str
    branch: str
    commit: str
    totalTests: int
    failedTests: int
    flakyTests: int
    passRate: float
    runUrl: str
    timestamp: str
