"""FastAPI service for Report Hub: Playwright report upload and ingestion.

Exposes the ingestion pipeline over HTTP for the dashboard (interactive
uploads) and for CI jobs (API-key authenticated uploads).

Endpoints:
    - POST /upload: multipart report upload from the dashboard
    - POST /ci-upload: multipart report upload from CI, scoped to the
      project of the API key; the archive is optimized first by default
    - POST /check-duplicate: duplicate check by content hash or file
    - GET /healthz: database connectivity and row counts
    - GET /: service identification

Response Codes:
    - 200: stored
    - 400: bad parameters, unknown environment/trigger/suite, bad report
    - 401: missing or invalid CI API key
    - 409: duplicate of an existing run
    - 413: archive larger than MAX_UPLOAD_BYTES
    - 429: rate limit exceeded
    - 500: storage failure or unexpected error

Application Lifecycle:
    The lifespan configures structlog, builds the service container,
    initializes the asyncpg pool and disposes every service on shutdown.
    With the local blob backend, stored objects are served under ``/blobs``.
"""

import asyncio
import zipfile
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .. import __version__
from ..auth import CIApiKey, require_ci_api_key
from ..config import IngestSettings
from ..container import container_lifespan, get_container, get_ingest_pipeline, get_run_store
from ..ingest.errors import IngestError
from ..ingest.optimize import optimize_report
from ..logging_config import configure_logging
from ..models.playwright_schema import format_validation_errors
from ..models.report_models import UploadParams, UploadResult

logger = structlog.get_logger()

SERVICE_NAME = "Report Hub Ingestion API"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and services for the lifetime of the app.

    Settings already registered in the container (tests) take precedence
    over the environment.
    """
    settings = get_container().try_get("settings") or IngestSettings.from_env()
    configure_logging(settings.log_level, settings.log_json)

    async with container_lifespan(settings) as container:
        app.state.container = container
        if settings.blob_backend == "local":
            app.mount(
                "/blobs",
                StaticFiles(directory=settings.blob_local_dir, check_dir=False),
                name="blobs",
            )
        logger.info(
            "Report Hub API started",
            blob_backend=settings.blob_backend,
            webhooks=len(settings.webhook_urls),
            ci_keys=len(settings.api_keys),
        )
        yield
        logger.info("Shutting down Report Hub API")


app = FastAPI(
    title=SERVICE_NAME,
    version=__version__,
    description="Ingests Playwright HTML and JSON reports into the test results store",
    lifespan=lifespan,
)

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=IngestSettings.from_env(load_env_file=False).cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


def _result_response(result: UploadResult) -> JSONResponse:
    body = result.model_dump(mode="json", exclude_none=True)
    if not result.isDuplicate:
        body.pop("isDuplicate", None)
    if not result.warnings:
        body.pop("warnings", None)
    return JSONResponse(status_code=result.statusCode, content=body)


def _error_response(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    content: dict[str, Any] = {"success": False, "error": error}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


async def _read_archive(file: UploadFile) -> bytes:
    """Read the uploaded archive, enforcing the configured size limit.

    Raises:
        HTTPException: 413 when the file is too large, 400 when it is empty
    """
    max_bytes = get_container().get("settings").max_upload_bytes
    if file.size is not None and file.size > max_bytes:
        raise HTTPException(status_code=413, detail=f"File exceeds {max_bytes} bytes")
    data = await file.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise HTTPException(status_code=413, detail=f"File exceeds {max_bytes} bytes")
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    return data


async def _build_params(
    data: bytes,
    filename: Optional[str],
    environment: Optional[str],
    trigger: Optional[str],
    suite: str,
    branch: str,
    commit: str,
    content_hash: Optional[str] = None,
) -> UploadParams:
    """Assemble upload parameters, detecting a missing environment or trigger.

    Raises:
        HTTPException: 400 when parameters are invalid or cannot be detected
    """
    if not environment or not trigger:
        detected = await get_ingest_pipeline().detect_upload_metadata(filename or "", data)
        environment = environment or detected.get("environment")
        trigger = trigger or detected.get("trigger")
        if not environment or not trigger:
            raise HTTPException(
                status_code=400,
                detail="Could not detect environment or trigger; please provide them",
            )
    try:
        return UploadParams(
            environment=environment,
            trigger=trigger,
            suite=suite,
            branch=branch,
            commit=commit,
            contentHash=content_hash,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=400, detail=f"Invalid upload parameters: {format_validation_errors(e)}"
        ) from e


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    response = _error_response(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.get("/")
async def root():
    """Service identification for load balancers and smoke checks."""
    return {"service": SERVICE_NAME, "version": __version__, "status": "running"}


@app.get("/healthz")
async def health():
    """Health check: database reachability and table row counts.

    Returns 503 when the database cannot be reached.
    """
    try:
        store = get_run_store()
        healthy = await store.health_check()
        if not healthy:
            raise HTTPException(status_code=503, detail="Service unhealthy")
        stats = await store.get_statistics()
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": {"connected": True, **stats},
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(status_code=503, detail="Service unhealthy") from e


@app.post("/upload")
@limiter.limit("30/minute")
async def upload(
    request: Request,
    file: UploadFile = File(...),
    suite: str = Form(...),
    environment: Optional[str] = Form(None),
    trigger: Optional[str] = Form(None),
    project_id: Optional[str] = Form(None),
    branch: str = Form("unknown"),
    commit: str = Form("unknown"),
    content_hash: Optional[str] = Form(None, alias="contentHash"),
):
    """Upload a Playwright report ZIP from the dashboard.

    Args:
        request: Request object (rate limiting)
        file: HTML report ZIP or ZIP containing a JSON report
        suite: Suite id the run belongs to
        environment: Environment name; detected from the file name if omitted
        trigger: Trigger name; detected from file name or CI metadata if omitted
        project_id: Project the suite must belong to
        branch: Branch name, resolved from CI metadata when "unknown"
        commit: Commit SHA, taken from CI metadata when "unknown"
        content_hash: Hash computed by the client, if any

    Returns:
        UploadResult body with the matching status code
    """
    try:
        data = await _read_archive(file)
        params = await _build_params(
            data, file.filename, environment, trigger, suite, branch, commit, content_hash
        )
        result = await get_ingest_pipeline().process_upload(
            data, params, project_id=project_id, filename=file.filename, upload_source="upload"
        )
        return _result_response(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Upload request failed", filename=file.filename, error=str(e))
        return _error_response(500, "Failed to process upload", str(e))


@app.post("/ci-upload")
@limiter.limit("60/minute")
async def ci_upload(
    request: Request,
    file: UploadFile = File(...),
    suite: str = Form(...),
    environment: Optional[str] = Form(None),
    trigger: Optional[str] = Form(None),
    branch: str = Form("unknown"),
    commit: str = Form("unknown"),
    optimize: str = Form("true"),
    api_key: CIApiKey = Depends(require_ci_api_key),
):
    """Upload a report from CI, authenticated with a project API key.

    The archive is stripped of traces, videos and network logs first unless
    ``optimize`` is ``"false"``.
    """
    try:
        data = await _read_archive(file)
        if optimize.lower() != "false":
            try:
                data, stats = await asyncio.to_thread(optimize_report, data)
                logger.info(
                    "CI report optimized",
                    files_removed=stats.files_removed,
                    saved_percent=round(stats.compression_ratio, 1),
                )
            except zipfile.BadZipFile:
                logger.warning("Skipping optimization of non-ZIP upload", filename=file.filename)

        params = await _build_params(
            data, file.filename, environment, trigger, suite, branch, commit
        )
        result = await get_ingest_pipeline().process_upload(
            data,
            params,
            project_id=api_key.project_id,
            filename=file.filename,
            upload_source="ci",
        )
        return _result_response(result)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("CI upload request failed", filename=file.filename, error=str(e))
        return _error_response(500, "Failed to process upload", str(e))


@app.post("/check-duplicate")
@limiter.limit("60/minute")
async def check_duplicate_endpoint(
    request: Request,
    suite: str = Form(...),
    environment: str = Form(...),
    trigger: str = Form(...),
    file: Optional[UploadFile] = File(None),
    project_id: Optional[str] = Form(None),
    branch: str = Form("unknown"),
    commit: str = Form("unknown"),
    content_hash: Optional[str] = Form(None, alias="contentHash"),
):
    """Report whether an upload would duplicate a stored run.

    Accepts either ``contentHash`` or the report ``file``.

    Returns:
        ``{success, hasDuplicates, duplicateCount, existingRun?}``
    """
    if file is None and not content_hash:
        raise HTTPException(status_code=400, detail="Either contentHash or file is required")
    try:
        data = await _read_archive(file) if file is not None and not content_hash else None
        params = await _build_params(
            data or b"", None, environment, trigger, suite, branch, commit, content_hash
        )
        result = await get_ingest_pipeline().check_duplicate_upload(params, data, project_id)
    except HTTPException:
        raise
    except IngestError as e:
        return _error_response(e.status_code, e.message, e.details)
    except Exception as e:
        logger.error("Duplicate check failed", error=str(e))
        return _error_response(500, "Failed to check for duplicates", str(e))

    body: dict[str, Any] = {
        "success": True,
        "hasDuplicates": result.isDuplicate,
        "duplicateCount": 1 if result.isDuplicate else 0,
    }
    if result.existingRun is not None:
        body["existingRun"] = result.existingRun.model_dump(mode="json")
    return body


def run() -> None:
    """Run the API with uvicorn using host and port from the environment."""
    import uvicorn

    settings = IngestSettings.from_env()
    configure_logging(settings.log_level, settings.log_json)
    uvicorn.run(
        "reporthub.service.main:app",
        host=settings.api_host,
        port=settings.api_port,
    )


if __name__ == "__main__":
    run()
