"""FastAPI application exposing the upload validation gate."""

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Mapping

import anyio
from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.app.settings import UploadSettings
from src.security.reporting import ResultReporter, problem_response
from src.security.signatures import ContentClass
from src.security.storage import StagingArea, UploadStorageError
from src.security.uploads import IngestPipeline, UploadRequest
from src.services.audit_service import SECURITY_HEADERS, AuditLogger

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_CONTENT_CLASS = "any"


def _ensure_correlation_id(request: Request) -> str:
    """Return existing correlation id or generate a new one."""
    correlation_id = getattr(request.state, "correlation_id", None)
    if not correlation_id:
        correlation_id = secrets.token_urlsafe(16)
        request.state.correlation_id = correlation_id
    return correlation_id


def _problem_response(
    request: Request,
    *,
    status_code: int,
    title: str,
    detail: str,
    code: str,
    headers: Mapping[str, str] | None = None,
    extras: dict[str, Any] | None = None,
):
    """Produce a RFC 7807 response with a stable correlation id."""
    payload = {"code": code}
    if extras:
        payload.update(extras)
    return problem_response(
        status=status_code,
        title=title,
        detail=detail,
        headers=headers,
        extras=payload,
        correlation_id=_ensure_correlation_id(request),
        instance=str(request.url.path),
    )


async def _sweep_orphans_forever(staging: StagingArea, settings: UploadSettings) -> None:
    """Purge staged files abandoned by requests that never finished."""
    while True:
        try:
            await staging.sweep_orphans(settings.staging_timeout_seconds)
        except UploadStorageError:
            logger.error("Orphan sweep left staged uploads behind; retrying next cycle")
        except OSError as exc:
            logger.error("Orphan sweep could not read the staging area: %s", exc)
        await anyio.sleep(settings.sweep_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    pipeline: IngestPipeline = app.state.pipeline
    settings: UploadSettings = app.state.settings
    pipeline.staging.prepare()
    logger.info("Uploads stored in: %s", pipeline.staging.root.resolve())
    async with anyio.create_task_group() as tg:
        tg.start_soon(_sweep_orphans_forever, pipeline.staging, settings)
        yield
        tg.cancel_scope.cancel()


def get_pipeline(request: Request) -> IngestPipeline:
    return request.app.state.pipeline


def get_reporter(request: Request) -> ResultReporter:
    return request.app.state.reporter


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger


def get_content_class(request: Request, class_name: str = DEFAULT_CONTENT_CLASS) -> ContentClass:
    settings: UploadSettings = request.app.state.settings
    content_class = settings.content_classes.get(class_name)
    if content_class is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown upload category")
    return content_class


def create_app(settings: UploadSettings | None = None) -> FastAPI:
    """Build the API around one immutable settings value."""
    settings = settings or UploadSettings.from_env()

    app = FastAPI(
        title="Upload Gate",
        description="Validates untrusted uploads before they are persisted",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.pipeline = IngestPipeline(StagingArea(settings.storage_path))
    app.state.reporter = ResultReporter()
    app.state.audit_logger = AuditLogger()

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        """Attach correlation id and security headers to every response."""
        correlation_id = _ensure_correlation_id(request)
        response = await call_next(request)
        response.headers.setdefault("X-Correlation-ID", correlation_id)
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Normalize HTTP exceptions to RFC 7807."""
        detail = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        title = "HTTP error"
        code = "http_error"
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            title = "Resource not found"
            code = "not_found"
        elif exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            title = "Method not allowed"
            code = "method_not_allowed"

        logger.warning("HTTPException (%s): %s", exc.status_code, detail)
        return _problem_response(
            request,
            status_code=exc.status_code,
            title=title,
            detail=detail,
            code=code,
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("Request validation failed for %s", request.url.path)
        return _problem_response(
            request,
            status_code=422,
            title="Invalid request",
            detail="Request must contain a single file field named 'file'",
            code="validation_error",
        )

    @app.exception_handler(UploadStorageError)
    async def storage_error_handler(request: Request, exc: UploadStorageError):
        logger.error("Upload storage failure (%s): %s", exc.code, exc.message)
        return _problem_response(
            request,
            status_code=exc.status,
            title="Upload failed",
            detail="Upload could not be processed",
            code="storage_failure",
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all other exceptions."""
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        # Served outside the middleware stack, so security headers are added here.
        return _problem_response(
            request,
            status_code=500,
            title="Internal server error",
            detail="Internal server error",
            code="internal_error",
            headers=SECURITY_HEADERS,
        )

    async def _ingest(
        request: Request,
        file: UploadFile,
        content_class: ContentClass,
        pipeline: IngestPipeline,
        reporter: ResultReporter,
        audit: AuditLogger,
    ):
        correlation_id = _ensure_correlation_id(request)
        upload = UploadRequest(
            filename=file.filename,
            content_type=file.content_type,
            source=file,
            size=file.size,
        )
        try:
            outcome = await pipeline.ingest(upload, content_class)
        finally:
            await file.close()

        audit.log_outcome(outcome, content_class=content_class.name, correlation_id=correlation_id)
        return reporter.to_response(
            outcome, instance=str(request.url.path), correlation_id=correlation_id
        )

    @app.post("/api/v1/uploads", status_code=status.HTTP_201_CREATED)
    async def upload_file(
        request: Request,
        file: UploadFile = File(...),
        pipeline: IngestPipeline = Depends(get_pipeline),
        reporter: ResultReporter = Depends(get_reporter),
        audit: AuditLogger = Depends(get_audit_logger),
    ):
        """Validate an upload against the default content class."""
        content_class = get_content_class(request, DEFAULT_CONTENT_CLASS)
        return await _ingest(request, file, content_class, pipeline, reporter, audit)

    @app.post("/api/v1/uploads/{class_name}", status_code=status.HTTP_201_CREATED)
    async def upload_file_to_class(
        request: Request,
        file: UploadFile = File(...),
        content_class: ContentClass = Depends(get_content_class),
        pipeline: IngestPipeline = Depends(get_pipeline),
        reporter: ResultReporter = Depends(get_reporter),
        audit: AuditLogger = Depends(get_audit_logger),
    ):
        """Validate an upload against a named content class (documents, images)."""
        return await _ingest(request, file, content_class, pipeline, reporter, audit)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
