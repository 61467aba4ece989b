"""
FastAPI application for the PDF Audiobook API.

This module initializes the FastAPI application with CORS configuration,
exception handlers for consistent error responses, the audiobook job
endpoints and the WebSocket progress stream.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import AsyncGenerator, NoReturn, Optional
import time

from audiobook.api_models import (
    AudiobookStatusResponse,
    CapacityResponse,
    CreateAudiobookRequest,
    CreateAudiobookResponse,
    DurationReport,
    ErrorResponse,
    HealthResponse,
    ProgressMessage,
)
from audiobook.audiobook_service import AudiobookService
from audiobook.config import settings
from audiobook.logging_config import setup_logging, get_logger, log_with_context
from audiobook.models import Job
from audiobook.work_queue import QueueFullError

# Configure structured logging
setup_logging(
    log_level=settings.log_level.value,
    use_json=True
)
logger = get_logger(__name__)

# Global audiobook service instance
audiobook_service: Optional[AudiobookService] = None


# Lifespan context manager for startup and shutdown events
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Manage application lifespan events.

    Creates the audiobook service and starts its workers on startup, and
    stops them on shutdown.
    """
    global audiobook_service

    # Startup
    logger.info("PDF Audiobook API starting up...")
    logger.info(settings.display())

    try:
        audiobook_service = AudiobookService(settings=settings)
        await audiobook_service.start()
        logger.info("Audiobook service started")
    except Exception as e:
        logger.error(f"Failed to start audiobook service: {e}")
        audiobook_service = None

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("PDF Audiobook API shutting down...")

    if audiobook_service:
        try:
            await audiobook_service.shutdown()
            logger.info("Audiobook service shutdown complete")
        except Exception as e:
            logger.error(f"Error during audiobook service shutdown: {e}")

    logger.info("Application shutdown complete")


# Initialize FastAPI application with lifespan
app = FastAPI(
    title="PDF Audiobook API",
    description="""
    A REST API service that turns PDF documents into narrated MP3 audiobooks.

    ## Features

    * **Chunked Synthesis**: Text is split into engine-sized chunks and narrated with bounded concurrency
    * **Live Progress**: Poll job status or subscribe to the WebSocket progress stream
    * **Resumable Jobs**: Long documents are checkpointed and continued automatically
    * **Cancellation and Retry**: Stop a running job or regenerate a finished one

    ## API Workflow

    1. Submit a document to `POST /api/v1/audiobooks`
    2. Receive job_id in response
    3. Poll `GET /api/v1/audiobooks/{job_id}` or connect to
       `/api/v1/audiobooks/{job_id}/progress`
    4. Fetch the audio reference when status is "completed"

    ## Rate Limits and Capacity

    Jobs are processed by a fixed number of workers. When the queue is full,
    the API returns 503 errors. Check `/api/v1/capacity` for current load.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    license_info={
        "name": "MIT License",
        "url": "https://opensource.org/licenses/MIT",
    },
)

# Configure CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for local development
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request/Response logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware to log all HTTP requests and responses.

    Logs request details (method, URL, client) and response details
    (status code, processing time) for debugging and monitoring.
    """
    log_with_context(
        logger,
        "info",
        "Incoming request",
        method=request.method,
        url=str(request.url),
        client=request.client.host if request.client else "unknown",
        path=request.url.path
    )

    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    log_with_context(
        logger,
        "info",
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2)
    )

    return response


def error_body(code: str, message: str, details=None) -> dict:
    """Build the error envelope shared by every error response."""
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details
        }
    }


# Custom exception handlers for consistent error responses

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException
) -> JSONResponse:
    """
    Render HTTPExceptions with the error envelope.

    Routes raise HTTPException with an envelope as ``detail``; anything else
    (e.g. 404 for unknown routes) is wrapped into one.
    """
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = exc.detail
    else:
        content = error_body("HTTP_ERROR", str(exc.detail))

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """
    Handle request validation errors with consistent error format.

    Returns 400 Bad Request with error details.
    """
    log_with_context(
        logger,
        "warning",
        "Validation error",
        url=str(request.url),
        method=request.method,
        errors=str(exc.errors())
    )

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("VALIDATION_ERROR", "Invalid request data", jsonable_errors(exc))
    )


@app.exception_handler(ValidationError)
async def pydantic_validation_exception_handler(
    request: Request,
    exc: ValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors with consistent error format.

    Returns 400 Bad Request with error details.
    """
    log_with_context(
        logger,
        "warning",
        "Pydantic validation error",
        url=str(request.url),
        method=request.method,
        errors=str(exc.errors())
    )

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("VALIDATION_ERROR", "Invalid data format", jsonable_errors(exc))
    )


@app.exception_handler(ValueError)
async def value_error_exception_handler(
    request: Request,
    exc: ValueError
) -> JSONResponse:
    """
    Handle ValueError exceptions with consistent error format.

    On the job routes a ValueError means the request conflicts with the
    job's current state (e.g. cancelling a completed job), so this returns
    409 Conflict.
    """
    log_with_context(
        logger,
        "warning",
        "Request conflicts with job state",
        url=str(request.url),
        method=request.method,
        error=exc
    )

    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=error_body("INVALID_STATE", str(exc))
    )


@app.exception_handler(Exception)
async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """
    Handle all other exceptions with consistent error format.

    Returns 500 Internal Server Error for unexpected errors.
    """
    log_with_context(
        logger,
        "error",
        "Unexpected error",
        url=str(request.url),
        method=request.method,
        error=exc
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("INTERNAL_ERROR", "An unexpected error occurred", str(exc))
    )


def jsonable_errors(exc) -> list:
    """Validation errors with their non-serializable context stripped."""
    return [
        {key: value for key, value in err.items() if key in ("type", "loc", "msg")}
        for err in exc.errors()
    ]


def require_service() -> AudiobookService:
    """Return the running service or raise 503."""
    if not audiobook_service or not audiobook_service.is_ready():
        logger.error("Audiobook service not available")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_body("SERVICE_UNAVAILABLE", "Audiobook service is not available")
        )
    return audiobook_service


def job_not_found(job_id: str) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=error_body("JOB_NOT_FOUND", f"Job with ID {job_id} not found")
    )


def at_capacity(exc: QueueFullError) -> NoReturn:
    log_with_context(logger, "warning", "Service at capacity", error=exc)
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=error_body("AT_CAPACITY", str(exc))
    )


_NOT_FOUND_RESPONSE = {
    "model": ErrorResponse,
    "description": "Job not found",
    "content": {
        "application/json": {
            "example": error_body(
                "JOB_NOT_FOUND",
                "Job with ID 550e8400-e29b-41d4-a716-446655440000 not found"
            )
        }
    }
}

_CONFLICT_RESPONSE = {
    "model": ErrorResponse,
    "description": "The job's current state does not allow this operation",
    "content": {
        "application/json": {
            "example": error_body(
                "INVALID_STATE",
                "Cannot cancel job 550e8400-e29b-41d4-a716-446655440000 in status completed"
            )
        }
    }
}


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Check service health status"
)
async def health_check() -> HealthResponse:
    """
    Health check endpoint to verify service status.

    **Response Fields:**
    - `status`: Overall service health ("healthy")
    - `service_ready`: Whether job workers are running
    - `tts_backend`: Configured text-to-speech backend

    Example:
        ```bash
        curl http://localhost:8000/api/v1/health
        ```
    """
    service_ready = bool(audiobook_service and audiobook_service.is_ready())

    return HealthResponse(
        status="healthy",
        service_ready=service_ready,
        tts_backend=settings.tts_backend.value
    )


@app.get(
    "/api/v1/capacity",
    response_model=CapacityResponse,
    tags=["Health"],
    summary="Get service capacity and load information",
    responses={
        503: {
            "description": "Service not available",
            "content": {
                "application/json": {
                    "example": error_body("SERVICE_UNAVAILABLE", "Audiobook service is not available")
                }
            }
        }
    }
)
async def get_capacity() -> CapacityResponse:
    """
    Get current service capacity and load information.

    **Response Fields:**
    - `active_jobs`: Number of jobs currently being processed
    - `queued_jobs`: Number of messages waiting, including scheduled continuations
    - `max_workers`: Maximum number of jobs processed at once
    - `max_queue_size`: Maximum number of waiting messages
    - `available_capacity`: Number of additional jobs that can be queued
    - `at_capacity`: When true, new submissions are rejected with 503
    - `jobs`: Number of known jobs per status
    """
    service = require_service()

    capacity_info = service.get_capacity_info()
    capacity_info["at_capacity"] = service.is_at_capacity()

    return CapacityResponse(**capacity_info)


# Audiobook job endpoints

@app.post(
    "/api/v1/audiobooks",
    response_model=CreateAudiobookResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Audiobooks"],
    summary="Submit a PDF document for narration",
    responses={
        400: {
            "description": "Invalid request body",
            "content": {
                "application/json": {
                    "example": error_body("VALIDATION_ERROR", "Invalid request data", [])
                }
            }
        },
        503: {
            "description": "Service unavailable or at capacity",
            "content": {
                "application/json": {
                    "example": error_body("AT_CAPACITY", "Server is at capacity. Please retry later.")
                }
            }
        }
    }
)
async def create_audiobook(request: CreateAudiobookRequest) -> CreateAudiobookResponse:
    """
    Submit a document for conversion to audio.

    The job is processed asynchronously. Use the returned job_id to poll
    `GET /api/v1/audiobooks/{job_id}` or to open the progress stream.

    Passing the job_id of a failed or completed job restarts it from
    scratch; passing one that is still pending or processing returns it
    unchanged.

    Example (curl):
        ```bash
        curl -X POST http://localhost:8000/api/v1/audiobooks \\
             -H "Content-Type: application/json" \\
             -d '{"document_ref": "uploads/moby_dick.pdf"}'
        ```

        Response:
        ```json
        {
            "job_id": "550e8400-e29b-41d4-a716-446655440000",
            "status": "pending"
        }
        ```
    """
    service = require_service()

    try:
        job_id = service.submit(
            request.document_ref,
            job_id=request.job_id,
            title=request.title
        )
    except QueueFullError as e:
        at_capacity(e)

    job = service.get_status(job_id)
    log_with_context(
        logger,
        "info",
        "Audiobook job submitted",
        job_id=job_id,
        document_ref=request.document_ref
    )

    return CreateAudiobookResponse(job_id=job_id, status=job.status.value)


@app.get(
    "/api/v1/audiobooks/{job_id}",
    response_model=AudiobookStatusResponse,
    tags=["Audiobooks"],
    summary="Get audiobook job status and progress",
    responses={404: _NOT_FOUND_RESPONSE}
)
async def get_audiobook_status(job_id: str) -> AudiobookStatusResponse:
    """
    Get the status, progress and result of an audiobook job.

    **Job Status Values:**
    - `pending`: Job is queued and waiting to be processed
    - `processing`: Text is being extracted, narrated or assembled
    - `completed`: Audio is ready (`audio_ref` and `duration_seconds` are set)
    - `failed`: Job failed or was cancelled (`error` holds the reason)

    Progress never decreases while a job is processing. Stop polling when
    status is "completed" or "failed".
    """
    service = require_service()

    job = service.get_status(job_id)
    if not job:
        job_not_found(job_id)

    return AudiobookStatusResponse.from_job(job)


@app.post(
    "/api/v1/audiobooks/{job_id}/cancel",
    response_model=AudiobookStatusResponse,
    tags=["Audiobooks"],
    summary="Cancel a pending or processing job",
    responses={404: _NOT_FOUND_RESPONSE, 409: _CONFLICT_RESPONSE}
)
async def cancel_audiobook(job_id: str) -> AudiobookStatusResponse:
    """
    Cancel an audiobook job.

    Only pending or processing jobs can be cancelled. The job becomes
    "failed" with the error "Processing was cancelled by the user" and its
    progress is reset to 0. Narration requests already in flight finish in
    the background and their audio is discarded.
    """
    service = require_service()

    try:
        job = await service.cancel(job_id)
    except KeyError:
        job_not_found(job_id)

    return AudiobookStatusResponse.from_job(job)


@app.post(
    "/api/v1/audiobooks/{job_id}/retry",
    response_model=CreateAudiobookResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Audiobooks"],
    summary="Retry a failed job or regenerate a completed one",
    responses={404: _NOT_FOUND_RESPONSE, 409: _CONFLICT_RESPONSE}
)
async def retry_audiobook(job_id: str) -> CreateAudiobookResponse:
    """
    Restart a failed or completed job from scratch.

    The previous error, audio reference and duration are cleared and the
    job is queued again with progress 0.
    """
    service = require_service()

    try:
        service.retry(job_id)
    except KeyError:
        job_not_found(job_id)
    except QueueFullError as e:
        at_capacity(e)

    job = service.get_status(job_id)
    return CreateAudiobookResponse(job_id=job_id, status=job.status.value)


@app.post(
    "/api/v1/audiobooks/{job_id}/duration",
    response_model=AudiobookStatusResponse,
    tags=["Audiobooks"],
    summary="Report the playback duration measured by a player",
    responses={404: _NOT_FOUND_RESPONSE, 409: _CONFLICT_RESPONSE}
)
async def report_audiobook_duration(job_id: str, report: DurationReport) -> AudiobookStatusResponse:
    """
    Reconcile the stored duration of a completed audiobook.

    Players know the real playback length once the file is loaded. The
    stored value is replaced when it differs from the reported one by more
    than the configured tolerance.
    """
    service = require_service()

    try:
        job = service.report_duration(job_id, report.duration_seconds)
    except KeyError:
        job_not_found(job_id)

    return AudiobookStatusResponse.from_job(job)


def progress_message(job: Job) -> ProgressMessage:
    return ProgressMessage(
        type="final" if job.status.is_terminal else "progress",
        job_id=job.job_id,
        status=job.status.value,
        progress=job.progress,
        error=job.error_message,
        audio_ref=job.audio_ref,
        duration_seconds=job.duration_seconds,
        timestamp=time.time()
    )


def is_outdated(event: Job, sent: Job) -> bool:
    """Whether an event is older than, or the same write as, the last job state sent."""
    if event.updated_at < sent.updated_at:
        return True
    return (
        event.updated_at == sent.updated_at
        and event.status == sent.status
        and event.progress <= sent.progress
    )


@app.websocket("/api/v1/audiobooks/{job_id}/progress")
async def websocket_progress(websocket: WebSocket, job_id: str):
    """
    WebSocket endpoint streaming the progress of one job.

    **Message Format (Server to Client):**
    ```json
    {
        "type": "progress" | "final" | "error",
        "job_id": "...",
        "status": "processing",
        "progress": 52,
        "error": null,
        "audio_ref": null,
        "duration_seconds": null,
        "timestamp": 1234567890.123
    }
    ```

    The current state is sent immediately after connecting, then one
    message per change. The server sends a "final" message and closes the
    connection once the job is completed or failed.
    """
    await websocket.accept()
    logger.info("WebSocket connection established")

    if not audiobook_service:
        error_msg = ProgressMessage(
            type="error",
            job_id=job_id,
            error="Audiobook service is not available",
            timestamp=time.time()
        )
        await websocket.send_text(error_msg.model_dump_json())
        await websocket.close(code=1011, reason="Service unavailable")
        logger.error("WebSocket connection rejected: service not available")
        return

    job_manager = audiobook_service.job_manager
    events = job_manager.subscribe(job_id)

    try:
        job = job_manager.get_job(job_id)
        if job is None:
            error_msg = ProgressMessage(
                type="error",
                job_id=job_id,
                error=f"Job with ID {job_id} not found",
                timestamp=time.time()
            )
            await websocket.send_text(error_msg.model_dump_json())
            return

        while True:
            await websocket.send_text(progress_message(job).model_dump_json())
            if job.status.is_terminal:
                log_with_context(logger, "info", "Progress stream finished", job_id=job_id)
                break
            sent = job
            job = await events.get()
            # Events queued before the initial snapshot was read
            while is_outdated(job, sent):
                job = await events.get()

    except WebSocketDisconnect:
        log_with_context(logger, "info", "WebSocket client disconnected", job_id=job_id)
    except Exception as e:
        log_with_context(logger, "error", "Unexpected WebSocket error", job_id=job_id, error=e)
    finally:
        job_manager.unsubscribe(job_id, events)
        try:
            await websocket.close()
            logger.info("WebSocket connection closed")
        except Exception as e:
            logger.warning(f"Error closing WebSocket: {e}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
