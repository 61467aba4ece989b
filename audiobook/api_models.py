"""
API request and response models for the PDF Audiobook API.

This module defines Pydantic models for API request validation and
response serialization, ensuring consistent data structures across
all endpoints.
"""

from typing import Dict, Optional, Literal
from pydantic import BaseModel, Field, ConfigDict

from audiobook.models import Job


class CreateAudiobookRequest(BaseModel):
    """
    Request body for submitting a document for narration.

    Attributes:
        document_ref: Local path (relative to the document root) or http(s) URL of the PDF
        job_id: Optional caller-chosen id; resubmitting a finished job restarts it
        title: Optional display title
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "document_ref": "uploads/moby_dick.pdf",
                "job_id": None,
                "title": "Moby Dick"
            }
        }
    )

    document_ref: str = Field(..., min_length=1, pattern=r"\S", description="Path or URL of the PDF document")
    job_id: Optional[str] = Field(None, min_length=1, max_length=128, description="Optional job identifier")
    title: Optional[str] = Field(None, max_length=300, description="Optional display title")


class CreateAudiobookResponse(BaseModel):
    """
    Response model for audiobook job creation.

    Attributes:
        job_id: Unique identifier for tracking the job
        status: Current job status (typically "pending" for new jobs)
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "status": "pending"
            }
        }
    )

    job_id: str = Field(..., description="Unique job identifier")
    status: str = Field(..., description="Current job status")


class AudiobookStatusResponse(BaseModel):
    """
    Response model for audiobook job status queries.

    Attributes:
        job_id: Unique identifier of the job
        status: Current job status (pending, processing, completed, failed)
        progress: Completion percentage, 0-100
        error: Failure reason (only present when failed)
        audio_ref: Reference of the final audio (only present when completed)
        duration_seconds: Playback duration (only present when completed)
        title: Display title
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "status": "processing",
                "progress": 65,
                "error": None,
                "audio_ref": None,
                "duration_seconds": None,
                "title": "moby dick"
            }
        }
    )

    job_id: str = Field(..., description="Unique job identifier")
    status: str = Field(..., description="Current job status")
    progress: int = Field(..., ge=0, le=100, description="Completion percentage")
    error: Optional[str] = Field(None, description="Error message (when failed)")
    audio_ref: Optional[str] = Field(None, description="Final audio reference (when completed)")
    duration_seconds: Optional[float] = Field(None, description="Audio duration (when completed)")
    title: Optional[str] = Field(None, description="Display title")

    @classmethod
    def from_job(cls, job: Job) -> "AudiobookStatusResponse":
        return cls(
            job_id=job.job_id,
            status=job.status.value,
            progress=job.progress,
            error=job.error_message,
            audio_ref=job.audio_ref,
            duration_seconds=job.duration_seconds,
            title=job.title
        )


class DurationReport(BaseModel):
    """
    Playback duration measured by a client player.

    Attributes:
        duration_seconds: Measured duration, must be positive
    """
    model_config = ConfigDict(
        json_schema_extra={"example": {"duration_seconds": 3721.4}}
    )

    duration_seconds: float = Field(..., gt=0, description="Measured playback duration in seconds")


class HealthResponse(BaseModel):
    """
    Response model for health check endpoint.

    Attributes:
        status: Overall service health status
        service_ready: Whether the job workers are running
        tts_backend: Configured TTS backend
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "service_ready": True,
                "tts_backend": "http"
            }
        }
    )

    status: str = Field(..., description="Service health status")
    service_ready: bool = Field(..., description="Whether jobs are being processed")
    tts_backend: str = Field(..., description="Configured TTS backend")


class CapacityResponse(BaseModel):
    """Response model for the capacity endpoint."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "active_jobs": 1,
                "queued_jobs": 3,
                "max_workers": 2,
                "max_queue_size": 100,
                "available_capacity": 97,
                "at_capacity": False,
                "jobs": {"pending": 3, "processing": 1, "completed": 12, "failed": 0}
            }
        }
    )

    active_jobs: int
    queued_jobs: int
    max_workers: int
    max_queue_size: int
    available_capacity: int
    at_capacity: bool
    jobs: Dict[str, int] = Field(default_factory=dict, description="Job count per status")


class ErrorResponse(BaseModel):
    """
    Standard error response model.

    All API errors return this consistent structure.

    Attributes:
        error: Error details object containing code, message, and optional details
    """

    class ErrorDetail(BaseModel):
        """Error detail structure."""
        code: str = Field(..., description="Error code")
        message: str = Field(..., description="Human-readable error message")
        details: Optional[object] = Field(None, description="Additional error context")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "JOB_NOT_FOUND",
                    "message": "Job with ID 550e8400-e29b-41d4-a716-446655440000 not found",
                    "details": None
                }
            }
        }
    )

    error: ErrorDetail = Field(..., description="Error information")


class ProgressMessage(BaseModel):
    """
    WebSocket message model for job progress streaming.

    Attributes:
        type: "progress" while the job runs, "final" on a terminal state,
              "error" if the stream cannot continue
        job_id: Job the message refers to
        status: Current job status
        progress: Completion percentage
        error: Failure reason, if any
        audio_ref: Final audio reference, once completed
        duration_seconds: Audio duration, once completed
        timestamp: Unix time the message was sent
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "type": "progress",
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "status": "processing",
                "progress": 52,
                "error": None,
                "audio_ref": None,
                "duration_seconds": None,
                "timestamp": 1234567890.123
            }
        }
    )

    type: Literal["progress", "final", "error"] = Field(..., description="Message type")
    job_id: str = Field(..., description="Job identifier")
    status: Optional[str] = Field(None, description="Job status")
    progress: Optional[int] = Field(None, description="Completion percentage")
    error: Optional[str] = Field(None, description="Error message")
    audio_ref: Optional[str] = Field(None, description="Final audio reference")
    duration_seconds: Optional[float] = Field(None, description="Audio duration")
    timestamp: Optional[float] = Field(None, description="Message timestamp")
