"""
Data models for the PDF Audiobook API.

This module defines the core data structures used throughout the application,
including the audiobook job record, its status lifecycle and the checkpoint
metadata that lets a job survive its execution time budget.
"""

import copy
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional
from uuid import uuid4


CANCELLATION_MESSAGE = "Processing was cancelled by the user"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class JobStatus(Enum):
    """
    Enumeration of possible job processing states.

    Attributes:
        PENDING: Job has been created but processing has not started
        PROCESSING: Job is being extracted, synthesized or assembled
        COMPLETED: Job has finished successfully with an audio artifact
        FAILED: Job encountered an error or was cancelled
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Checkpoint:
    """
    Resumption metadata for a job that was suspended mid-synthesis.

    Attributes:
        total_chunks: Number of chunks the source text was split into
        next_chunk_index: First chunk that has not been synthesized yet
        partial_audio_ref: Blob reference of the audio synthesized so far
        saved_at: When the checkpoint was written
    """

    def __init__(
        self,
        total_chunks: int,
        next_chunk_index: int,
        partial_audio_ref: str,
        saved_at: Optional[datetime] = None
    ):
        self.total_chunks = total_chunks
        self.next_chunk_index = next_chunk_index
        self.partial_audio_ref = partial_audio_ref
        self.saved_at = saved_at or utcnow()

    def to_dict(self) -> dict:
        return {
            "total_chunks": self.total_chunks,
            "next_chunk_index": self.next_chunk_index,
            "partial_audio_ref": self.partial_audio_ref,
            "saved_at": self.saved_at.isoformat(),
        }

    def __eq__(self, other) -> bool:
        if not isinstance(other, Checkpoint):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return (
            f"Checkpoint(next_chunk_index={self.next_chunk_index}/{self.total_chunks}, "
            f"partial_audio_ref={self.partial_audio_ref!r})"
        )


class Job:
    """
    Represents one document-to-audio conversion.

    The job id stays the same across checkpoint resumptions and explicit
    retries; ``attempt`` counts how many times it was started from scratch.

    Attributes:
        job_id: Unique identifier for the job
        source_document_ref: Local path or URL of the source PDF
        title: Display title of the audiobook
        status: Current processing state (JobStatus enum)
        progress: Completion percentage, 0-100
        error_message: Failure reason (only when FAILED)
        audio_ref: Blob reference of the final audio (only when COMPLETED)
        duration_seconds: Playback duration (only when COMPLETED)
        checkpoint: Resumption metadata while suspended mid-synthesis
        attempt: Number of fresh processing attempts
        created_at: Timestamp when the job was created
        started_at: Timestamp when the current attempt started
        completed_at: Timestamp when the job reached a terminal state
        updated_at: Timestamp of the last write
    """

    def __init__(
        self,
        source_document_ref: str,
        job_id: Optional[str] = None,
        title: Optional[str] = None,
        status: JobStatus = JobStatus.PENDING,
        progress: int = 0,
        error_message: Optional[str] = None,
        audio_ref: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        checkpoint: Optional[Checkpoint] = None,
        attempt: int = 0,
        created_at: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None
    ):
        self.job_id = job_id or str(uuid4())
        self.source_document_ref = source_document_ref
        self.title = title or default_title(source_document_ref)
        self.status = status
        self.progress = progress
        self.error_message = error_message
        self.audio_ref = audio_ref
        self.duration_seconds = duration_seconds
        self.checkpoint = checkpoint
        self.attempt = attempt
        self.created_at = created_at or utcnow()
        self.started_at = started_at
        self.completed_at = completed_at
        self.updated_at = self.created_at

    @property
    def is_cancelled(self) -> bool:
        return self.status == JobStatus.FAILED and self.error_message == CANCELLATION_MESSAGE

    def snapshot(self) -> "Job":
        """Return an independent copy safe to hand to readers."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        """
        Convert the Job instance to a dictionary representation.

        Returns:
            Dictionary containing all job attributes with serializable values
        """
        return {
            "job_id": self.job_id,
            "source_document_ref": self.source_document_ref,
            "title": self.title,
            "status": self.status.value,
            "progress": self.progress,
            "error_message": self.error_message,
            "audio_ref": self.audio_ref,
            "duration_seconds": self.duration_seconds,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "attempt": self.attempt,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"Job(job_id={self.job_id!r}, status={self.status.value!r}, "
            f"progress={self.progress}, source_document_ref={self.source_document_ref!r})"
        )


def default_title(source_document_ref: str) -> str:
    """Derive a display title from the last path segment of a reference."""
    name = PurePosixPath(source_document_ref.split("?", 1)[0].rstrip("/")).stem
    return name.replace("_", " ").replace("-", " ").strip() or "Untitled"
