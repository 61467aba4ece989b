"""
Job record and progress store for audiobook processing.

This module provides the JobManager class, the single source of truth for
job status and progress. It enforces the job state machine and progress
monotonicity, and pushes every change to subscribers so that both polling
and streaming status endpoints observe the same signal.
"""

import asyncio
from datetime import timedelta
from threading import Lock
from typing import Dict, List, Optional, Tuple

from audiobook.models import CANCELLATION_MESSAGE, Checkpoint, Job, JobStatus, utcnow
from audiobook.logging_config import get_logger, log_with_context


class InvalidTransitionError(ValueError):
    """Exception raised when a job is asked to make a transition its state forbids."""
    pass


class JobManager:
    """
    Manages the lifecycle and progress of audiobook jobs.

    This class provides thread-safe operations for creating, transitioning,
    retrieving and cleaning up jobs. Jobs are stored in memory keyed by
    job_id and are only ever handed out as snapshots, so readers polling
    the store never observe a half-applied write.

    The store, not its callers, enforces the invariants:
    - progress never decreases while a job is processing, except for the
      reset to 0 when a fresh attempt starts or the job is cancelled
    - audio_ref and duration_seconds are set only on completed jobs
    - the checkpoint is cleared on any terminal transition

    Attributes:
        _jobs: Dictionary mapping job_id to Job instances
        _lock: Thread lock guarding _jobs and _subscribers
        _subscribers: Event queues registered per job_id
    """

    def __init__(self):
        """Initialize the JobManager with an empty job store."""
        self._jobs: Dict[str, Job] = {}
        self._lock = Lock()
        self._subscribers: Dict[str, List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = {}
        self.logger = get_logger(__name__)

    def create_job(
        self,
        source_document_ref: str,
        job_id: Optional[str] = None,
        title: Optional[str] = None
    ) -> str:
        """
        Create a new pending job.

        Args:
            source_document_ref: Local path or URL of the PDF to narrate
            job_id: Optional caller-chosen identifier (generated if omitted)
            title: Optional display title

        Returns:
            The job_id of the new job

        Raises:
            InvalidTransitionError: If a job with this id already exists

        Example:
            >>> manager = JobManager()
            >>> job_id = manager.create_job("uploads/report.pdf")
        """
        job = Job(source_document_ref=source_document_ref, job_id=job_id, title=title)

        with self._lock:
            if job.job_id in self._jobs:
                raise InvalidTransitionError(f"Job {job.job_id} already exists")
            self._jobs[job.job_id] = job
            snapshot = job.snapshot()

        log_with_context(
            self.logger,
            "info",
            "Job created",
            job_id=job.job_id,
            document_ref=source_document_ref
        )
        self._publish(snapshot)
        return job.job_id

    def get_job(self, job_id: str) -> Optional[Job]:
        """
        Retrieve a snapshot of a job.

        Args:
            job_id: The unique identifier of the job

        Returns:
            A copy of the Job if found, None otherwise
        """
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def start_processing(self, job_id: str, fresh: bool = True) -> Job:
        """
        Move a job into PROCESSING.

        A fresh attempt is only allowed from PENDING; it resets progress to 0
        and counts a new attempt. A resumption (``fresh=False``) continues a
        job that is already PROCESSING with a checkpoint and keeps its progress.

        Args:
            job_id: The unique identifier of the job
            fresh: Whether this is a new attempt rather than a resumption

        Returns:
            Snapshot of the job after the transition

        Raises:
            KeyError: If the job does not exist
            InvalidTransitionError: If the job's state does not allow it
        """
        with self._lock:
            job = self._require(job_id)
            if fresh:
                if job.status != JobStatus.PENDING:
                    raise InvalidTransitionError(
                        f"Job {job_id} cannot start from status {job.status.value}"
                    )
                job.progress = 0
                job.attempt += 1
                job.started_at = utcnow()
                job.checkpoint = None
            elif job.status != JobStatus.PROCESSING or job.checkpoint is None:
                raise InvalidTransitionError(
                    f"Job {job_id} has no checkpoint to resume from (status {job.status.value})"
                )
            job.status = JobStatus.PROCESSING
            job.error_message = None
            job.updated_at = utcnow()
            snapshot = job.snapshot()

        log_with_context(
            self.logger,
            "info",
            "Job processing started" if fresh else "Job processing resumed",
            job_id=job_id,
            attempt=snapshot.attempt,
            progress=snapshot.progress
        )
        self._publish(snapshot)
        return snapshot

    def update_progress(self, job_id: str, progress: int) -> int:
        """
        Record progress for a processing job.

        Values are clamped to 0-100. Decreases are rejected, as are writes to
        jobs that are not PROCESSING (for example after a cancellation).

        Args:
            job_id: The unique identifier of the job
            progress: The new progress percentage

        Returns:
            The progress value stored after the call

        Raises:
            KeyError: If the job does not exist
        """
        progress = max(0, min(100, int(progress)))

        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.PROCESSING:
                self.logger.debug(
                    f"Ignoring progress {progress} for job {job_id} in status {job.status.value}"
                )
                return job.progress
            if progress <= job.progress:
                if progress < job.progress:
                    self.logger.debug(
                        f"Ignoring lower progress for job {job_id}: "
                        f"current={job.progress}, new={progress}"
                    )
                return job.progress
            job.progress = progress
            job.updated_at = utcnow()
            snapshot = job.snapshot()

        self._publish(snapshot)
        return progress

    def save_checkpoint(self, job_id: str, checkpoint: Checkpoint) -> None:
        """
        Attach resumption metadata to a processing job.

        The caller must have durably stored the partial audio referenced by
        the checkpoint before calling this.

        Raises:
            KeyError: If the job does not exist
            InvalidTransitionError: If the job is not PROCESSING
        """
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.PROCESSING:
                raise InvalidTransitionError(
                    f"Cannot checkpoint job {job_id} in status {job.status.value}"
                )
            job.checkpoint = checkpoint
            job.updated_at = utcnow()
            snapshot = job.snapshot()

        log_with_context(
            self.logger,
            "info",
            "Checkpoint saved",
            job_id=job_id,
            next_chunk_index=checkpoint.next_chunk_index,
            total_chunks=checkpoint.total_chunks,
            partial_audio_ref=checkpoint.partial_audio_ref
        )
        self._publish(snapshot)

    def complete_job(
        self,
        job_id: str,
        audio_ref: str,
        duration_seconds: Optional[float]
    ) -> bool:
        """
        Mark a processing job as completed.

        Returns:
            True if the job was completed, False if it had already left
            PROCESSING (e.g. it was cancelled while assembling)

        Raises:
            KeyError: If the job does not exist
        """
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.PROCESSING:
                self.logger.warning(
                    f"Not completing job {job_id}: status is {job.status.value}"
                )
                return False
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.audio_ref = audio_ref
            job.duration_seconds = duration_seconds
            job.error_message = None
            job.checkpoint = None
            job.completed_at = utcnow()
            job.updated_at = job.completed_at
            snapshot = job.snapshot()

        log_with_context(
            self.logger,
            "info",
            "Job completed",
            job_id=job_id,
            audio_ref=audio_ref,
            duration_seconds=duration_seconds
        )
        self._publish(snapshot)
        return True

    def fail_job(self, job_id: str, error_message: str) -> bool:
        """
        Mark a processing job as failed.

        Pending jobs are never failed here; they are either picked up or
        cancelled. A job that was reset for retry while an old attempt was
        still unwinding is therefore safe from that attempt.

        Returns:
            True if the job was marked failed, False if it was not PROCESSING

        Raises:
            KeyError: If the job does not exist
        """
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.PROCESSING:
                self.logger.warning(
                    f"Not failing job {job_id}: status is {job.status.value}"
                )
                return False
            self._clear_results(job)
            job.status = JobStatus.FAILED
            job.error_message = error_message
            job.completed_at = utcnow()
            job.updated_at = job.completed_at
            snapshot = job.snapshot()

        log_with_context(
            self.logger,
            "error",
            "Job failed",
            job_id=job_id,
            reason=error_message
        )
        self._publish(snapshot)
        return True

    def cancel_job(self, job_id: str) -> Optional[Checkpoint]:
        """
        Cancel a pending or processing job.

        The job becomes FAILED with the cancellation message, its progress is
        reset to 0 and any audio reference, duration and checkpoint are cleared.

        Returns:
            The checkpoint that was discarded, if any, so the caller can
            delete its partial artifact

        Raises:
            KeyError: If the job does not exist
            InvalidTransitionError: If the job is already completed or failed
        """
        with self._lock:
            job = self._require(job_id)
            if job.status.is_terminal:
                raise InvalidTransitionError(
                    f"Cannot cancel job {job_id} in status {job.status.value}"
                )
            discarded = job.checkpoint
            self._clear_results(job)
            job.status = JobStatus.FAILED
            job.error_message = CANCELLATION_MESSAGE
            job.progress = 0
            job.completed_at = utcnow()
            job.updated_at = job.completed_at
            snapshot = job.snapshot()

        log_with_context(self.logger, "info", "Job cancelled", job_id=job_id)
        self._publish(snapshot)
        return discarded

    def is_cancelled(self, job_id: str, attempt: Optional[int] = None) -> bool:
        """
        Check whether a job has been cancelled (unknown jobs count as cancelled).

        When ``attempt`` is given, the caller is a running attempt and the job
        also counts as cancelled once it has left PROCESSING or a newer attempt
        has started, e.g. after a cancel followed by a retry.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_cancelled:
                return True
            if attempt is None:
                return False
            return job.status != JobStatus.PROCESSING or job.attempt != attempt

    def reset_for_retry(self, job_id: str) -> Job:
        """
        Put a failed or completed job back into PENDING for a fresh attempt.

        Clears the previous error, audio reference, duration and checkpoint.

        Raises:
            KeyError: If the job does not exist
            InvalidTransitionError: If the job is pending or processing
        """
        with self._lock:
            job = self._require(job_id)
            if not job.status.is_terminal:
                raise InvalidTransitionError(
                    f"Job {job_id} is {job.status.value}; only failed or completed jobs can be retried"
                )
            self._clear_results(job)
            job.status = JobStatus.PENDING
            job.error_message = None
            job.progress = 0
            job.started_at = None
            job.completed_at = None
            job.updated_at = utcnow()
            snapshot = job.snapshot()

        log_with_context(self.logger, "info", "Job queued for retry", job_id=job_id)
        self._publish(snapshot)
        return snapshot

    def reconcile_duration(
        self,
        job_id: str,
        reported_seconds: float,
        tolerance_seconds: float = 2.0
    ) -> bool:
        """
        Correct the stored duration of a completed job.

        Players can surface the real playback length after the fact; the
        stored value is replaced only when it differs by more than the
        tolerance.

        Returns:
            True if the stored duration changed

        Raises:
            KeyError: If the job does not exist
            InvalidTransitionError: If the job is not completed
            ValueError: If the reported duration is not positive
        """
        if reported_seconds <= 0:
            raise ValueError("Reported duration must be positive")

        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.COMPLETED:
                raise InvalidTransitionError(
                    f"Cannot update duration of job {job_id} in status {job.status.value}"
                )
            previous = job.duration_seconds
            if previous is not None and abs(previous - reported_seconds) <= tolerance_seconds:
                return False
            job.duration_seconds = reported_seconds
            job.updated_at = utcnow()
            snapshot = job.snapshot()

        log_with_context(
            self.logger,
            "info",
            "Duration reconciled",
            job_id=job_id,
            previous_duration=previous,
            reported_duration=reported_seconds
        )
        self._publish(snapshot)
        return True

    def subscribe(self, job_id: str) -> asyncio.Queue:
        """
        Register for change events of one job.

        Must be called from a running event loop. Every write to the job puts
        a Job snapshot on the returned queue.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._subscribers.setdefault(job_id, []).append((loop, queue))
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        """Remove a queue returned by subscribe()."""
        with self._lock:
            entries = self._subscribers.get(job_id, [])
            self._subscribers[job_id] = [e for e in entries if e[1] is not queue]
            if not self._subscribers[job_id]:
                del self._subscribers[job_id]

    def cleanup_old_jobs(self, max_age_hours: int = 24) -> int:
        """
        Remove completed or failed jobs older than the specified age.

        Jobs in PENDING or PROCESSING status are never removed.

        Args:
            max_age_hours: Maximum age in hours for finished jobs (default: 24)

        Returns:
            The number of jobs that were removed
        """
        cutoff_time = utcnow() - timedelta(hours=max_age_hours)

        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.status.is_terminal and job.completed_at and job.completed_at < cutoff_time
            ]
            for job_id in expired:
                del self._jobs[job_id]

        if expired:
            log_with_context(
                self.logger,
                "info",
                "Cleaned up old jobs",
                removed_count=len(expired),
                max_age_hours=max_age_hours
            )

        return len(expired)

    def queue_summary(self) -> Dict[str, int]:
        """Count jobs per status."""
        summary = {status.value: 0 for status in JobStatus}
        with self._lock:
            for job in self._jobs.values():
                summary[job.status.value] += 1
        return summary

    def get_all_jobs(self) -> Dict[str, Job]:
        """
        Get snapshots of all jobs in the system.

        This method is primarily useful for testing and debugging.
        """
        with self._lock:
            return {job_id: job.snapshot() for job_id, job in self._jobs.items()}

    def clear_all_jobs(self) -> None:
        """
        Remove all jobs from the system.

        This method is primarily useful for testing and cleanup.
        """
        with self._lock:
            self._jobs.clear()

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            log_with_context(self.logger, "error", "Job not found", job_id=job_id)
            raise KeyError(f"Job with id {job_id} not found")
        return job

    @staticmethod
    def _clear_results(job: Job) -> None:
        job.audio_ref = None
        job.duration_seconds = None
        job.checkpoint = None

    def _publish(self, snapshot: Job) -> None:
        with self._lock:
            targets = list(self._subscribers.get(snapshot.job_id, []))

        for loop, queue in targets:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, snapshot)
            except RuntimeError:
                # Subscriber's loop is closed
                self.unsubscribe(snapshot.job_id, queue)
