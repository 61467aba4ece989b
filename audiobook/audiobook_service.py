"""
Audiobook service orchestration for the PDF Audiobook API.

This module provides the AudiobookService class, the facade the API talks
to. It owns the job store, the work queue and the pipeline, and exposes the
job operations: submit, status, cancel, retry and duration reporting.
"""

from typing import Optional

from audiobook.checkpoint import CheckpointManager
from audiobook.config import Settings, settings as default_settings
from audiobook.job_manager import JobManager
from audiobook.logging_config import get_logger, log_with_context
from audiobook.models import Job, JobStatus
from audiobook.pipeline import AudiobookPipeline
from audiobook.providers import ClientProvider
from audiobook.work_queue import JobMessage, QueueFullError, WorkQueue


class AudiobookService:
    """
    Orchestrates audiobook jobs from submission to completion.

    The service integrates the JobManager, WorkQueue and AudiobookPipeline
    to provide:
    - Job submission with queue capacity checks
    - Status lookup backed by the job store
    - Cooperative cancellation with cleanup of partial audio
    - Retry and regeneration of finished jobs
    - Duration reconciliation reported by players

    Attributes:
        settings: Application settings
        job_manager: JobManager instance holding job state
        provider: ClientProvider building the external clients
        work_queue: WorkQueue carrying job messages to the pipeline
        pipeline: AudiobookPipeline processing job messages
    """

    def __init__(
        self,
        job_manager: Optional[JobManager] = None,
        provider: Optional[ClientProvider] = None,
        work_queue: Optional[WorkQueue] = None,
        pipeline: Optional[AudiobookPipeline] = None,
        settings: Optional[Settings] = None
    ):
        """
        Initialize the AudiobookService.

        Args:
            job_manager: JobManager instance (creates new if None)
            provider: ClientProvider instance (built from settings if None)
            work_queue: WorkQueue instance (built from settings if None)
            pipeline: AudiobookPipeline instance (wired from the others if None)
            settings: Settings to use (the global settings if None)
        """
        self.settings = settings or default_settings
        self.job_manager = job_manager or JobManager()
        self.provider = provider or ClientProvider(self.settings)
        self.work_queue = work_queue or WorkQueue(
            max_workers=self.settings.max_concurrent_jobs,
            max_queue_size=self.settings.max_queue_size
        )
        self.pipeline = pipeline or AudiobookPipeline.from_settings(
            self.settings, self.job_manager, self.work_queue, self.provider
        )
        if self.work_queue.handler is None:
            self.work_queue.handler = self.pipeline.run
        self.logger = get_logger(__name__)

    @property
    def checkpoints(self) -> CheckpointManager:
        return self.pipeline.checkpoints

    async def start(self) -> None:
        """Start the queue workers."""
        self.logger.info("Starting AudiobookService")
        await self.work_queue.start()

    async def shutdown(self) -> None:
        """Stop the queue workers and close external clients."""
        self.logger.info("Shutting down AudiobookService")
        await self.work_queue.stop()
        await self.provider.aclose()

    def is_ready(self) -> bool:
        """Check whether the service is accepting jobs."""
        return self.work_queue.is_running

    def is_at_capacity(self) -> bool:
        return self.work_queue.is_at_capacity()

    def get_capacity_info(self) -> dict:
        """
        Get information about current capacity and load.

        Returns:
            Dictionary with the work queue's load figures and the number of
            jobs per status
        """
        info = self.work_queue.get_capacity_info()
        info["jobs"] = self.job_manager.queue_summary()
        return info

    def submit(
        self,
        document_ref: str,
        job_id: Optional[str] = None,
        title: Optional[str] = None
    ) -> str:
        """
        Submit a document for conversion.

        Creates a new job, or restarts an existing failed or completed job
        from scratch. Submitting a job that is pending or processing returns
        its id without queueing anything.

        Args:
            document_ref: Local path or http(s) URL of the PDF
            job_id: Optional caller-chosen job id
            title: Optional display title

        Returns:
            The job_id

        Raises:
            ValueError: If document_ref is empty
            RuntimeError: If the service is not running
            QueueFullError: If the work queue is full

        Example:
            >>> job_id = service.submit("uploads/moby_dick.pdf")
        """
        if not document_ref or not document_ref.strip():
            raise ValueError("document_ref must not be empty")
        self._require_ready()

        if job_id is not None:
            existing = self.job_manager.get_job(job_id)
            if existing is not None:
                if existing.status in (JobStatus.PENDING, JobStatus.PROCESSING):
                    log_with_context(
                        self.logger,
                        "info",
                        "Job already queued or running",
                        job_id=job_id,
                        status=existing.status.value
                    )
                    return job_id
                return self.retry(job_id)

        self._require_capacity()
        job_id = self.job_manager.create_job(document_ref, job_id=job_id, title=title)
        self.work_queue.submit(JobMessage(job_id=job_id))
        return job_id

    def retry(self, job_id: str) -> str:
        """
        Restart a failed or completed job from scratch.

        Raises:
            KeyError: If the job does not exist
            InvalidTransitionError: If the job is pending or processing
            QueueFullError: If the work queue is full
        """
        self._require_ready()
        if self.job_manager.get_job(job_id) is None:
            raise KeyError(f"Job with id {job_id} not found")
        self._require_capacity()

        self.job_manager.reset_for_retry(job_id)
        self.work_queue.submit(JobMessage(job_id=job_id))
        return job_id

    def get_status(self, job_id: str) -> Optional[Job]:
        """
        Get the current state of a job.

        Returns:
            Snapshot of the job, or None if it does not exist
        """
        return self.job_manager.get_job(job_id)

    async def cancel(self, job_id: str) -> Job:
        """
        Cancel a pending or processing job.

        Synthesis calls already in flight finish but their audio is
        discarded. Any partial audio from an earlier checkpoint is deleted.

        Returns:
            Snapshot of the cancelled job

        Raises:
            KeyError: If the job does not exist
            InvalidTransitionError: If the job is completed or failed
        """
        discarded = self.job_manager.cancel_job(job_id)
        await self.checkpoints.discard(discarded, job_id)
        return self.job_manager.get_job(job_id)

    def report_duration(self, job_id: str, duration_seconds: float) -> Job:
        """
        Record the playback duration a player measured for a completed job.

        Returns:
            Snapshot of the job after reconciliation
        """
        self.job_manager.reconcile_duration(
            job_id,
            duration_seconds,
            tolerance_seconds=self.settings.duration_tolerance_seconds
        )
        return self.job_manager.get_job(job_id)

    def cleanup_old_jobs(self, max_age_hours: Optional[int] = None) -> int:
        """
        Clean up finished jobs older than the specified age.

        Args:
            max_age_hours: Age limit in hours (defaults to the configured value)

        Returns:
            Number of jobs cleaned up
        """
        return self.job_manager.cleanup_old_jobs(
            max_age_hours or self.settings.job_cleanup_max_age_hours
        )

    def _require_ready(self) -> None:
        if not self.is_ready():
            raise RuntimeError("Audiobook service is not ready")

    def _require_capacity(self) -> None:
        if self.is_at_capacity():
            capacity_info = self.work_queue.get_capacity_info()
            raise QueueFullError(
                f"Server is at capacity. Active jobs: {capacity_info['active_jobs']}, "
                f"Queued jobs: {capacity_info['queued_jobs']}. Please retry later."
            )
