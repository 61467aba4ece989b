"""
Time-budget checkpointing and resumption for long synthesis runs.

A job attempt may run under a wall-clock budget. Shortly before the budget
runs out, DeadlineTimer signals the batcher to stop dispatching. The
CheckpointManager then persists the audio synthesized so far, records the
resume point on the job and enqueues a continuation message, so the next
attempt picks up at the first chunk that has not been synthesized.
"""

import asyncio
from typing import List, Optional
from uuid import uuid4

from audiobook.job_manager import InvalidTransitionError, JobManager
from audiobook.logging_config import get_logger, log_with_context
from audiobook.models import Checkpoint, Job, JobStatus
from audiobook.storage import BlobStore, StorageError
from audiobook.work_queue import JobMessage, WorkQueue


class TimeoutSignal(Exception):
    """
    Raised when an attempt reaches its time budget with chunks left.

    Attributes:
        next_index: First chunk that was not synthesized
        buffers: Audio synthesized during this attempt
    """

    def __init__(self, next_index: int, buffers: List[bytes]):
        super().__init__(f"Time budget reached before chunk {next_index}")
        self.next_index = next_index
        self.buffers = buffers


class CheckpointRejected(Exception):
    """Raised when the job left PROCESSING before its checkpoint was recorded."""
    pass


class DeadlineTimer:
    """
    Sets an asyncio.Event when an attempt's time budget is nearly spent.

    The event fires ``safety_margin_seconds`` before ``budget_seconds``
    elapse, leaving room to write the checkpoint. A budget of 0 disables
    the timer.

    Example:
        >>> timer = DeadlineTimer(budget_seconds=300, safety_margin_seconds=10)
        >>> timer.start()
        >>> await batcher.synthesize(job_id, chunks, stop_event=timer.event)
        >>> timer.cancel()
    """

    def __init__(self, budget_seconds: float, safety_margin_seconds: float = 5.0):
        self.budget_seconds = budget_seconds
        self.safety_margin_seconds = safety_margin_seconds
        self.event = asyncio.Event()
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def enabled(self) -> bool:
        return self.budget_seconds > 0

    @property
    def expired(self) -> bool:
        return self.event.is_set()

    def start(self) -> None:
        if not self.enabled or self._handle is not None:
            return
        delay = max(0.0, self.budget_seconds - self.safety_margin_seconds)
        self._handle = asyncio.get_running_loop().call_later(delay, self.event.set)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class CheckpointManager:
    """
    Persists partial progress of a job and schedules its continuation.

    Write ordering matters: the partial audio is stored before the
    checkpoint is recorded on the job, and the previous partial artifact is
    only deleted once the new one is recorded. A reader of the job record
    therefore never sees a checkpoint whose audio does not exist.
    """

    def __init__(
        self,
        store: BlobStore,
        job_manager: JobManager,
        work_queue: WorkQueue,
        resume_delay_seconds: float = 1.0
    ):
        self.store = store
        self.job_manager = job_manager
        self.work_queue = work_queue
        self.resume_delay_seconds = resume_delay_seconds
        self.logger = get_logger(__name__)

    async def save(
        self,
        job_id: str,
        prefix_audio: Optional[bytes],
        buffers: List[bytes],
        total_chunks: int,
        next_chunk_index: int
    ) -> Checkpoint:
        """
        Checkpoint a job that stopped at next_chunk_index.

        Args:
            job_id: The job being checkpointed
            prefix_audio: Audio carried over from earlier attempts, if any
            buffers: Audio synthesized in this attempt, in chunk order
            total_chunks: Number of chunks in the document
            next_chunk_index: First chunk that still needs synthesis

        Returns:
            The recorded Checkpoint

        Raises:
            StorageError: If the partial audio cannot be written after one retry
            CheckpointRejected: If the job was cancelled or finished meanwhile
        """
        current = self.job_manager.get_job(job_id)
        previous = current.checkpoint if current else None

        data = (prefix_audio or b"") + b"".join(buffers)
        key = f"partial/{job_id}/{uuid4().hex}.mp3"
        ref = await self._put_with_retry(job_id, data, key)

        checkpoint = Checkpoint(
            total_chunks=total_chunks,
            next_chunk_index=next_chunk_index,
            partial_audio_ref=ref
        )
        try:
            self.job_manager.save_checkpoint(job_id, checkpoint)
        except (InvalidTransitionError, KeyError) as e:
            await self._delete_quietly(job_id, ref)
            raise CheckpointRejected(str(e)) from e

        self.work_queue.submit(
            JobMessage(
                job_id=job_id,
                resume_from_chunk_index=next_chunk_index,
                partial_audio_ref=ref
            ),
            delay=self.resume_delay_seconds
        )

        if previous is not None and previous.partial_audio_ref != ref:
            await self._delete_quietly(job_id, previous.partial_audio_ref)

        log_with_context(
            self.logger,
            "info",
            "Job checkpointed for continuation",
            job_id=job_id,
            next_chunk_index=next_chunk_index,
            total_chunks=total_chunks,
            partial_bytes=len(data)
        )
        return checkpoint

    async def load_partial(self, ref: str) -> bytes:
        """Fetch the audio stored by a previous checkpoint."""
        return await self.store.get(ref)

    async def discard(self, checkpoint: Optional[Checkpoint], job_id: Optional[str] = None) -> None:
        """Delete the partial artifact of a checkpoint that is no longer needed."""
        if checkpoint is None:
            return
        await self._delete_quietly(job_id, checkpoint.partial_audio_ref)

    def is_stale(self, job: Job, message: JobMessage, total_chunks: int) -> bool:
        """
        Check whether a continuation message no longer matches the job.

        A message is stale when the job is not processing, when it points
        past the end of the chunk list, or when its partial audio is not the
        one recorded in the job's current checkpoint.
        """
        checkpoint = job.checkpoint
        if job.status != JobStatus.PROCESSING or checkpoint is None:
            return True
        index = message.resume_from_chunk_index
        if index is None or index < 0 or index > total_chunks:
            return True
        if checkpoint.total_chunks != total_chunks:
            return True
        return (
            message.partial_audio_ref != checkpoint.partial_audio_ref
            or index != checkpoint.next_chunk_index
        )

    async def _put_with_retry(self, job_id: str, data: bytes, key: str) -> str:
        try:
            return await self.store.put(data, key)
        except StorageError as e:
            log_with_context(
                self.logger,
                "warning",
                "Partial audio write failed, retrying once",
                job_id=job_id,
                error=e
            )
        return await self.store.put(data, key)

    async def _delete_quietly(self, job_id: Optional[str], ref: str) -> None:
        try:
            await self.store.delete(ref)
        except StorageError as e:
            log_with_context(
                self.logger,
                "warning",
                "Failed to delete partial audio",
                job_id=job_id,
                partial_audio_ref=ref,
                error=e
            )
