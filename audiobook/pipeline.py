"""
Job runner for audiobook generation.

AudiobookPipeline consumes JobMessages from the work queue and takes a job
through extraction, chunking, synthesis and assembly. It is the only
component that writes a job's terminal state: ``completed`` on success and
``failed`` with the fatal error's message otherwise. Cancellation and
time-budget suspension unwind the attempt without writing ``failed``.

Progress milestones:
    5   attempt started
    20  document text extracted
    40  chunks ready, synthesis starts (configurable sub-range start)
    90  every chunk synthesized (configurable sub-range end)
    95  final audio stored
    100 job completed
"""

import asyncio
from typing import List, Optional, Tuple

from audiobook.assembler import Assembler
from audiobook.batcher import BatchResult, CancellationSignal, SynthesisBatcher
from audiobook.checkpoint import (
    CheckpointManager,
    CheckpointRejected,
    DeadlineTimer,
    TimeoutSignal,
)
from audiobook.chunker import split_text_into_chunks
from audiobook.config import Settings
from audiobook.job_manager import InvalidTransitionError, JobManager
from audiobook.logging_config import get_logger, log_with_context
from audiobook.models import Checkpoint, JobStatus
from audiobook.providers import ClientProvider
from audiobook.storage import StorageError
from audiobook.text_extractor import DocumentSource, TextExtractor, extract_document
from audiobook.work_queue import JobMessage, WorkQueue


PROGRESS_STARTED = 5
PROGRESS_EXTRACTED = 20
PROGRESS_STORED = 95


class AudiobookPipeline:
    """
    Runs one attempt of an audiobook job per message.

    Attributes:
        job_manager: Job record and progress store
        source: Reads source documents
        extractor: Turns document bytes into text
        batcher: Synthesizes chunks with bounded concurrency
        checkpoints: Persists partial progress and schedules continuations
        assembler: Stores the final audio and measures its duration
    """

    def __init__(
        self,
        job_manager: JobManager,
        source: DocumentSource,
        extractor: TextExtractor,
        batcher: SynthesisBatcher,
        checkpoints: CheckpointManager,
        assembler: Assembler,
        max_chunk_bytes: int = 5000,
        chunk_fill_ratio: float = 0.75,
        progress_range: Tuple[int, int] = (40, 90),
        time_budget_seconds: float = 0.0,
        safety_margin_seconds: float = 5.0
    ):
        self.job_manager = job_manager
        self.source = source
        self.extractor = extractor
        self.batcher = batcher
        self.checkpoints = checkpoints
        self.assembler = assembler
        self.max_chunk_bytes = max_chunk_bytes
        self.chunk_fill_ratio = chunk_fill_ratio
        self.progress_range = progress_range
        self.time_budget_seconds = time_budget_seconds
        self.safety_margin_seconds = safety_margin_seconds
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        job_manager: JobManager,
        work_queue: WorkQueue,
        provider: ClientProvider
    ) -> "AudiobookPipeline":
        """Wire a pipeline from configuration and the provider's clients."""
        store = provider.blob_store
        batcher = SynthesisBatcher(
            engine=provider.tts_engine,
            job_manager=job_manager,
            voice=provider.voice(),
            concurrency_small_document=settings.concurrency_small_document,
            concurrency_large_document=settings.concurrency_large_document,
            large_document_chunks=settings.large_document_chunks,
            inter_batch_delay_seconds=settings.inter_batch_delay_seconds,
            shrink_ratio=settings.retry_shrink_ratio,
            max_consecutive_failures=settings.max_consecutive_failures
        )
        checkpoints = CheckpointManager(
            store=store,
            job_manager=job_manager,
            work_queue=work_queue,
            resume_delay_seconds=settings.resume_delay_seconds
        )
        return cls(
            job_manager=job_manager,
            source=provider.document_source,
            extractor=provider.extractor,
            batcher=batcher,
            checkpoints=checkpoints,
            assembler=Assembler(store, words_per_minute=settings.words_per_minute),
            max_chunk_bytes=settings.max_chunk_bytes,
            chunk_fill_ratio=settings.chunk_fill_ratio,
            progress_range=settings.get_progress_range(),
            time_budget_seconds=settings.time_budget_seconds,
            safety_margin_seconds=settings.safety_margin_seconds
        )

    async def run(self, message: JobMessage) -> None:
        """
        Process one job message.

        A fresh message starts a PENDING job from scratch. A continuation
        message resumes a PROCESSING job from its checkpoint. Messages that
        no longer apply (job gone, already running or finished, superseded
        checkpoint) are logged and dropped.

        Never raises for job-level failures; those are recorded on the job.
        """
        job_id = message.job_id
        job = self.job_manager.get_job(job_id)
        if job is None:
            log_with_context(self.logger, "warning", "Dropping message for unknown job", job_id=job_id)
            return

        expected = JobStatus.PROCESSING if message.is_resume else JobStatus.PENDING
        if job.status != expected:
            log_with_context(
                self.logger,
                "info",
                "Dropping message that no longer applies",
                job_id=job_id,
                status=job.status.value,
                resume_from_chunk_index=message.resume_from_chunk_index
            )
            return

        try:
            started = self.job_manager.start_processing(job_id, fresh=not message.is_resume)
        except (InvalidTransitionError, KeyError) as e:
            log_with_context(self.logger, "info", "Job state changed before start", job_id=job_id, error=e)
            return

        # The budget covers the whole attempt, fetch and extraction included
        timer = DeadlineTimer(self.time_budget_seconds, self.safety_margin_seconds)
        timer.start()
        try:
            await self._process(message, started.attempt, timer.event)

        except (CancellationSignal, CheckpointRejected):
            log_with_context(self.logger, "info", "Job attempt stopped after cancellation", job_id=job_id)

        except Exception as e:
            if self.job_manager.is_cancelled(job_id, started.attempt):
                log_with_context(
                    self.logger,
                    "info",
                    "Superseded job attempt stopped with an error",
                    job_id=job_id,
                    attempt=started.attempt,
                    error=e
                )
                return
            snapshot = self.job_manager.get_job(job_id)
            if self.job_manager.fail_job(job_id, str(e) or type(e).__name__):
                if snapshot is not None:
                    await self.checkpoints.discard(snapshot.checkpoint, job_id)
            log_with_context(
                self.logger,
                "error",
                "Job attempt failed",
                job_id=job_id,
                error=e
            )

        finally:
            timer.cancel()

    async def _process(self, message: JobMessage, attempt: int, stop_event: asyncio.Event) -> None:
        job_id = message.job_id
        job = self.job_manager.get_job(job_id)

        self._check_cancelled(job_id, attempt)
        self.job_manager.update_progress(job_id, PROGRESS_STARTED)

        text = await extract_document(self.source, self.extractor, job.source_document_ref, job_id)
        self._check_cancelled(job_id, attempt)
        self.job_manager.update_progress(job_id, PROGRESS_EXTRACTED)

        chunks = split_text_into_chunks(text, self.max_chunk_bytes, self.chunk_fill_ratio)
        log_with_context(
            self.logger,
            "info",
            "Text split into chunks",
            job_id=job_id,
            total_chunks=len(chunks),
            max_chunk_bytes=self.max_chunk_bytes
        )
        self.job_manager.update_progress(job_id, self.progress_range[0])

        start_index = 0
        prefix: Optional[bytes] = None
        resumed_from: Optional[Checkpoint] = None

        if message.is_resume:
            job = self.job_manager.get_job(job_id)
            resumed_from = job.checkpoint
            if resumed_from is not None and resumed_from.total_chunks != len(chunks):
                raise ValueError(
                    f"Document now splits into {len(chunks)} chunks but the checkpoint "
                    f"was taken with {resumed_from.total_chunks}"
                )
            if self.checkpoints.is_stale(job, message, len(chunks)):
                log_with_context(
                    self.logger,
                    "warning",
                    "Ignoring stale continuation message",
                    job_id=job_id,
                    resume_from_chunk_index=message.resume_from_chunk_index,
                    partial_audio_ref=message.partial_audio_ref
                )
                return
            prefix = await self.checkpoints.load_partial(message.partial_audio_ref)
            start_index = message.resume_from_chunk_index

        try:
            result = await self._synthesize(job_id, chunks, start_index, attempt, stop_event)
        except TimeoutSignal as signal:
            await self.checkpoints.save(
                job_id,
                prefix_audio=prefix,
                buffers=signal.buffers,
                total_chunks=len(chunks),
                next_chunk_index=signal.next_index
            )
            return

        assembled = await self.assembler.assemble(job_id, result.buffers, prefix=prefix, text=text)
        self.job_manager.update_progress(job_id, PROGRESS_STORED)

        if self.job_manager.is_cancelled(job_id, attempt):
            await self._delete_artifact(job_id, assembled.audio_ref)
            raise CancellationSignal(job_id)

        if self.job_manager.complete_job(job_id, assembled.audio_ref, assembled.duration_seconds):
            await self.checkpoints.discard(resumed_from, job_id)

    async def _synthesize(
        self,
        job_id: str,
        chunks: List[str],
        start_index: int,
        attempt: Optional[int] = None,
        stop_event: Optional[asyncio.Event] = None
    ) -> BatchResult:
        result = await self.batcher.synthesize(
            job_id,
            chunks,
            start_index=start_index,
            progress_range=self.progress_range,
            stop_event=stop_event,
            attempt=attempt
        )

        if result.cancelled:
            raise CancellationSignal(job_id)

        if not result.is_complete:
            if result.next_index == start_index:
                raise RuntimeError(
                    "Time budget expired before any chunk could be synthesized"
                )
            raise TimeoutSignal(result.next_index, result.buffers)

        return result

    def _check_cancelled(self, job_id: str, attempt: int) -> None:
        if self.job_manager.is_cancelled(job_id, attempt):
            raise CancellationSignal(job_id)

    async def _delete_artifact(self, job_id: str, ref: str) -> None:
        try:
            await self.assembler.store.delete(ref)
        except StorageError as e:
            log_with_context(self.logger, "warning", "Failed to delete audio", job_id=job_id, error=e)
