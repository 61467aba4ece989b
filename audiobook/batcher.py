"""
Bounded-concurrency chunk synthesis.

This module drives the TTS engine over an ordered list of text chunks. At
most ``C`` requests are in flight at once; results are stored by chunk index
so the output order never depends on completion order. The batcher reports
progress into a sub-range of the job's progress bar, retries isolated
failures with shortened text, and stops early on cancellation or when the
time budget runs out.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from audiobook.job_manager import JobManager
from audiobook.logging_config import get_logger, log_with_context
from audiobook.tts_engine import SynthesisError, TTSEngine, VoiceConfig


class CancellationSignal(Exception):
    """Raised to unwind an attempt whose job was cancelled by the user."""
    pass


@dataclass
class BatchResult:
    """
    Outcome of one synthesize() call.

    Attributes:
        buffers: Audio for chunks [start_index, next_index) in index order
        start_index: First chunk synthesized by this call
        next_index: First chunk not synthesized by this call
        total_chunks: Number of chunks in the document
        cancelled: The job was cancelled; buffers are discarded
        stopped_early: The deadline stopped dispatching before the last chunk
    """
    buffers: List[bytes] = field(default_factory=list)
    start_index: int = 0
    next_index: int = 0
    total_chunks: int = 0
    cancelled: bool = False
    stopped_early: bool = False

    @property
    def is_complete(self) -> bool:
        return not self.cancelled and self.next_index >= self.total_chunks


class _BatchState:
    """Mutable bookkeeping shared by the tasks of one batch."""

    def __init__(self, completed: int, attempt: Optional[int] = None):
        self.completed = completed
        self.attempt = attempt
        self.consecutive_failures = 0
        self.fatal: Optional[BaseException] = None
        self.cancelled = False
        self.results: Dict[int, bytes] = {}


def map_progress(completed: int, total: int, progress_range: Tuple[int, int]) -> int:
    """
    Map a completed chunk count onto a progress sub-range.

    Example:
        >>> map_progress(1, 4, (40, 90))
        52
    """
    start, end = progress_range
    if total <= 0:
        return end
    return start + (completed * (end - start)) // total


def shorten_text(text: str, ratio: float) -> str:
    """Cut text to roughly ``ratio`` of its length at a word boundary."""
    target = max(1, int(len(text) * ratio))
    cut = text.rfind(" ", 0, target + 1)
    if cut <= 0:
        cut = target
    return text[:cut].rstrip() or text[:target]


class SynthesisBatcher:
    """
    Synthesizes chunk lists with a semaphore-bounded pool of TTS calls.

    Retry policy: a failed chunk is retried with its original text shortened
    to ``shrink_ratio ** n`` after the n-th failure. Failures are counted across
    the whole batch and that counter resets on any success; the batch aborts
    once it reaches ``max_consecutive_failures``, once a single chunk has
    failed that many times, or on an unretryable error.
    """

    def __init__(
        self,
        engine: TTSEngine,
        job_manager: JobManager,
        voice: Optional[VoiceConfig] = None,
        concurrency_small_document: int = 5,
        concurrency_large_document: int = 3,
        large_document_chunks: int = 20,
        inter_batch_delay_seconds: float = 0.0,
        shrink_ratio: float = 0.8,
        max_consecutive_failures: int = 3
    ):
        self.engine = engine
        self.job_manager = job_manager
        self.voice = voice or VoiceConfig()
        self.concurrency_small_document = concurrency_small_document
        self.concurrency_large_document = concurrency_large_document
        self.large_document_chunks = large_document_chunks
        self.inter_batch_delay_seconds = inter_batch_delay_seconds
        self.shrink_ratio = shrink_ratio
        self.max_consecutive_failures = max_consecutive_failures
        self.logger = get_logger(__name__)

    def choose_concurrency(self, total_chunks: int) -> int:
        """Pick fewer concurrent calls for large documents to respect rate limits."""
        if total_chunks > self.large_document_chunks:
            return self.concurrency_large_document
        return self.concurrency_small_document

    async def synthesize(
        self,
        job_id: str,
        chunks: List[str],
        start_index: int = 0,
        progress_range: Tuple[int, int] = (40, 90),
        concurrency: Optional[int] = None,
        stop_event: Optional[asyncio.Event] = None,
        attempt: Optional[int] = None
    ) -> BatchResult:
        """
        Synthesize chunks[start_index:] and return their audio in order.

        Before every dispatch the job record is checked for cancellation and
        ``stop_event`` for the deadline. Calls already in flight are always
        allowed to finish.

        Args:
            job_id: Job the chunks belong to
            chunks: The full, deterministic chunk list of the document
            start_index: First chunk to synthesize (non-zero when resuming)
            progress_range: (start, end) progress values for this phase
            concurrency: Override for the number of concurrent calls
            stop_event: Set when no further chunks should be dispatched
            attempt: Job attempt this batch belongs to; a newer attempt or a
                job that left PROCESSING counts as cancellation

        Returns:
            BatchResult describing what was synthesized

        Raises:
            ValueError: If start_index is outside the chunk list
            SynthesisError: If the retry policy gives up
        """
        total = len(chunks)
        if start_index < 0 or start_index > total:
            raise ValueError(f"start_index {start_index} outside 0..{total}")

        limit = concurrency or self.choose_concurrency(total)
        semaphore = asyncio.Semaphore(limit)
        state = _BatchState(completed=start_index, attempt=attempt)
        tasks = []
        next_index = start_index
        stopped_early = False

        log_with_context(
            self.logger,
            "info",
            "Starting chunk synthesis",
            job_id=job_id,
            total_chunks=total,
            start_index=start_index,
            concurrency=limit
        )

        for index in range(start_index, total):
            if (
                self.inter_batch_delay_seconds > 0
                and index > start_index
                and (index - start_index) % limit == 0
            ):
                await asyncio.sleep(self.inter_batch_delay_seconds)

            await semaphore.acquire()

            if state.fatal is not None or state.cancelled:
                semaphore.release()
                break
            if self.job_manager.is_cancelled(job_id, attempt):
                state.cancelled = True
                semaphore.release()
                break
            if stop_event is not None and stop_event.is_set():
                stopped_early = True
                semaphore.release()
                break

            tasks.append(asyncio.create_task(
                self._run_chunk(job_id, index, chunks, state, semaphore, progress_range)
            ))
            next_index = index + 1

        if tasks:
            await asyncio.gather(*tasks)

        if state.cancelled or self.job_manager.is_cancelled(job_id, attempt):
            log_with_context(
                self.logger,
                "info",
                "Chunk synthesis stopped by cancellation",
                job_id=job_id,
                discarded_chunks=len(state.results)
            )
            return BatchResult(
                start_index=start_index,
                next_index=start_index,
                total_chunks=total,
                cancelled=True
            )

        if state.fatal is not None:
            raise state.fatal

        buffers = [state.results[i] for i in range(start_index, next_index)]

        if stopped_early:
            log_with_context(
                self.logger,
                "info",
                "Chunk synthesis stopped at deadline",
                job_id=job_id,
                next_index=next_index,
                total_chunks=total
            )

        return BatchResult(
            buffers=buffers,
            start_index=start_index,
            next_index=next_index,
            total_chunks=total,
            stopped_early=stopped_early
        )

    async def _run_chunk(
        self,
        job_id: str,
        index: int,
        chunks: List[str],
        state: _BatchState,
        semaphore: asyncio.Semaphore,
        progress_range: Tuple[int, int]
    ) -> None:
        try:
            audio = await self._synthesize_with_retry(job_id, index, chunks[index], state)
            state.results[index] = audio
            state.completed += 1
            if not state.cancelled:
                self.job_manager.update_progress(
                    job_id, map_progress(state.completed, len(chunks), progress_range)
                )
        except CancellationSignal:
            state.cancelled = True
        except Exception as e:
            if state.fatal is None:
                state.fatal = e
        finally:
            semaphore.release()

    async def _synthesize_with_retry(
        self,
        job_id: str,
        index: int,
        text: str,
        state: _BatchState
    ) -> bytes:
        attempt_text = text
        failed_attempts = 0
        while True:
            try:
                audio = await self.engine.synthesize(attempt_text, self.voice)
            except SynthesisError as e:
                failed_attempts += 1
                state.consecutive_failures += 1
                log_with_context(
                    self.logger,
                    "warning",
                    "Chunk synthesis failed",
                    job_id=job_id,
                    chunk_index=index,
                    failed_attempts=failed_attempts,
                    consecutive_failures=state.consecutive_failures,
                    retryable=e.retryable,
                    reason=str(e)
                )
                if not e.retryable:
                    raise
                if state.consecutive_failures >= self.max_consecutive_failures:
                    raise SynthesisError(
                        f"Aborting after {state.consecutive_failures} consecutive "
                        f"synthesis failures: {e}",
                        retryable=False
                    ) from e
                # Successes on other chunks reset the shared counter, not this one
                if failed_attempts >= self.max_consecutive_failures:
                    raise SynthesisError(
                        f"Aborting after {failed_attempts} failed attempts "
                        f"at chunk {index}: {e}",
                        retryable=False
                    ) from e
                if state.fatal is not None:
                    raise
                if self.job_manager.is_cancelled(job_id, state.attempt):
                    raise CancellationSignal(job_id)
                attempt_text = shorten_text(text, self.shrink_ratio ** failed_attempts)
                continue

            state.consecutive_failures = 0
            return audio
