"""
In-process work queue for audiobook job messages.

Fresh submissions and checkpoint continuations travel through the same
queue and are consumed by a fixed number of asyncio worker tasks. A job
never runs on two workers at once: a message for a job that is already in
flight is held back until that attempt finishes.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from audiobook.logging_config import get_logger, log_with_context


class QueueFullError(RuntimeError):
    """Exception raised when the queue cannot accept more messages."""
    pass


@dataclass(frozen=True)
class JobMessage:
    """
    A unit of work for the pipeline.

    Attributes:
        job_id: Job to process
        resume_from_chunk_index: First chunk to synthesize when continuing
        partial_audio_ref: Audio already synthesized for chunks before it
    """
    job_id: str
    resume_from_chunk_index: Optional[int] = None
    partial_audio_ref: Optional[str] = None

    @property
    def is_resume(self) -> bool:
        return self.resume_from_chunk_index is not None


MessageHandler = Callable[[JobMessage], Awaitable[None]]


class WorkQueue:
    """
    Bounded asyncio queue with a fixed pool of worker tasks.

    Attributes:
        max_workers: Number of jobs processed concurrently
        max_queue_size: Maximum number of waiting messages
    """

    def __init__(
        self,
        handler: Optional[MessageHandler] = None,
        max_workers: int = 2,
        max_queue_size: int = 100
    ):
        self.handler = handler
        self.max_workers = max_workers
        self.max_queue_size = max_queue_size
        self.logger = get_logger(__name__)

        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._workers: List[asyncio.Task] = []
        self._active: Set[str] = set()
        self._deferred: Dict[str, List[JobMessage]] = {}
        self._delayed: Dict[object, asyncio.TimerHandle] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        """Start the worker tasks on the running event loop."""
        if self.is_running:
            return
        if self.handler is None:
            raise RuntimeError("WorkQueue needs a handler before it can start")

        self._loop = asyncio.get_running_loop()
        # Capacity is enforced in submit() across queued, delayed and deferred messages
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"audiobook-worker-{n}")
            for n in range(self.max_workers)
        ]
        self.logger.info(f"Work queue started with {self.max_workers} workers")

    async def stop(self) -> None:
        """Cancel workers and any delayed messages that have not fired yet."""
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self.logger.info("Work queue stopped")

    def submit(self, message: JobMessage, delay: float = 0.0) -> None:
        """
        Enqueue a message, optionally after a delay.

        Must be called from the event loop the queue was started on.

        Raises:
            RuntimeError: If the queue has not been started
            QueueFullError: If the queue is at capacity
        """
        if self._queue is None or self._loop is None:
            raise RuntimeError("WorkQueue is not running")
        if self.is_at_capacity():
            raise QueueFullError(
                f"Work queue is full ({self.max_queue_size} messages). Please retry later."
            )

        if delay > 0:
            token = object()
            self._delayed[token] = self._loop.call_later(
                delay, self._fire_delayed, token, message
            )
        else:
            self._queue.put_nowait(message)

        log_with_context(
            self.logger,
            "debug",
            "Job message queued",
            job_id=message.job_id,
            resume_from_chunk_index=message.resume_from_chunk_index,
            delay=delay
        )

    def is_at_capacity(self) -> bool:
        return self.queued_count() >= self.max_queue_size

    def queued_count(self) -> int:
        queued = self._queue.qsize() if self._queue is not None else 0
        deferred = sum(len(msgs) for msgs in self._deferred.values())
        return queued + deferred + len(self._delayed)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def get_capacity_info(self) -> dict:
        """
        Get information about current load.

        Returns:
            Dictionary with active_jobs, queued_jobs, max_workers,
            max_queue_size and available_capacity
        """
        queued = self.queued_count()
        return {
            "active_jobs": len(self._active),
            "queued_jobs": queued,
            "max_workers": self.max_workers,
            "max_queue_size": self.max_queue_size,
            "available_capacity": max(0, self.max_queue_size - queued),
        }

    async def wait_idle(self, poll_interval: float = 0.01) -> None:
        """Wait until no message is queued, delayed, deferred or running."""
        while self.queued_count() or self._active:
            await asyncio.sleep(poll_interval)

    def _fire_delayed(self, token: object, message: JobMessage) -> None:
        self._delayed.pop(token, None)
        self._queue.put_nowait(message)

    async def _worker(self, number: int) -> None:
        while True:
            message = await self._queue.get()
            try:
                if message.job_id in self._active:
                    self._deferred.setdefault(message.job_id, []).append(message)
                    self.logger.debug(
                        f"Deferring message for job {message.job_id}: attempt already running"
                    )
                    continue
                await self._handle(message, number)
            finally:
                self._queue.task_done()

    async def _handle(self, message: JobMessage, number: int) -> None:
        self._active.add(message.job_id)
        try:
            await self.handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_with_context(
                self.logger,
                "error",
                "Unhandled error while processing job message",
                job_id=message.job_id,
                worker=number,
                error=e
            )
        finally:
            self._active.discard(message.job_id)
            for deferred in self._deferred.pop(message.job_id, []):
                self._queue.put_nowait(deferred)
