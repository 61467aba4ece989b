"""
Unit tests for time-budget checkpointing.

Tests DeadlineTimer behaviour and the write ordering and staleness rules
of CheckpointManager.
"""

import asyncio
from unittest.mock import Mock

import pytest

from audiobook.checkpoint import CheckpointManager, CheckpointRejected, DeadlineTimer
from audiobook.models import Checkpoint
from audiobook.storage import StorageError
from audiobook.work_queue import JobMessage


def processing_job(job_manager):
    job_id = job_manager.create_job("book.pdf")
    job_manager.start_processing(job_id)
    return job_id


class TestDeadlineTimer:

    @pytest.mark.asyncio
    async def test_disabled_without_budget(self):
        timer = DeadlineTimer(budget_seconds=0)
        timer.start()
        await asyncio.sleep(0.01)

        assert not timer.enabled
        assert not timer.expired

    @pytest.mark.asyncio
    async def test_fires_before_budget_by_margin(self):
        timer = DeadlineTimer(budget_seconds=0.05, safety_margin_seconds=0.04)
        timer.start()

        await asyncio.wait_for(timer.event.wait(), timeout=1)

        assert timer.expired

    @pytest.mark.asyncio
    async def test_margin_larger_than_budget_fires_immediately(self):
        timer = DeadlineTimer(budget_seconds=1, safety_margin_seconds=5)
        timer.start()

        await asyncio.wait_for(timer.event.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_cancel(self):
        timer = DeadlineTimer(budget_seconds=0.02, safety_margin_seconds=0)
        timer.start()
        timer.cancel()
        await asyncio.sleep(0.05)

        assert not timer.expired


class TestCheckpointManagerSave:

    @pytest.mark.asyncio
    async def test_save_stores_audio_records_checkpoint_and_enqueues(self, job_manager, memory_store):
        work_queue = Mock()
        manager = CheckpointManager(memory_store, job_manager, work_queue, resume_delay_seconds=2)
        job_id = processing_job(job_manager)

        checkpoint = await manager.save(
            job_id,
            prefix_audio=b"AB",
            buffers=[b"C", b"D"],
            total_chunks=10,
            next_chunk_index=4
        )

        assert checkpoint.partial_audio_ref.startswith(f"partial/{job_id}/")
        assert memory_store.blobs[checkpoint.partial_audio_ref] == b"ABCD"
        assert job_manager.get_job(job_id).checkpoint == checkpoint
        work_queue.submit.assert_called_once_with(
            JobMessage(
                job_id=job_id,
                resume_from_chunk_index=4,
                partial_audio_ref=checkpoint.partial_audio_ref
            ),
            delay=2
        )

    @pytest.mark.asyncio
    async def test_save_replaces_previous_partial(self, job_manager, memory_store):
        manager = CheckpointManager(memory_store, job_manager, Mock())
        job_id = processing_job(job_manager)

        first = await manager.save(job_id, None, [b"A"], total_chunks=6, next_chunk_index=2)
        second = await manager.save(job_id, b"A", [b"B"], total_chunks=6, next_chunk_index=4)

        assert first.partial_audio_ref not in memory_store.blobs
        assert memory_store.blobs[second.partial_audio_ref] == b"AB"

    @pytest.mark.asyncio
    async def test_save_retries_failed_write_once(self, job_manager, store_factory):
        store = store_factory(failing_puts=1)
        manager = CheckpointManager(store, job_manager, Mock())
        job_id = processing_job(job_manager)

        checkpoint = await manager.save(job_id, None, [b"A"], total_chunks=3, next_chunk_index=1)

        assert store.put_attempts == 2
        assert store.blobs[checkpoint.partial_audio_ref] == b"A"

    @pytest.mark.asyncio
    async def test_save_gives_up_after_second_failure(self, job_manager, store_factory):
        store = store_factory(failing_puts=2)
        work_queue = Mock()
        manager = CheckpointManager(store, job_manager, work_queue)
        job_id = processing_job(job_manager)

        with pytest.raises(StorageError):
            await manager.save(job_id, None, [b"A"], total_chunks=3, next_chunk_index=1)

        assert job_manager.get_job(job_id).checkpoint is None
        work_queue.submit.assert_not_called()

    @pytest.mark.asyncio
    async def test_save_rejected_after_cancellation(self, job_manager, memory_store):
        work_queue = Mock()
        manager = CheckpointManager(memory_store, job_manager, work_queue)
        job_id = processing_job(job_manager)
        job_manager.cancel_job(job_id)

        with pytest.raises(CheckpointRejected):
            await manager.save(job_id, None, [b"A"], total_chunks=3, next_chunk_index=1)

        assert memory_store.blobs == {}
        work_queue.submit.assert_not_called()


class TestCheckpointManagerHelpers:

    @pytest.mark.asyncio
    async def test_load_partial_and_discard(self, job_manager, memory_store):
        manager = CheckpointManager(memory_store, job_manager, Mock())
        memory_store.blobs["partial/j/a.mp3"] = b"AUDIO"
        checkpoint = Checkpoint(4, 2, "partial/j/a.mp3")

        assert await manager.load_partial("partial/j/a.mp3") == b"AUDIO"

        await manager.discard(checkpoint, "j")
        await manager.discard(None, "j")

        assert memory_store.blobs == {}

    @pytest.mark.asyncio
    async def test_discard_logs_storage_errors(self, job_manager):
        store = Mock()

        async def failing_delete(ref):
            raise StorageError("disk gone")

        store.delete = failing_delete
        manager = CheckpointManager(store, job_manager, Mock())

        await manager.discard(Checkpoint(4, 2, "partial/j/a.mp3"), "j")

    def test_is_stale(self, job_manager, memory_store):
        manager = CheckpointManager(memory_store, job_manager, Mock())
        job_id = processing_job(job_manager)
        job_manager.save_checkpoint(job_id, Checkpoint(10, 4, "partial/j/a.mp3"))
        job = job_manager.get_job(job_id)

        current = JobMessage(job_id, resume_from_chunk_index=4, partial_audio_ref="partial/j/a.mp3")
        superseded = JobMessage(job_id, resume_from_chunk_index=2, partial_audio_ref="partial/j/old.mp3")
        out_of_range = JobMessage(job_id, resume_from_chunk_index=11, partial_audio_ref="partial/j/a.mp3")

        assert manager.is_stale(job, current, 10) is False
        assert manager.is_stale(job, superseded, 10) is True
        assert manager.is_stale(job, out_of_range, 10) is True
        assert manager.is_stale(job, current, 12) is True

    def test_is_stale_without_checkpoint(self, job_manager, memory_store):
        manager = CheckpointManager(memory_store, job_manager, Mock())
        job_id = processing_job(job_manager)
        job = job_manager.get_job(job_id)

        message = JobMessage(job_id, resume_from_chunk_index=1, partial_audio_ref="partial/j/a.mp3")

        assert manager.is_stale(job, message, 3) is True
