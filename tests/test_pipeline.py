"""
Tests for the audiobook job runner.

Covers the full extraction, synthesis and assembly flow, failure and
cancellation handling, and suspension at the time budget followed by
resumption from a checkpoint.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import fitz
import pytest

from audiobook.assembler import Assembler
from audiobook.batcher import BatchResult, SynthesisBatcher
from audiobook.checkpoint import CheckpointManager, TimeoutSignal
from audiobook.config import Settings
from audiobook.chunker import split_text_into_chunks
from audiobook.models import CANCELLATION_MESSAGE, Checkpoint, JobStatus
from audiobook.pipeline import AudiobookPipeline
from audiobook.providers import ClientProvider
from audiobook.text_extractor import (
    DocumentSource,
    ExtractionError,
    PyMuPDFExtractor,
    TextExtractor,
)
from audiobook.tts_engine import SynthesisError
from audiobook.work_queue import JobMessage, WorkQueue


# 120 sentences of 100 bytes: a little over 12 KB of text
LONG_TEXT = " ".join(["a" * 99 + "."] * 120)
SHORT_TEXT = " ".join(f"Sentence {n} of the tale is told." for n in range(12))


class StaticSource(DocumentSource):
    async def read(self, ref):
        return b"%PDF-stub"


class StaticExtractor(TextExtractor):
    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error

    def extract(self, data):
        if self.error:
            raise self.error
        return self.text


def build_pipeline(
    job_manager,
    store,
    engine,
    text=SHORT_TEXT,
    extractor=None,
    source=None,
    work_queue=None,
    concurrency=3,
    max_chunk_bytes=5000,
    time_budget_seconds=0.0,
    safety_margin_seconds=0.0
):
    work_queue = work_queue or WorkQueue()
    batcher = SynthesisBatcher(
        engine,
        job_manager,
        concurrency_small_document=concurrency,
        concurrency_large_document=concurrency
    )
    pipeline = AudiobookPipeline(
        job_manager=job_manager,
        source=source or StaticSource(),
        extractor=extractor or StaticExtractor(text),
        batcher=batcher,
        checkpoints=CheckpointManager(store, job_manager, work_queue, resume_delay_seconds=0),
        assembler=Assembler(store),
        max_chunk_bytes=max_chunk_bytes,
        time_budget_seconds=time_budget_seconds,
        safety_margin_seconds=safety_margin_seconds
    )
    if work_queue.handler is None:
        work_queue.handler = pipeline.run
    return pipeline


@patch.object(Assembler, "_probe_duration", return_value=None)
class TestPipelineRun:

    @pytest.mark.asyncio
    async def test_twelve_kilobytes_become_three_second_audiobook(
        self, mock_probe, job_manager, memory_store, engine_factory, mp3_audio
    ):
        engine = engine_factory(audio=lambda text: mp3_audio(1))
        pipeline = build_pipeline(job_manager, memory_store, engine, text=LONG_TEXT)
        job_id = job_manager.create_job("books/long.pdf")

        await pipeline.run(JobMessage(job_id))

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.audio_ref == f"audiobooks/{job_id}.mp3"
        assert job.duration_seconds == pytest.approx(3.0, abs=0.05)
        assert len(engine.calls) == 3
        assert memory_store.blobs[job.audio_ref] == mp3_audio(1) * 3

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_hits_milestones(
        self, mock_probe, job_manager, memory_store, fake_engine
    ):
        pipeline = build_pipeline(job_manager, memory_store, fake_engine, max_chunk_bytes=60)
        job_id = job_manager.create_job("book.pdf")
        events = job_manager.subscribe(job_id)

        await pipeline.run(JobMessage(job_id))
        await asyncio.sleep(0)

        values = []
        while not events.empty():
            values.append(events.get_nowait().progress)

        assert values == sorted(values)
        assert {5, 20, 40, 90, 95, 100} <= set(values)
        assert values[-1] == 100

    @pytest.mark.asyncio
    async def test_chunks_assembled_in_order(self, mock_probe, job_manager, memory_store, engine_factory):
        engine = engine_factory(delay=lambda text: 0.01 if "Sentence 0 " in text else 0)
        pipeline = build_pipeline(job_manager, memory_store, engine, max_chunk_bytes=60)
        job_id = job_manager.create_job("book.pdf")

        await pipeline.run(JobMessage(job_id))

        chunks = split_text_into_chunks(SHORT_TEXT, 60)
        job = job_manager.get_job(job_id)
        assert memory_store.blobs[job.audio_ref] == "".join(chunks).encode()

    @pytest.mark.asyncio
    async def test_synthesis_failure_fails_job(self, mock_probe, job_manager, memory_store, engine_factory):
        engine = engine_factory(failures=[SynthesisError("HTTP 401: bad key", retryable=False)])
        pipeline = build_pipeline(job_manager, memory_store, engine, concurrency=1)
        job_id = job_manager.create_job("book.pdf")

        await pipeline.run(JobMessage(job_id))

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert "bad key" in job.error_message
        assert job.audio_ref is None
        assert memory_store.blobs == {}

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, mock_probe, job_manager, memory_store, engine_factory):
        engine = engine_factory(failures=[SynthesisError("busy"), SynthesisError("busy")])
        pipeline = build_pipeline(job_manager, memory_store, engine, concurrency=1)
        job_id = job_manager.create_job("book.pdf")

        await pipeline.run(JobMessage(job_id))

        assert job_manager.get_job(job_id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_three_consecutive_failures_fail_job(
        self, mock_probe, job_manager, memory_store, engine_factory
    ):
        engine = engine_factory(failures=[SynthesisError("busy")] * 3)
        pipeline = build_pipeline(job_manager, memory_store, engine, concurrency=1)
        job_id = job_manager.create_job("book.pdf")

        await pipeline.run(JobMessage(job_id))

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert "3 consecutive" in job.error_message

    @pytest.mark.asyncio
    async def test_extraction_failure_fails_job(self, mock_probe, job_manager, memory_store, fake_engine):
        extractor = StaticExtractor(error=ExtractionError("No extractable text found in document"))
        pipeline = build_pipeline(job_manager, memory_store, fake_engine, extractor=extractor)
        job_id = job_manager.create_job("scanned.pdf")

        await pipeline.run(JobMessage(job_id))

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "No extractable text found in document"
        assert fake_engine.calls == []

    @pytest.mark.asyncio
    async def test_cancellation_during_synthesis(self, mock_probe, job_manager, memory_store, engine_factory):
        job_id = job_manager.create_job("book.pdf")
        chunks = split_text_into_chunks(SHORT_TEXT, 60)

        def audio(text):
            if text == chunks[1]:
                job_manager.cancel_job(job_id)
            return text.encode()

        engine = engine_factory(audio=audio)
        pipeline = build_pipeline(job_manager, memory_store, engine, concurrency=1, max_chunk_bytes=60)

        await pipeline.run(JobMessage(job_id))

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == CANCELLATION_MESSAGE
        assert job.progress == 0
        assert len(engine.calls) == 2
        assert memory_store.blobs == {}

    @pytest.mark.asyncio
    async def test_cancel_then_retry_stops_previous_attempt(
        self, mock_probe, job_manager, memory_store, engine_factory
    ):
        job_id = job_manager.create_job("book.pdf")
        chunks = split_text_into_chunks(SHORT_TEXT, 60)

        def audio(text):
            if text == chunks[1]:
                job_manager.cancel_job(job_id)
                job_manager.reset_for_retry(job_id)
            return text.encode()

        engine = engine_factory(audio=audio)
        pipeline = build_pipeline(job_manager, memory_store, engine, concurrency=1, max_chunk_bytes=60)

        await pipeline.run(JobMessage(job_id))

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.error_message is None
        assert len(engine.calls) == 2
        assert memory_store.blobs == {}

    @pytest.mark.asyncio
    async def test_cancellation_during_assembly_removes_artifact(
        self, mock_probe, job_manager, memory_store, fake_engine
    ):
        pipeline = build_pipeline(job_manager, memory_store, fake_engine)
        job_id = job_manager.create_job("book.pdf")
        assemble = pipeline.assembler.assemble

        async def assemble_then_cancel(*args, **kwargs):
            result = await assemble(*args, **kwargs)
            job_manager.cancel_job(job_id)
            return result

        pipeline.assembler.assemble = assemble_then_cancel

        await pipeline.run(JobMessage(job_id))

        job = job_manager.get_job(job_id)
        assert job.is_cancelled
        assert job.audio_ref is None
        assert memory_store.blobs == {}

    @pytest.mark.asyncio
    async def test_cancelled_before_start_is_dropped(self, mock_probe, job_manager, memory_store, fake_engine):
        pipeline = build_pipeline(job_manager, memory_store, fake_engine)
        job_id = job_manager.create_job("book.pdf")
        job_manager.cancel_job(job_id)

        await pipeline.run(JobMessage(job_id))

        assert job_manager.get_job(job_id).is_cancelled
        assert fake_engine.calls == []

    @pytest.mark.asyncio
    async def test_unknown_job_is_dropped(self, mock_probe, job_manager, memory_store, fake_engine):
        pipeline = build_pipeline(job_manager, memory_store, fake_engine)

        await pipeline.run(JobMessage("missing"))

        assert fake_engine.calls == []


@patch.object(Assembler, "_probe_duration", return_value=None)
class TestCheckpointResume:

    @pytest.mark.asyncio
    async def test_resumed_output_matches_uninterrupted_run(
        self, mock_probe, job_manager, memory_store, engine_factory
    ):
        """Suspending at the budget and resuming yields the same audio."""
        chunks = split_text_into_chunks(SHORT_TEXT, 60)
        engine = engine_factory(delay=lambda text: 0.02)
        work_queue = WorkQueue(max_workers=2)
        pipeline = build_pipeline(
            job_manager,
            memory_store,
            engine,
            work_queue=work_queue,
            concurrency=1,
            max_chunk_bytes=60,
            time_budget_seconds=0.05
        )
        await work_queue.start()
        job_id = job_manager.create_job("book.pdf")
        events = job_manager.subscribe(job_id)

        work_queue.submit(JobMessage(job_id))
        await asyncio.wait_for(work_queue.wait_idle(), timeout=10)
        await work_queue.stop()

        snapshots = []
        while not events.empty():
            snapshots.append(events.get_nowait())

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempt == 1
        assert job.checkpoint is None
        assert memory_store.blobs[job.audio_ref] == "".join(chunks).encode()
        assert engine.calls == chunks
        assert any(s.checkpoint is not None for s in snapshots)
        assert [s.progress for s in snapshots] == sorted(s.progress for s in snapshots)
        assert not [ref for ref in memory_store.blobs if ref.startswith("partial/")]

    @pytest.mark.asyncio
    async def test_stale_continuation_is_ignored(self, mock_probe, job_manager, memory_store, fake_engine):
        chunks = split_text_into_chunks(SHORT_TEXT, 60)
        pipeline = build_pipeline(job_manager, memory_store, fake_engine, max_chunk_bytes=60)
        job_id = job_manager.create_job("book.pdf")
        job_manager.start_processing(job_id)
        job_manager.save_checkpoint(job_id, Checkpoint(len(chunks), 2, "partial/current.mp3"))

        await pipeline.run(JobMessage(job_id, resume_from_chunk_index=1, partial_audio_ref="partial/old.mp3"))

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.PROCESSING
        assert job.checkpoint.partial_audio_ref == "partial/current.mp3"
        assert fake_engine.calls == []

    @pytest.mark.asyncio
    async def test_failed_resume_discards_partial_audio(
        self, mock_probe, job_manager, memory_store, engine_factory
    ):
        chunks = split_text_into_chunks(SHORT_TEXT, 60)
        engine = engine_factory(failures=[SynthesisError("rejected", retryable=False)])
        pipeline = build_pipeline(job_manager, memory_store, engine, max_chunk_bytes=60)
        job_id = job_manager.create_job("book.pdf")
        job_manager.start_processing(job_id)
        job_manager.save_checkpoint(job_id, Checkpoint(len(chunks), 1, "partial/a.mp3"))
        memory_store.blobs["partial/a.mp3"] = chunks[0].encode()

        await pipeline.run(JobMessage(job_id, resume_from_chunk_index=1, partial_audio_ref="partial/a.mp3"))

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.checkpoint is None
        assert "partial/a.mp3" not in memory_store.blobs

    @pytest.mark.asyncio
    async def test_changed_chunk_count_fails_resume(self, mock_probe, job_manager, memory_store, fake_engine):
        pipeline = build_pipeline(job_manager, memory_store, fake_engine, max_chunk_bytes=60)
        job_id = job_manager.create_job("book.pdf")
        job_manager.start_processing(job_id)
        job_manager.save_checkpoint(job_id, Checkpoint(999, 1, "partial/a.mp3"))
        memory_store.blobs["partial/a.mp3"] = b"x"

        await pipeline.run(JobMessage(job_id, resume_from_chunk_index=1, partial_audio_ref="partial/a.mp3"))

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert "chunks" in job.error_message

    @pytest.mark.asyncio
    async def test_budget_counts_document_fetch(self, mock_probe, job_manager, memory_store, engine_factory):
        class SlowSource(DocumentSource):
            async def read(self, ref):
                await asyncio.sleep(0.2)
                return b"%PDF-stub"

        chunks = split_text_into_chunks(SHORT_TEXT, 60)
        engine = engine_factory(delay=lambda text: 0.05)
        work_queue = Mock()
        pipeline = build_pipeline(
            job_manager,
            memory_store,
            engine,
            source=SlowSource(),
            work_queue=work_queue,
            concurrency=1,
            max_chunk_bytes=60,
            time_budget_seconds=0.6,
            safety_margin_seconds=0.2
        )
        job_id = job_manager.create_job("book.pdf")

        loop = asyncio.get_running_loop()
        started = loop.time()
        await pipeline.run(JobMessage(job_id))
        elapsed = loop.time() - started

        job = job_manager.get_job(job_id)
        assert elapsed < 0.6
        assert job.status == JobStatus.PROCESSING
        assert 0 < job.checkpoint.next_chunk_index < len(chunks)
        work_queue.submit.assert_called_once()


class TestSynthesizeOutcomes:

    def pipeline_with_batcher(self, job_manager, memory_store, result):
        batcher = Mock()
        batcher.synthesize = AsyncMock(return_value=result)
        return AudiobookPipeline(
            job_manager=job_manager,
            source=StaticSource(),
            extractor=StaticExtractor(SHORT_TEXT),
            batcher=batcher,
            checkpoints=CheckpointManager(memory_store, job_manager, Mock()),
            assembler=Assembler(memory_store)
        )

    @pytest.mark.asyncio
    async def test_partial_result_raises_timeout_signal(self, job_manager, memory_store):
        result = BatchResult(buffers=[b"a", b"b"], start_index=0, next_index=2, total_chunks=5, stopped_early=True)
        pipeline = self.pipeline_with_batcher(job_manager, memory_store, result)

        with pytest.raises(TimeoutSignal) as exc_info:
            await pipeline._synthesize("job", ["c"] * 5, 0)

        assert exc_info.value.next_index == 2
        assert exc_info.value.buffers == [b"a", b"b"]

    @pytest.mark.asyncio
    async def test_no_progress_before_deadline_is_an_error(self, job_manager, memory_store):
        result = BatchResult(start_index=3, next_index=3, total_chunks=5, stopped_early=True)
        pipeline = self.pipeline_with_batcher(job_manager, memory_store, result)

        with pytest.raises(RuntimeError, match="Time budget expired"):
            await pipeline._synthesize("job", ["c"] * 5, 3)


class TestFromSettings:

    def test_wires_settings_into_components(self, job_manager):
        settings = Settings(_env_file=None, MAX_CHUNK_BYTES=800, CONCURRENCY_SMALL_DOCUMENT=7)
        provider = ClientProvider(settings)

        pipeline = AudiobookPipeline.from_settings(settings, job_manager, WorkQueue(), provider)

        assert pipeline.max_chunk_bytes == 800
        assert pipeline.batcher.concurrency_small_document == 7
        assert pipeline.progress_range == (40, 90)
        assert isinstance(pipeline.extractor, PyMuPDFExtractor)


@pytest.mark.slow
class TestRealDocument:

    @pytest.mark.asyncio
    @patch.object(Assembler, "_probe_duration", return_value=None)
    async def test_pdf_to_audio(self, mock_probe, tmp_path, job_manager, memory_store, engine_factory, mp3_audio):
        document = fitz.open()
        for n in range(3):
            page = document.new_page()
            page.insert_text((72, 72), f"Page {n} begins here. It has two sentences.")
        (tmp_path / "book.pdf").write_bytes(document.tobytes())
        document.close()

        engine = engine_factory(audio=lambda text: mp3_audio(1))
        pipeline = build_pipeline(
            job_manager,
            memory_store,
            engine,
            extractor=PyMuPDFExtractor(),
            source=DocumentSource(document_root=str(tmp_path)),
            max_chunk_bytes=50
        )
        job_id = job_manager.create_job("book.pdf")

        await pipeline.run(JobMessage(job_id))

        job = job_manager.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.duration_seconds == pytest.approx(len(engine.calls) * 0.993, abs=0.05)
        assert "Page 0 begins here." in engine.calls[0]
