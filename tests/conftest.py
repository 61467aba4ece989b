"""
Shared fixtures for the audiobook test suite.

Provides a scriptable in-process TTS engine, an in-memory blob store and
synthetic MP3 audio so pipeline tests run without network or disk access.
"""

import asyncio
from typing import Callable, Dict, List, Optional

import pytest

from audiobook.job_manager import JobManager
from audiobook.storage import BlobStore, StorageError
from audiobook.tts_engine import TTSEngine, VoiceConfig


# MPEG-1 Layer III, 128 kbps, 44.1 kHz, no padding: 417-byte frames of 1152 samples
MP3_FRAME_HEADER = bytes([0xFF, 0xFB, 0x90, 0x00])
MP3_FRAME_SIZE = 417
FRAMES_PER_SECOND = 38


def make_mp3(seconds: float = 1.0) -> bytes:
    """Build silent constant-bitrate MP3 data of roughly the given length."""
    frame = MP3_FRAME_HEADER + bytes(MP3_FRAME_SIZE - len(MP3_FRAME_HEADER))
    return frame * int(round(seconds * FRAMES_PER_SECOND))


class FakeTTSEngine(TTSEngine):
    """
    TTS engine double.

    By default returns the UTF-8 bytes of the text, so concatenated output
    reveals chunk order. ``failures`` is consumed one entry per call; an
    exception entry is raised, None lets the call succeed.
    """

    def __init__(
        self,
        audio: Optional[Callable[[str], bytes]] = None,
        failures: Optional[List[Optional[Exception]]] = None,
        delay: Optional[Callable[[str], float]] = None
    ):
        self.audio = audio
        self.failures = list(failures or [])
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def synthesize(self, text: str, voice: VoiceConfig) -> bytes:
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay(text) if self.delay else 0)
            if self.failures:
                failure = self.failures.pop(0)
                if failure is not None:
                    raise failure
            return self.audio(text) if self.audio else text.encode("utf-8")
        finally:
            self.in_flight -= 1

    async def aclose(self) -> None:
        self.closed = True


class MemoryBlobStore(BlobStore):
    """Blob store keeping artifacts in a dict; can be told to fail writes."""

    def __init__(self, failing_puts: int = 0):
        self.blobs: Dict[str, bytes] = {}
        self.failing_puts = failing_puts
        self.put_attempts = 0

    async def put(self, data: bytes, key: str) -> str:
        self.put_attempts += 1
        if self.failing_puts > 0:
            self.failing_puts -= 1
            raise StorageError(f"Simulated write failure for {key}")
        self.blobs[key] = data
        return key

    async def get(self, ref: str) -> bytes:
        if ref not in self.blobs:
            raise StorageError(f"Blob not found: {ref}")
        return self.blobs[ref]

    async def delete(self, ref: str) -> None:
        self.blobs.pop(ref, None)


@pytest.fixture
def job_manager():
    """Fresh JobManager for each test."""
    return JobManager()


@pytest.fixture
def memory_store():
    return MemoryBlobStore()


@pytest.fixture
def fake_engine():
    return FakeTTSEngine()


@pytest.fixture
def engine_factory():
    """Factory for engines with scripted failures, delays or audio."""
    return FakeTTSEngine


@pytest.fixture
def store_factory():
    return MemoryBlobStore


@pytest.fixture
def mp3_audio():
    """Factory building synthetic MP3 data of a given duration."""
    return make_mp3
