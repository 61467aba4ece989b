"""
Audio assembly for the audiobook pipeline.

This module concatenates per-chunk MP3 buffers into the final artifact,
stores it under a stable reference and determines its playback duration.

Duration is best-effort metadata. It is measured, in order of preference:
1. with ffprobe (through ffmpeg-python) on a temporary copy of the audio
2. by walking the MPEG audio frame headers and summing frame durations
3. by estimating from the narrated text's word count
"""

import asyncio
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import ffmpeg

from audiobook.logging_config import get_logger, log_with_context
from audiobook.storage import BlobStore


# Layer III bitrates in kbps, indexed by the 4-bit bitrate field
_BITRATES_V1 = [0, 32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320]
_BITRATES_V2 = [0, 8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160]

# Sample rates in Hz by version field (0 = MPEG 2.5, 2 = MPEG 2, 3 = MPEG 1)
_SAMPLE_RATES = {
    0: [11025, 12000, 8000],
    2: [22050, 24000, 16000],
    3: [44100, 48000, 32000],
}

_ID3V2_HEADER_SIZE = 10
_ID3V1_TAG_SIZE = 128


class AudioFormatError(Exception):
    """Exception raised when audio data cannot be parsed."""
    pass


@dataclass
class AssembledAudio:
    """
    The stored final audio of a job.

    Attributes:
        audio_ref: Blob reference of the artifact
        size_bytes: Size of the artifact
        duration_seconds: Playback duration, None if it could not be determined
        duration_source: How the duration was obtained (ffprobe, frames, estimate)
    """
    audio_ref: str
    size_bytes: int
    duration_seconds: Optional[float] = None
    duration_source: Optional[str] = None


def _parse_frame_header(header: bytes) -> Optional[tuple]:
    """
    Decode a 4-byte MPEG Layer III frame header.

    Returns:
        (frame_length, samples_per_frame, sample_rate), or None if the bytes
        are not a valid Layer III header
    """
    b1, b2 = header[1], header[2]
    if header[0] != 0xFF or (b1 & 0xE0) != 0xE0:
        return None

    version = (b1 >> 3) & 0x03
    layer = (b1 >> 1) & 0x03
    bitrate_index = b2 >> 4
    sample_rate_index = (b2 >> 2) & 0x03
    padding = (b2 >> 1) & 0x01

    if version == 1 or layer != 1:
        return None
    if bitrate_index in (0, 15) or sample_rate_index == 3:
        return None

    sample_rate = _SAMPLE_RATES[version][sample_rate_index]
    if version == 3:
        bitrate = _BITRATES_V1[bitrate_index] * 1000
        samples = 1152
        frame_length = 144 * bitrate // sample_rate + padding
    else:
        bitrate = _BITRATES_V2[bitrate_index] * 1000
        samples = 576
        frame_length = 72 * bitrate // sample_rate + padding

    return frame_length, samples, sample_rate


def _id3v2_size(data: bytes, pos: int) -> int:
    """Total size of an ID3v2 tag starting at pos, including header and footer."""
    header = data[pos:pos + _ID3V2_HEADER_SIZE]
    if len(header) < _ID3V2_HEADER_SIZE:
        return len(data) - pos
    size = (
        (header[6] & 0x7F) << 21
        | (header[7] & 0x7F) << 14
        | (header[8] & 0x7F) << 7
        | (header[9] & 0x7F)
    )
    footer = _ID3V2_HEADER_SIZE if header[5] & 0x10 else 0
    return _ID3V2_HEADER_SIZE + size + footer


def mp3_frames_duration(data: bytes) -> float:
    """
    Compute MP3 playback duration by walking frame headers.

    ID3v2 tags are skipped wherever they occur, since concatenated chunk
    buffers may each carry their own tag. Bytes that do not start a valid
    frame are skipped one at a time until the stream resynchronizes.

    Args:
        data: MP3 audio bytes

    Returns:
        Duration in seconds

    Raises:
        AudioFormatError: If no MPEG Layer III frame is found
    """
    pos = 0
    total = 0.0
    frames = 0
    end = len(data)

    while pos + 4 <= end:
        if data[pos:pos + 3] == b"ID3":
            pos += _id3v2_size(data, pos)
            continue
        if data[pos:pos + 3] == b"TAG" and end - pos == _ID3V1_TAG_SIZE:
            break

        parsed = _parse_frame_header(data[pos:pos + 4])
        if parsed is None or parsed[0] <= 4:
            pos += 1
            continue

        frame_length, samples, sample_rate = parsed
        total += samples / sample_rate
        frames += 1
        pos += frame_length

    if frames == 0:
        raise AudioFormatError("No MPEG Layer III frames found")

    return total


class Assembler:
    """
    Concatenates chunk audio and stores the final artifact.

    The assembler never writes job state; the job runner records the
    returned reference and duration.

    Attributes:
        store: Blob store for the final artifact
        words_per_minute: Narration speed for text-based estimates
    """

    def __init__(self, store: BlobStore, words_per_minute: int = 150):
        self.store = store
        self.words_per_minute = words_per_minute
        self.logger = get_logger(__name__)

    @staticmethod
    def final_key(job_id: str) -> str:
        return f"audiobooks/{job_id}.mp3"

    async def assemble(
        self,
        job_id: str,
        buffers: List[bytes],
        prefix: Optional[bytes] = None,
        text: Optional[str] = None
    ) -> AssembledAudio:
        """
        Concatenate audio in chunk order and store it.

        Args:
            job_id: Job the audio belongs to
            buffers: Per-chunk audio in index order
            prefix: Audio from earlier attempts, prepended as-is
            text: Full narrated text, used only for a duration estimate

        Returns:
            AssembledAudio with the stored reference and duration

        Raises:
            ValueError: If there is no audio to assemble
            StorageError: If the artifact cannot be stored
        """
        data = (prefix or b"") + b"".join(buffers)
        if not data:
            raise ValueError("No audio to assemble")

        audio_ref = await self.store.put(data, self.final_key(job_id))
        duration, source = await self.measure_duration(data, text)

        log_with_context(
            self.logger,
            "info",
            "Audio assembled",
            job_id=job_id,
            audio_ref=audio_ref,
            size_bytes=len(data),
            duration_seconds=duration,
            duration_source=source
        )

        return AssembledAudio(
            audio_ref=audio_ref,
            size_bytes=len(data),
            duration_seconds=duration,
            duration_source=source
        )

    async def measure_duration(
        self,
        data: bytes,
        text: Optional[str] = None
    ) -> tuple:
        """
        Determine the playback duration of MP3 data.

        Returns:
            (duration_seconds, source), where source is "ffprobe", "frames"
            or "estimate"; (None, None) if nothing worked
        """
        duration = await asyncio.to_thread(self._probe_duration, data)
        if duration:
            return round(duration, 2), "ffprobe"

        try:
            return round(mp3_frames_duration(data), 2), "frames"
        except AudioFormatError as e:
            self.logger.warning(f"Frame-header duration failed: {e}")

        if text:
            return self.estimate_duration(text), "estimate"

        return None, None

    def estimate_duration(self, text: str) -> float:
        """
        Estimate narration length from word count.

        Example:
            >>> Assembler(store, words_per_minute=150).estimate_duration("word " * 300)
            120.0
        """
        words = len(text.split())
        return round(words / self.words_per_minute * 60, 2)

    def _probe_duration(self, data: bytes) -> Optional[float]:
        """Run ffprobe on a temporary copy of the audio."""
        temp_fd, temp_path = tempfile.mkstemp(suffix=".mp3", prefix="audiobook_")
        temp_file = Path(temp_path)
        try:
            with os.fdopen(temp_fd, "wb") as f:
                f.write(data)

            info = ffmpeg.probe(str(temp_file))
            duration = float(info["format"]["duration"])
            return duration if duration > 0 else None

        except ffmpeg.Error as e:
            error_message = e.stderr.decode(errors="replace") if e.stderr else str(e)
            self.logger.debug(f"ffprobe failed: {error_message.strip()}")
            return None
        except (OSError, KeyError, ValueError) as e:
            # ffprobe missing or output without a duration
            self.logger.debug(f"ffprobe unavailable: {e}")
            return None
        finally:
            if temp_file.exists():
                temp_file.unlink()
