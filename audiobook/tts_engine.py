"""
Text-to-speech engine adapters.

This module defines the narrow interface the pipeline uses to turn a chunk
of text into audio, plus the default HTTP implementation that talks to an
OpenAI-compatible ``/v1/audio/speech`` endpoint.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from audiobook.logging_config import get_logger


class SynthesisError(Exception):
    """
    Exception raised when a single TTS request fails.

    Attributes:
        retryable: False when retrying the same request cannot succeed
                   (e.g. the engine rejected the payload or credentials)
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class VoiceConfig:
    """Voice parameters sent with every synthesis request."""
    voice: str = "alloy"
    model: str = "tts-1"
    speaking_rate: float = 1.0
    audio_format: str = "mp3"


class TTSEngine:
    """Base class for text-to-speech backends."""

    async def synthesize(self, text: str, voice: VoiceConfig) -> bytes:
        """
        Synthesize speech for one chunk of text.

        Raises:
            SynthesisError: If the engine fails to produce audio
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release any connections held by the engine."""
        return None


# Client errors that are worth retrying: timeouts and rate limiting
_RETRYABLE_CLIENT_STATUS = {408, 429}


class HttpTTSEngine(TTSEngine):
    """
    TTS engine backed by an OpenAI-compatible speech endpoint.

    One httpx.AsyncClient is shared across all requests of the process so
    concurrent chunk syntheses reuse pooled connections.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout
        )
        self.logger = get_logger(__name__)

    async def synthesize(self, text: str, voice: VoiceConfig) -> bytes:
        if not text.strip():
            raise SynthesisError("Cannot synthesize empty text", retryable=False)

        payload = {
            "model": voice.model,
            "input": text,
            "voice": voice.voice,
            "response_format": voice.audio_format,
            "speed": voice.speaking_rate,
        }

        try:
            resp = await self._client.post("/v1/audio/speech", json=payload)
        except httpx.HTTPError as e:
            raise SynthesisError(f"TTS request failed: {e}") from e

        if resp.status_code >= 400:
            retryable = (
                resp.status_code >= 500 or resp.status_code in _RETRYABLE_CLIENT_STATUS
            )
            raise SynthesisError(
                f"TTS engine returned HTTP {resp.status_code}: {resp.text[:200]}",
                retryable=retryable
            )

        if not resp.content:
            raise SynthesisError("TTS engine returned no audio")

        return resp.content

    async def aclose(self) -> None:
        await self._client.aclose()
