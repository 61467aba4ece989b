"""
Unit tests for the HTTP text-to-speech engine.

Requests are served by httpx.MockTransport so no TTS server is needed.
"""

import json

import httpx
import pytest

from audiobook.tts_engine import HttpTTSEngine, SynthesisError, VoiceConfig


def engine_with(handler):
    client = httpx.AsyncClient(
        base_url="http://tts.local",
        transport=httpx.MockTransport(handler)
    )
    return HttpTTSEngine("http://tts.local", client=client)


class TestHttpTTSEngine:

    @pytest.mark.asyncio
    async def test_posts_openai_compatible_payload(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"ID3audio")

        engine = engine_with(handler)
        voice = VoiceConfig(voice="nova", model="tts-1-hd", speaking_rate=1.25)

        audio = await engine.synthesize("Call me Ishmael.", voice)
        await engine.aclose()

        assert audio == b"ID3audio"
        assert seen["path"] == "/v1/audio/speech"
        assert seen["body"] == {
            "model": "tts-1-hd",
            "input": "Call me Ishmael.",
            "voice": "nova",
            "response_format": "mp3",
            "speed": 1.25,
        }

    def test_api_key_sent_as_bearer_token(self):
        engine = HttpTTSEngine("http://tts.local/", api_key="secret")

        assert engine.base_url == "http://tts.local"
        assert engine._client.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_empty_text_is_not_retryable(self):
        engine = engine_with(lambda request: httpx.Response(200, content=b"x"))

        with pytest.raises(SynthesisError) as exc_info:
            await engine.synthesize("   ", VoiceConfig())

        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [
        (400, False),
        (401, False),
        (408, True),
        (429, True),
        (500, True),
        (503, True),
    ])
    async def test_http_errors(self, status, retryable):
        engine = engine_with(lambda request: httpx.Response(status, text="nope"))

        with pytest.raises(SynthesisError, match=f"HTTP {status}") as exc_info:
            await engine.synthesize("Hello.", VoiceConfig())

        assert exc_info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        engine = engine_with(handler)

        with pytest.raises(SynthesisError) as exc_info:
            await engine.synthesize("Hello.", VoiceConfig())

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_empty_audio_is_retryable(self):
        engine = engine_with(lambda request: httpx.Response(200, content=b""))

        with pytest.raises(SynthesisError, match="no audio") as exc_info:
            await engine.synthesize("Hello.", VoiceConfig())

        assert exc_info.value.retryable is True
