"""
Construction of external clients from settings.

The pipeline receives its collaborators already built. ClientProvider
creates them once per process from the configured backends so that
connection pools are shared and tests can substitute any of them.
"""

from typing import Optional

from audiobook.config import ExtractorBackend, Settings, TTSBackend
from audiobook.logging_config import get_logger
from audiobook.storage import BlobStore, LocalBlobStore
from audiobook.text_extractor import DocumentSource, PyMuPDFExtractor, TextExtractor
from audiobook.tts_engine import HttpTTSEngine, TTSEngine, VoiceConfig


class ClientProvider:
    """
    Lazily builds and caches the clients used by the pipeline.

    Attributes:
        settings: Settings the clients are built from
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.logger = get_logger(__name__)
        self._tts_engine: Optional[TTSEngine] = None
        self._blob_store: Optional[BlobStore] = None
        self._extractor: Optional[TextExtractor] = None
        self._document_source: Optional[DocumentSource] = None

    @property
    def tts_engine(self) -> TTSEngine:
        if self._tts_engine is None:
            if self.settings.tts_backend == TTSBackend.HTTP:
                self._tts_engine = HttpTTSEngine(
                    base_url=self.settings.tts_api_url,
                    api_key=self.settings.tts_api_key,
                    timeout=self.settings.tts_request_timeout_seconds
                )
            else:
                raise ValueError(f"Unsupported TTS backend: {self.settings.tts_backend}")
            self.logger.info(
                f"TTS engine ready: {self.settings.tts_backend.value} at {self.settings.tts_api_url}"
            )
        return self._tts_engine

    @property
    def blob_store(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = LocalBlobStore(self.settings.storage_dir)
        return self._blob_store

    @property
    def extractor(self) -> TextExtractor:
        if self._extractor is None:
            if self.settings.extractor_backend == ExtractorBackend.PYMUPDF:
                self._extractor = PyMuPDFExtractor()
            else:
                raise ValueError(
                    f"Unsupported extractor backend: {self.settings.extractor_backend}"
                )
        return self._extractor

    @property
    def document_source(self) -> DocumentSource:
        if self._document_source is None:
            self._document_source = DocumentSource(
                document_root=self.settings.document_root,
                timeout=self.settings.document_fetch_timeout_seconds
            )
        return self._document_source

    def voice(self) -> VoiceConfig:
        return VoiceConfig(
            voice=self.settings.tts_voice,
            model=self.settings.tts_model,
            speaking_rate=self.settings.tts_speaking_rate
        )

    async def aclose(self) -> None:
        """Close network clients that were created."""
        if self._tts_engine is not None:
            await self._tts_engine.aclose()
            self._tts_engine = None
