"""
Configuration management for the PDF Audiobook API.

This module provides configuration settings for the audiobook pipeline,
including TTS engine access, chunking limits, synthesis concurrency,
time budget checkpointing, storage and other operational parameters.

Uses Pydantic Settings for robust environment variable management with
validation and type safety.
"""

from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TTSBackend(str, Enum):
    """Supported text-to-speech engine backends."""
    HTTP = "http"


class ExtractorBackend(str, Enum):
    """Supported PDF text extraction backends."""
    PYMUPDF = "pymupdf"


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Configuration settings for the audiobook service.

    All settings can be overridden using environment variables.
    Pydantic Settings provides automatic validation and type conversion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        populate_by_name=True
    )

    # TTS engine configuration
    tts_backend: TTSBackend = Field(
        default=TTSBackend.HTTP,
        description="Text-to-speech engine backend",
        alias="TTS_BACKEND"
    )

    tts_api_url: str = Field(
        default="http://localhost:8880",
        description="Base URL of the OpenAI-compatible speech endpoint",
        alias="TTS_API_URL"
    )

    tts_api_key: str = Field(
        default="",
        description="Bearer token sent to the TTS engine (empty for none)",
        alias="TTS_API_KEY"
    )

    tts_model: str = Field(
        default="tts-1",
        description="Model name passed to the TTS engine",
        alias="TTS_MODEL"
    )

    tts_voice: str = Field(
        default="alloy",
        description="Voice used for narration",
        alias="TTS_VOICE"
    )

    tts_speaking_rate: float = Field(
        default=1.0,
        ge=0.25,
        le=4.0,
        description="Speaking rate multiplier",
        alias="TTS_SPEAKING_RATE"
    )

    tts_request_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for a single TTS request",
        alias="TTS_REQUEST_TIMEOUT_SECONDS"
    )

    # Document extraction configuration
    extractor_backend: ExtractorBackend = Field(
        default=ExtractorBackend.PYMUPDF,
        description="PDF text extraction backend",
        alias="EXTRACTOR_BACKEND"
    )

    document_root: str = Field(
        default=".",
        description="Base directory for relative local document references",
        alias="DOCUMENT_ROOT"
    )

    document_fetch_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for fetching remote documents",
        alias="DOCUMENT_FETCH_TIMEOUT_SECONDS"
    )

    # Chunking configuration
    max_chunk_bytes: int = Field(
        default=5000,
        ge=16,
        le=100_000,
        description="Maximum UTF-8 byte size of a single TTS request",
        alias="MAX_CHUNK_BYTES"
    )

    chunk_fill_ratio: float = Field(
        default=0.75,
        gt=0,
        le=1,
        description="Fill level at which an overflowing chunk is flushed as-is",
        alias="CHUNK_FILL_RATIO"
    )

    # Synthesis batching configuration
    concurrency_small_document: int = Field(
        default=5,
        ge=1,
        le=64,
        description="Concurrent TTS calls for small documents",
        alias="CONCURRENCY_SMALL_DOCUMENT"
    )

    concurrency_large_document: int = Field(
        default=3,
        ge=1,
        le=64,
        description="Concurrent TTS calls for large documents",
        alias="CONCURRENCY_LARGE_DOCUMENT"
    )

    large_document_chunks: int = Field(
        default=20,
        ge=1,
        description="Chunk count above which a document counts as large",
        alias="LARGE_DOCUMENT_CHUNKS"
    )

    inter_batch_delay_seconds: float = Field(
        default=0.0,
        ge=0,
        le=60,
        description="Pause between concurrency waves",
        alias="INTER_BATCH_DELAY_SECONDS"
    )

    retry_shrink_ratio: float = Field(
        default=0.8,
        gt=0,
        lt=1,
        description="Fraction of chunk text kept when retrying a failed synthesis",
        alias="RETRY_SHRINK_RATIO"
    )

    max_consecutive_failures: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Consecutive synthesis failures that abort a job",
        alias="MAX_CONSECUTIVE_FAILURES"
    )

    # Progress mapping
    progress_synthesis_start: int = Field(
        default=40,
        ge=0,
        le=100,
        description="Progress value at the start of synthesis",
        alias="PROGRESS_SYNTHESIS_START"
    )

    progress_synthesis_end: int = Field(
        default=90,
        ge=0,
        le=100,
        description="Progress value once every chunk is synthesized",
        alias="PROGRESS_SYNTHESIS_END"
    )

    # Time budget / checkpointing
    time_budget_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Soft wall-clock budget per attempt (0 disables checkpointing)",
        alias="TIME_BUDGET_SECONDS"
    )

    safety_margin_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Time reserved before the budget expires for checkpointing",
        alias="SAFETY_MARGIN_SECONDS"
    )

    resume_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        le=300,
        description="Delay before a checkpointed job is picked up again",
        alias="RESUME_DELAY_SECONDS"
    )

    # Storage configuration
    storage_dir: str = Field(
        default="./data/artifacts",
        description="Directory used by the local blob store",
        alias="STORAGE_DIR"
    )

    # Assembly configuration
    words_per_minute: int = Field(
        default=150,
        ge=50,
        le=400,
        description="Narration speed used for word-count duration estimates",
        alias="WORDS_PER_MINUTE"
    )

    duration_tolerance_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Difference below which reported durations are ignored",
        alias="DURATION_TOLERANCE_SECONDS"
    )

    # Job queue configuration
    max_concurrent_jobs: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum number of jobs processed at the same time",
        alias="MAX_CONCURRENT_JOBS"
    )

    max_queue_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum number of jobs that can be queued",
        alias="MAX_QUEUE_SIZE"
    )

    job_cleanup_max_age_hours: int = Field(
        default=24,
        ge=1,
        le=720,  # 30 days max
        description="Maximum age of finished jobs before cleanup (in hours)",
        alias="JOB_CLEANUP_MAX_AGE_HOURS"
    )

    # API configuration
    api_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port to expose the API",
        alias="API_PORT"
    )

    api_host: str = Field(
        default="0.0.0.0",
        description="API host address",
        alias="API_HOST"
    )

    # Logging configuration
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level",
        alias="LOG_LEVEL"
    )

    @field_validator("progress_synthesis_end")
    @classmethod
    def validate_progress_range(cls, v: int, info) -> int:
        """Ensure the synthesis progress range is not empty."""
        start = info.data.get("progress_synthesis_start", 40)
        if v <= start:
            raise ValueError(
                f"progress_synthesis_end ({v}) must be > progress_synthesis_start ({start})"
            )
        return v

    def get_progress_range(self) -> tuple[int, int]:
        """Get the synthesis progress sub-range as (start, end)."""
        return self.progress_synthesis_start, self.progress_synthesis_end

    def display(self) -> str:
        """
        Get a formatted string of all configuration settings.

        Returns:
            Formatted configuration string
        """
        return f"""
PDF Audiobook API Configuration:
================================
TTS Backend: {self.tts_backend.value} ({self.tts_api_url})
TTS Voice: {self.tts_voice}
Extractor Backend: {self.extractor_backend.value}
Max Chunk Bytes: {self.max_chunk_bytes}
Concurrency (small/large): {self.concurrency_small_document}/{self.concurrency_large_document}
Large Document Chunks: {self.large_document_chunks}
Time Budget: {self.time_budget_seconds}s (margin {self.safety_margin_seconds}s)
Storage Dir: {self.storage_dir}
Max Concurrent Jobs: {self.max_concurrent_jobs}
Max Queue Size: {self.max_queue_size}
API Host: {self.api_host}
API Port: {self.api_port}
Log Level: {self.log_level.value}
"""


# Create a global settings instance
# This will be imported and used throughout the application
settings = Settings()
