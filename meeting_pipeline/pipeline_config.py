"""Pipeline configuration: stage/provider enums and the immutable ServiceConfig snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import httpx

from meeting_pipeline.config import Settings
from meeting_pipeline.errors import ConfigError

MAX_TEXT_CHUNK_CHARS = 50_000
MAX_TIMEOUT_SECONDS = 3600.0


class StageKind(str, Enum):
    """Pipeline stages, each with its own progress and concurrency slot."""

    AUDIO_SPLIT = "audio_split"
    TRANSCRIBE = "transcribe"
    SUMMARIZE = "summarize"


class LlmProvider(str, Enum):
    """Available language-model backends."""

    OLLAMA = "ollama"
    ANTHROPIC = "anthropic"


class TranscriptionProvider(str, Enum):
    """Available speech-to-text backends."""

    OPENAI = "openai"
    ASSEMBLYAI = "assemblyai"


class SpeakerScope(str, Enum):
    """How speaker labels reported per chunk are reconciled across chunks."""

    GLOBAL = "global"
    CHUNK = "chunk"


class SummaryFormat(str, Enum):
    """What the language model is asked to return for each chunk."""

    TEXT = "text"
    STRUCTURED = "structured"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: ``min(base * 2**attempt, max)`` seconds."""

    base_seconds: float = 1.0
    max_seconds: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (0-based)."""
        return min(self.base_seconds * (2**attempt), self.max_seconds)


@dataclass(frozen=True)
class ServiceConfig:
    """Immutable snapshot of the settings one external service is driven with.

    Taken at the start of a run and validated once before any call is made.
    ``chunk_size`` is in characters for text stages and seconds for audio.
    """

    endpoint: str
    model: str
    chunk_size: int
    max_retries: int = 3
    timeout_seconds: float = 120.0
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    max_chunk_size: int | None = None

    def validate(self) -> ServiceConfig:
        """Raise :class:`ConfigError` if any field is unusable; return self otherwise."""
        _validate_endpoint(self.endpoint)

        if not self.model:
            raise ConfigError("Model cannot be empty")

        if not _is_positive_int(self.chunk_size):
            raise ConfigError(f"Chunk size must be a positive integer, got {self.chunk_size!r}")
        if self.max_chunk_size is not None and self.chunk_size > self.max_chunk_size:
            raise ConfigError(
                f"Chunk size too large ({self.chunk_size}, max {self.max_chunk_size})"
            )

        if not _is_positive_int(self.max_retries):
            raise ConfigError(
                f"Max retries must be a positive integer, got {self.max_retries!r}"
            )

        if not self.timeout_seconds > 0:
            raise ConfigError(f"Timeout must be positive, got {self.timeout_seconds!r}")
        if self.timeout_seconds > MAX_TIMEOUT_SECONDS:
            raise ConfigError("Timeout too large (max 1 hour)")

        if self.backoff.base_seconds < 0 or self.backoff.max_seconds < self.backoff.base_seconds:
            raise ConfigError("Backoff must satisfy 0 <= base <= max")

        return self

    @classmethod
    def for_llm(cls, settings: Settings) -> ServiceConfig:
        """Snapshot for the language-model engine (text chunks, in characters)."""
        return cls(
            endpoint=settings.llm_endpoint,
            model=settings.llm_model,
            chunk_size=settings.summary_chunk_chars,
            max_retries=settings.max_retries,
            timeout_seconds=settings.timeout_seconds,
            backoff=BackoffPolicy(settings.backoff_base_seconds, settings.backoff_max_seconds),
            max_chunk_size=MAX_TEXT_CHUNK_CHARS,
        )

    @classmethod
    def for_transcription(cls, settings: Settings) -> ServiceConfig:
        """Snapshot for the transcription engine (audio chunks, in seconds)."""
        return cls(
            endpoint=settings.transcription_endpoint,
            model=settings.transcription_model,
            chunk_size=settings.audio_chunk_seconds,
            max_retries=settings.max_retries,
            timeout_seconds=settings.timeout_seconds,
            backoff=BackoffPolicy(settings.backoff_base_seconds, settings.backoff_max_seconds),
        )


def _is_positive_int(value: object) -> bool:
    # bool is an int subclass; reject it explicitly.
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _validate_endpoint(endpoint: str) -> None:
    if not endpoint:
        raise ConfigError("Endpoint cannot be empty")
    try:
        url = httpx.URL(endpoint)
    except httpx.InvalidURL as exc:
        raise ConfigError(f"Endpoint is not a valid URL: {endpoint!r}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigError(f"Endpoint must be a valid HTTP/HTTPS URL, got {endpoint!r}")
