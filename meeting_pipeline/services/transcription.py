"""Speech-to-text backends: OpenAI-compatible audio API or AssemblyAI.

Both return segments with chunk-local offsets; rebasing onto the recording's
timeline is the assembler's job.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import assemblyai as aai  # type: ignore[import-untyped]
import httpx
import openai
from openai import AsyncOpenAI

from meeting_pipeline.config import Settings
from meeting_pipeline.errors import ConfigError, NetworkError, RemoteError, ServiceTimeoutError
from meeting_pipeline.ingestion.models import Segment
from meeting_pipeline.ingestion.parsers import make_segment, segments_from_records
from meeting_pipeline.pipeline_config import ServiceConfig, TranscriptionProvider

ASSEMBLYAI_BASE_URL = "https://api.assemblyai.com"


@dataclass(frozen=True)
class TranscriptionRequest:
    """One audio chunk to transcribe."""

    audio: bytes
    filename: str = "chunk.wav"
    language: str | None = None
    prompt: str | None = None  # tail of the previous chunk's text, for continuity


@dataclass
class TranscriptionResponse:
    """Ordered segments for one chunk, offsets relative to the chunk start."""

    segments: list[Segment] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(s.text for s in self.segments if s.text)


class OpenAITranscriptionBackend:
    """``/audio/transcriptions`` on OpenAI or any compatible local server."""

    name = "openai-transcription"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout: float = 120.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        # Local OpenAI-compatible servers ignore the key but the SDK requires one.
        self._client = client or AsyncOpenAI(
            api_key=api_key or "not-needed",
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    async def send(self, request: TranscriptionRequest) -> TranscriptionResponse:
        kwargs: dict[str, object] = {
            "model": self.model,
            "file": (request.filename, request.audio),
            "response_format": "verbose_json",
        }
        if request.language:
            kwargs["language"] = request.language
        if request.prompt:
            kwargs["prompt"] = request.prompt

        try:
            result = await self._client.audio.transcriptions.create(**kwargs)  # type: ignore[call-overload]
        except openai.APITimeoutError as exc:
            raise ServiceTimeoutError(f"Transcription request timed out: {exc}") from exc
        except openai.APIConnectionError as exc:
            raise NetworkError(f"Failed to reach transcription service: {exc}") from exc
        except openai.APIStatusError as exc:
            raise RemoteError(
                f"Transcription service returned {exc.status_code}: {exc}", exc.status_code
            ) from exc

        raw_segments = getattr(result, "segments", None)
        if raw_segments is None:
            text = getattr(result, "text", None)
            if text is None:
                raise RemoteError("Transcription response has neither segments nor text")
            duration = getattr(result, "duration", None) or 0.0
            return TranscriptionResponse(segments=[make_segment(0.0, duration, None, text)])

        # Diarizing models report a speaker per segment; plain Whisper does not.
        return TranscriptionResponse(
            segments=[
                make_segment(seg.start, seg.end, getattr(seg, "speaker", None), seg.text)
                for seg in raw_segments
            ]
        )

    async def ping(self) -> None:
        try:
            await self._client.models.list()
        except openai.APITimeoutError as exc:
            raise ServiceTimeoutError(str(exc)) from exc
        except openai.APIConnectionError as exc:
            raise NetworkError(str(exc)) from exc
        except openai.APIStatusError as exc:
            raise RemoteError(str(exc), exc.status_code) from exc


class AssemblyAIBackend:
    """AssemblyAI with speaker labels; the blocking SDK runs in a worker thread."""

    name = "assemblyai"

    def __init__(
        self,
        api_key: str,
        speech_model: str,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.speech_model = speech_model
        self._timeout = timeout
        self._transport = transport

    def _transcribe(self, request: TranscriptionRequest) -> TranscriptionResponse:
        aai.settings.api_key = self.api_key
        # speaker_labels=True enables diarization; without it the API returns a
        # single flat text block attributed to no speaker.
        config = aai.TranscriptionConfig(
            speech_models=[self.speech_model],
            speaker_labels=True,
            language_code=request.language,
        )
        transcript = aai.Transcriber().transcribe(request.audio, config=config)
        if transcript.status == aai.TranscriptStatus.error:
            raise RemoteError(f"Transcription failed: {transcript.error}")

        utterances = transcript.utterances or []
        records = [
            {"start": u.start, "end": u.end, "speaker": u.speaker, "text": u.text}
            for u in utterances
        ]
        return TranscriptionResponse(segments=segments_from_records(records, scale=0.001))

    async def send(self, request: TranscriptionRequest) -> TranscriptionResponse:
        try:
            return await asyncio.to_thread(self._transcribe, request)
        except httpx.TimeoutException as exc:
            raise ServiceTimeoutError(f"AssemblyAI request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Failed to reach AssemblyAI: {exc}") from exc
        except aai.types.AssemblyAIError as exc:
            raise RemoteError(f"AssemblyAI rejected the request: {exc}") from exc

    async def ping(self) -> None:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.get(
                    f"{ASSEMBLYAI_BASE_URL}/v2/transcript",
                    params={"limit": 1},
                    headers={"authorization": self.api_key},
                )
        except httpx.TimeoutException as exc:
            raise ServiceTimeoutError(str(exc)) from exc
        except httpx.TransportError as exc:
            raise NetworkError(str(exc)) from exc
        if response.status_code != 200:
            raise RemoteError(f"AssemblyAI returned {response.status_code}", response.status_code)


def build_transcription_backend(
    settings: Settings, config: ServiceConfig
) -> OpenAITranscriptionBackend | AssemblyAIBackend:
    """Instantiate the configured transcription backend."""
    try:
        provider = TranscriptionProvider(settings.transcription_provider)
    except ValueError as exc:
        raise ConfigError(
            f"Unknown transcription provider: {settings.transcription_provider!r}"
        ) from exc

    if provider is TranscriptionProvider.ASSEMBLYAI:
        if not settings.assemblyai_api_key:
            raise ConfigError("ASSEMBLYAI_API_KEY is required for the assemblyai provider")
        return AssemblyAIBackend(
            api_key=settings.assemblyai_api_key,
            speech_model=settings.assemblyai_speech_model,
            timeout=config.timeout_seconds,
        )

    return OpenAITranscriptionBackend(
        api_key=settings.openai_api_key,
        model=config.model,
        base_url=config.endpoint,
        timeout=config.timeout_seconds,
    )
