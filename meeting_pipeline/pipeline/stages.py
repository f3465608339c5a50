"""Stage handlers: what each pipeline stage reads, splits, sends and writes.

A handler is built fresh for every run by :class:`StageFactory`, from a
validated configuration snapshot, so a bad setting raises ``ConfigError``
before anything touches the network.  The orchestrator drives every handler
through the same sequence::

    load_input -> split -> process(chunk) / accept(result) ... -> assemble -> persist

and calls ``discard`` when the run fails.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Generic, TypeVar

from pydantic import ValidationError

from meeting_pipeline.config import Settings, get_settings
from meeting_pipeline.errors import ConfigError, InputNotFound, StorageError
from meeting_pipeline.ingestion.audio import DecodedAudio, analyze_audio, export_range
from meeting_pipeline.ingestion.chunking import split_audio, split_text
from meeting_pipeline.ingestion.models import (
    AudioChunk,
    AudioManifest,
    ChunkResult,
    Segment,
    SummaryArtifact,
    TextChunk,
    Transcript,
)
from meeting_pipeline.ingestion.parsers import parse_json, render_text, render_vtt
from meeting_pipeline.ingestion.storage import ArtifactKind, MeetingStore, utc_timestamp
from meeting_pipeline.pipeline.assembly import (
    assemble_manifest,
    assemble_structured_summary,
    assemble_summary,
    assemble_transcript,
)
from meeting_pipeline.pipeline_config import (
    ServiceConfig,
    SpeakerScope,
    StageKind,
    SummaryFormat,
)
from meeting_pipeline.services.client import Backend, ExternalServiceClient
from meeting_pipeline.services.llm import CompletionRequest, build_llm_backend
from meeting_pipeline.services.transcription import (
    TranscriptionRequest,
    TranscriptionResponse,
    build_transcription_backend,
)
from meeting_pipeline.summarization.models import (
    ChunkSummary,
    FinalSummary,
    KeyFacts,
    parse_reply,
)
from meeting_pipeline.summarization.prompts import (
    check_language,
    chunk_summary_request,
    final_summary_request,
    structured_chunk_request,
    structured_final_request,
)

logger = logging.getLogger(__name__)

SourceT = TypeVar("SourceT")
ChunkT = TypeVar("ChunkT", TextChunk, AudioChunk)
OutputT = TypeVar("OutputT")
ArtifactT = TypeVar("ArtifactT")

AUDIO_CHUNK_PREFIX = "audio-"

# Characters of the previous chunk's text passed to the engine as a prompt.
PROMPT_TAIL_CHARS = 224

LlmClient = ExternalServiceClient[CompletionRequest, str]
TranscriptionClient = ExternalServiceClient[TranscriptionRequest, TranscriptionResponse]


class StageHandler(Generic[SourceT, ChunkT, OutputT, ArtifactT]):
    """Per-run logic of one stage. Subclasses override the hooks they need."""

    stage: StageKind
    prerequisite: StageKind | None = None

    def prerequisite_ready(self, meeting_id: str) -> bool:
        return True

    async def load_input(self, meeting_id: str) -> SourceT:
        raise NotImplementedError

    def split(self, source: SourceT) -> list[ChunkT]:
        raise NotImplementedError

    async def process(self, meeting_id: str, chunk: ChunkT) -> OutputT:
        raise NotImplementedError

    def accept(self, result: ChunkResult[OutputT]) -> None:
        """Fold a finished chunk into the context carried to the next one."""

    async def assemble(
        self,
        meeting_id: str,
        source: SourceT,
        chunks: Sequence[ChunkT],
        results: Sequence[ChunkResult[OutputT]],
    ) -> ArtifactT:
        raise NotImplementedError

    async def persist(self, meeting_id: str, artifact: ArtifactT) -> None:
        raise NotImplementedError

    async def discard(self, meeting_id: str) -> None:
        """Remove intermediate files written by this run."""


# ---------------------------------------------------------------------------
# Artifact helpers
# ---------------------------------------------------------------------------


def write_transcript(store: MeetingStore, meeting_id: str, transcript: Transcript) -> None:
    """Persist a transcript as JSON plus its text and WebVTT renderings."""
    store.write_artifact(
        meeting_id,
        ArtifactKind.TRANSCRIPT,
        json.dumps(transcript.to_dict(), indent=2, ensure_ascii=False),
    )
    store.write_artifact(meeting_id, ArtifactKind.TRANSCRIPT_TEXT, render_text(transcript))
    store.write_artifact(meeting_id, ArtifactKind.TRANSCRIPT_VTT, render_vtt(transcript))


def read_transcript(store: MeetingStore, meeting_id: str) -> Transcript:
    raw = store.read_input(meeting_id, ArtifactKind.TRANSCRIPT)
    try:
        return parse_json(raw)
    except ValueError as exc:
        raise StorageError(f"Corrupt transcript for meeting {meeting_id}: {exc}") from exc


def write_summary(store: MeetingStore, meeting_id: str, artifact: SummaryArtifact) -> None:
    store.write_artifact(
        meeting_id,
        ArtifactKind.SUMMARY,
        json.dumps(artifact.to_dict(), indent=2, ensure_ascii=False),
    )
    title = artifact.title or store.get_meeting(meeting_id).name
    store.write_artifact(meeting_id, ArtifactKind.SUMMARY_MARKDOWN, artifact.to_markdown(title))


def read_summary(store: MeetingStore, meeting_id: str) -> SummaryArtifact:
    raw = store.read_input(meeting_id, ArtifactKind.SUMMARY)
    try:
        return SummaryArtifact.from_dict(json.loads(raw))
    except (ValueError, TypeError) as exc:
        raise StorageError(f"Corrupt summary for meeting {meeting_id}: {exc}") from exc


def read_manifest(store: MeetingStore, meeting_id: str) -> AudioManifest:
    raw = store.read_input(meeting_id, ArtifactKind.AUDIO_MANIFEST)
    try:
        return AudioManifest.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError) as exc:
        raise StorageError(f"Corrupt audio manifest for meeting {meeting_id}: {exc}") from exc


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class AudioSplitStage(StageHandler[DecodedAudio, AudioChunk, str, AudioManifest]):
    """Cut the recording at silences into WAV chunk files."""

    stage = StageKind.AUDIO_SPLIT

    def __init__(
        self,
        store: MeetingStore,
        max_seconds: float,
        min_silence_ms: int = 700,
        silence_thresh_dbfs: float = -40.0,
    ) -> None:
        self.store = store
        self.max_seconds = max_seconds
        self.min_silence_ms = min_silence_ms
        self.silence_thresh_dbfs = silence_thresh_dbfs
        # Chunk files of this run share a prefix, so a failed run can be
        # discarded without touching the files of the last good manifest.
        self.prefix = f"{AUDIO_CHUNK_PREFIX}{uuid.uuid4().hex[:8]}-"
        self._source: DecodedAudio | None = None

    async def load_input(self, meeting_id: str) -> DecodedAudio:
        data, fmt = await asyncio.to_thread(self.store.read_audio, meeting_id)
        self._source = await asyncio.to_thread(
            analyze_audio, data, fmt, self.min_silence_ms, self.silence_thresh_dbfs
        )
        return self._source

    def split(self, source: DecodedAudio) -> list[AudioChunk]:
        return split_audio(source.duration, self.max_seconds, source.boundaries)

    async def process(self, meeting_id: str, chunk: AudioChunk) -> str:
        if self._source is None:
            raise RuntimeError("Audio chunks cannot be exported before the recording is loaded")
        wav = await asyncio.to_thread(export_range, self._source.segment, chunk.offset, chunk.end)
        return await asyncio.to_thread(
            self.store.write_chunk, meeting_id, f"{self.prefix}{chunk.index:04d}.wav", wav
        )

    async def assemble(
        self,
        meeting_id: str,
        source: DecodedAudio,
        chunks: Sequence[AudioChunk],
        results: Sequence[ChunkResult[str]],
    ) -> AudioManifest:
        return assemble_manifest(chunks, results, source.duration)

    async def persist(self, meeting_id: str, artifact: AudioManifest) -> None:
        self.store.write_artifact(
            meeting_id, ArtifactKind.AUDIO_MANIFEST, json.dumps(artifact.to_dict(), indent=2)
        )
        keep = {c.key for c in artifact.chunks if c.key}
        removed = self.store.discard_chunks(meeting_id, AUDIO_CHUNK_PREFIX, keep=keep)
        if removed:
            logger.info("Removed %d stale audio chunk(s) for meeting %s", removed, meeting_id)

    async def discard(self, meeting_id: str) -> None:
        removed = self.store.discard_chunks(meeting_id, self.prefix)
        logger.info("Discarded %d audio chunk(s) for meeting %s", removed, meeting_id)


class TranscriptionStage(StageHandler[AudioManifest, AudioChunk, list[Segment], Transcript]):
    """Send each audio chunk to the transcription engine and merge the segments."""

    stage = StageKind.TRANSCRIBE
    prerequisite = StageKind.AUDIO_SPLIT

    def __init__(
        self,
        store: MeetingStore,
        client: TranscriptionClient,
        language: str | None = None,
        scope: SpeakerScope = SpeakerScope.GLOBAL,
    ) -> None:
        self.store = store
        self.client = client
        self.language = language
        self.scope = scope
        self._previous_text = ""

    def prerequisite_ready(self, meeting_id: str) -> bool:
        return self.store.has_artifact(meeting_id, ArtifactKind.AUDIO_MANIFEST)

    async def load_input(self, meeting_id: str) -> AudioManifest:
        return read_manifest(self.store, meeting_id)

    def split(self, source: AudioManifest) -> list[AudioChunk]:
        # Audio was bounded when it was split; the manifest is the chunk list.
        return sorted(source.chunks, key=lambda c: c.index)

    async def process(self, meeting_id: str, chunk: AudioChunk) -> list[Segment]:
        if not chunk.key:
            raise StorageError(f"Audio chunk {chunk.index} of meeting {meeting_id} was never written")
        audio = await asyncio.to_thread(self.store.read_chunk, meeting_id, chunk.key)
        request = TranscriptionRequest(
            audio=audio,
            filename=chunk.key.rsplit("/", 1)[-1],
            language=self.language,
            prompt=self._previous_text[-PROMPT_TAIL_CHARS:] or None,
        )
        response = await self.client.call(request)
        return response.segments

    def accept(self, result: ChunkResult[list[Segment]]) -> None:
        text = " ".join(s.text for s in result.output if s.text)
        if text:
            self._previous_text = text

    async def assemble(
        self,
        meeting_id: str,
        source: AudioManifest,
        chunks: Sequence[AudioChunk],
        results: Sequence[ChunkResult[list[Segment]]],
    ) -> Transcript:
        return assemble_transcript(chunks, results, self.scope)

    async def persist(self, meeting_id: str, artifact: Transcript) -> None:
        write_transcript(self.store, meeting_id, artifact)


class SummaryStage(StageHandler[str, TextChunk, OutputT, SummaryArtifact]):
    """Shared part of the summarization stages: transcript input and running context."""

    stage = StageKind.SUMMARIZE

    def __init__(
        self,
        store: MeetingStore,
        client: LlmClient,
        chunk_chars: int,
        language: str = "en",
        context_chunks: int | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.chunk_chars = chunk_chars
        self.language = language
        self.context_chunks = context_chunks
        self._summaries: list[str] = []
        self._total = 0

    def context(self) -> str:
        """Summaries carried into the next chunk: all of them, or the last *k*."""
        if self.context_chunks is None:
            window = self._summaries
        else:
            window = self._summaries[-self.context_chunks :]
        return "\n\n".join(window)

    def render(self, output: OutputT) -> str:
        raise NotImplementedError

    async def load_input(self, meeting_id: str) -> str:
        return self.store.read_input(meeting_id, ArtifactKind.TRANSCRIPT_TEXT)

    def split(self, source: str) -> list[TextChunk]:
        chunks = split_text(source, self.chunk_chars)
        self._total = len(chunks)
        return chunks

    def accept(self, result: ChunkResult[OutputT]) -> None:
        self._summaries.append(self.render(result.output))

    def _stamp(self, artifact: SummaryArtifact) -> SummaryArtifact:
        artifact.model = self.client.config.model
        artifact.created_at = utc_timestamp()
        return artifact

    async def persist(self, meeting_id: str, artifact: SummaryArtifact) -> None:
        write_summary(self.store, meeting_id, artifact)

    async def regenerate(self, meeting_id: str) -> SummaryArtifact:
        """Re-run only the final pass over the stored chunk summaries.

        The result is returned, not persisted; the caller decides whether to keep it.
        """
        raise NotImplementedError


class SummarizationStage(SummaryStage[str]):
    """Summarize transcript chunks as free text, then merge them."""

    def render(self, output: str) -> str:
        return output

    async def process(self, meeting_id: str, chunk: TextChunk) -> str:
        request = chunk_summary_request(
            chunk.text, chunk.index, self._total, self.context(), self.language
        )
        return (await self.client.call(request)).strip()

    async def finalize(self, summaries: list[str]) -> str:
        return (await self.client.call(final_summary_request(summaries, self.language))).strip()

    async def assemble(
        self,
        meeting_id: str,
        source: str,
        chunks: Sequence[TextChunk],
        results: Sequence[ChunkResult[str]],
    ) -> SummaryArtifact:
        return self._stamp(await assemble_summary(results, len(chunks), self.finalize))

    async def regenerate(self, meeting_id: str) -> SummaryArtifact:
        stored = read_summary(self.store, meeting_id)
        if not stored.chunk_summaries:
            raise InputNotFound(f"Meeting {meeting_id} has no chunk summaries")
        results = [ChunkResult(i, s) for i, s in enumerate(stored.chunk_summaries)]
        return self._stamp(await assemble_summary(results, len(results), self.finalize))


class StructuredSummarizationStage(SummaryStage[ChunkSummary]):
    """Summarize chunks into :class:`ChunkSummary` JSON, carrying key facts forward.

    The final pass returns a :class:`FinalSummary`; its title becomes the
    meeting name.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.key_facts = KeyFacts()

    def render(self, output: ChunkSummary) -> str:
        return output.to_markdown()

    async def process(self, meeting_id: str, chunk: TextChunk) -> ChunkSummary:
        request = structured_chunk_request(
            chunk.text, chunk.index, self._total, self.key_facts, self.context(), self.language
        )
        return parse_reply(ChunkSummary, await self.client.call(request))

    def accept(self, result: ChunkResult[ChunkSummary]) -> None:
        super().accept(result)
        self.key_facts = self.key_facts.merge(result.output.key_facts)

    async def finalize(self, details: list[ChunkSummary]) -> FinalSummary:
        reply = await self.client.call(structured_final_request(details, self.language))
        return parse_reply(FinalSummary, reply)

    async def assemble(
        self,
        meeting_id: str,
        source: str,
        chunks: Sequence[TextChunk],
        results: Sequence[ChunkResult[ChunkSummary]],
    ) -> SummaryArtifact:
        artifact = await assemble_structured_summary(results, len(chunks), self.finalize)
        return self._stamp(artifact)

    async def persist(self, meeting_id: str, artifact: SummaryArtifact) -> None:
        write_summary(self.store, meeting_id, artifact)
        if artifact.title:
            self.store.rename_meeting(meeting_id, artifact.title)

    async def regenerate(self, meeting_id: str) -> SummaryArtifact:
        stored = read_summary(self.store, meeting_id)
        if not stored.chunk_details:
            raise InputNotFound(f"Meeting {meeting_id} has no structured chunk summaries")
        try:
            details = [ChunkSummary.model_validate(d) for d in stored.chunk_details]
        except ValidationError as exc:
            raise StorageError(f"Corrupt chunk summaries for meeting {meeting_id}: {exc}") from exc
        results = [ChunkResult(i, d) for i, d in enumerate(details)]
        artifact = await assemble_structured_summary(results, len(results), self.finalize)
        return self._stamp(artifact)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

LlmBackendFactory = Callable[[Settings, ServiceConfig], Backend[CompletionRequest, str]]
TranscriptionBackendFactory = Callable[
    [Settings, ServiceConfig], Backend[TranscriptionRequest, TranscriptionResponse]
]


class StageFactory:
    """Builds per-run handlers and service clients from a fresh settings snapshot.

    Args:
        store: Storage shared by all stages.
        settings_provider: Returns the settings to snapshot for each run.
        llm_backend_factory: Builds the language-model backend.
        transcription_backend_factory: Builds the transcription backend.
        sleep: Awaitable used between retries (replaced in tests).
    """

    def __init__(
        self,
        store: MeetingStore,
        settings_provider: Callable[[], Settings] = get_settings,
        llm_backend_factory: LlmBackendFactory = build_llm_backend,
        transcription_backend_factory: TranscriptionBackendFactory = build_transcription_backend,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self._settings_provider = settings_provider
        self._llm_backend_factory = llm_backend_factory
        self._transcription_backend_factory = transcription_backend_factory
        self._sleep = sleep

    def settings(self) -> Settings:
        return self._settings_provider()

    def llm_client(self, settings: Settings | None = None) -> LlmClient:
        settings = settings or self.settings()
        config = ServiceConfig.for_llm(settings).validate()
        backend = self._llm_backend_factory(settings, config)
        return ExternalServiceClient(backend, config, sleep=self._sleep)

    def transcription_client(self, settings: Settings | None = None) -> TranscriptionClient:
        settings = settings or self.settings()
        config = ServiceConfig.for_transcription(settings).validate()
        backend = self._transcription_backend_factory(settings, config)
        return ExternalServiceClient(backend, config, sleep=self._sleep)

    def audio_split(self, settings: Settings | None = None) -> AudioSplitStage:
        settings = settings or self.settings()
        config = ServiceConfig.for_transcription(settings).validate()
        if settings.silence_min_ms <= 0:
            raise ConfigError(f"silence_min_ms must be positive, got {settings.silence_min_ms}")
        return AudioSplitStage(
            self.store,
            max_seconds=config.chunk_size,
            min_silence_ms=settings.silence_min_ms,
            silence_thresh_dbfs=settings.silence_thresh_dbfs,
        )

    def transcribe(self, settings: Settings | None = None) -> TranscriptionStage:
        settings = settings or self.settings()
        try:
            scope = SpeakerScope(settings.speaker_label_scope)
        except ValueError as exc:
            raise ConfigError(
                f"Unknown speaker label scope: {settings.speaker_label_scope!r}"
            ) from exc
        return TranscriptionStage(
            self.store,
            self.transcription_client(settings),
            language=settings.transcription_language,
            scope=scope,
        )

    def summarize(self, settings: Settings | None = None) -> SummaryStage[Any]:
        settings = settings or self.settings()
        language = check_language(settings.prompt_language)
        context_chunks = settings.summary_context_chunks
        if context_chunks is not None and context_chunks < 1:
            raise ConfigError(f"summary_context_chunks must be >= 1, got {context_chunks}")
        try:
            summary_format = SummaryFormat(settings.summary_format)
        except ValueError as exc:
            raise ConfigError(f"Unknown summary format: {settings.summary_format!r}") from exc
        client = self.llm_client(settings)
        stage_cls: type[SummaryStage[Any]] = (
            StructuredSummarizationStage
            if summary_format is SummaryFormat.STRUCTURED
            else SummarizationStage
        )
        return stage_cls(
            self.store,
            client,
            chunk_chars=client.config.chunk_size,
            language=language,
            context_chunks=context_chunks,
        )

    def build(self, stage: StageKind) -> StageHandler[Any, Any, Any, Any]:
        """Build the handler for *stage* from a fresh settings snapshot."""
        builders: dict[StageKind, Callable[[], StageHandler[Any, Any, Any, Any]]] = {
            StageKind.AUDIO_SPLIT: self.audio_split,
            StageKind.TRANSCRIBE: self.transcribe,
            StageKind.SUMMARIZE: self.summarize,
        }
        return builders[stage]()
