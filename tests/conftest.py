"""Shared fakes: scripted service backends and a wired orchestrator on tmp storage."""

from __future__ import annotations

import io
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from meeting_pipeline.config import Settings
from meeting_pipeline.ingestion.models import AudioChunk, AudioManifest, Segment
from meeting_pipeline.ingestion.storage import ArtifactKind, MeetingStore
from meeting_pipeline.pipeline.orchestrator import PipelineOrchestrator
from meeting_pipeline.pipeline.stages import StageFactory
from meeting_pipeline.services.transcription import TranscriptionResponse


class FakeBackend:
    """Backend that replays scripted replies.

    Each reply is a value, an exception instance (raised) or a callable
    taking the request.  When the script runs out, *default* is used.
    """

    def __init__(
        self,
        name: str = "fake",
        replies: list[Any] | None = None,
        default: Any = None,
        ping_error: BaseException | None = None,
    ) -> None:
        self.name = name
        self.replies = list(replies or [])
        self.default = default
        self.ping_error = ping_error
        self.calls: list[Any] = []
        self.pings = 0

    async def send(self, request: Any) -> Any:
        self.calls.append(request)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(request)
        return reply

    async def ping(self) -> None:
        self.pings += 1
        if self.ping_error is not None:
            raise self.ping_error


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "storage_dir": str(tmp_path),
        "llm_provider": "ollama",
        "llm_endpoint": "http://localhost:11434",
        "llm_model": "test-model",
        "transcription_provider": "openai",
        "transcription_endpoint": "http://localhost:9000/v1",
        "transcription_model": "whisper-1",
        "prompt_language": "en",
        "summary_chunk_chars": 10_000,
        "audio_chunk_seconds": 1800,
        "max_retries": 3,
        "timeout_seconds": 5.0,
        "summary_context_chunks": None,
        "speaker_label_scope": "global",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


def numbered_summaries(prefix: str = "summary") -> Callable[[Any], str]:
    """Reply callable returning ``summary-1``, ``summary-2``, ..."""
    count = 0

    def reply(request: Any) -> str:
        nonlocal count
        count += 1
        return f"{prefix}-{count}"

    return reply


class Harness:
    """An orchestrator over tmp storage with fake backends."""

    def __init__(self, tmp_path: Path, **setting_overrides: Any) -> None:
        self.settings = make_settings(tmp_path, **setting_overrides)
        self.store = MeetingStore(tmp_path)
        self.llm = FakeBackend("fake-llm", default=numbered_summaries())
        self.stt = FakeBackend("fake-stt", default=TranscriptionResponse(segments=[]))
        self.sleep = SleepRecorder()
        self.stages = StageFactory(
            self.store,
            settings_provider=lambda: self.settings,
            llm_backend_factory=lambda settings, config: self.llm,
            transcription_backend_factory=lambda settings, config: self.stt,
            sleep=self.sleep,
        )
        self.orchestrator = PipelineOrchestrator(self.store, self.stages)

    def meeting_with_transcript_text(self, text: str, name: str | None = None) -> str:
        metadata = self.store.create_meeting(None, name=name)
        self.store.write_artifact(metadata.id, ArtifactKind.TRANSCRIPT_TEXT, text)
        return metadata.id

    def meeting_with_audio_chunks(self, offsets: list[tuple[float, float]]) -> str:
        """A meeting whose audio was already split into chunks at *offsets*."""
        metadata = self.store.create_meeting(b"RIFF", filename="audio.wav")
        chunks = []
        for index, (offset, size) in enumerate(offsets):
            key = self.store.write_chunk(metadata.id, f"audio-test-{index:04d}.wav", b"RIFF")
            chunks.append(AudioChunk(index=index, offset=offset, size=size, key=key))
        manifest = AudioManifest(duration=sum(size for _, size in offsets), chunks=chunks)
        self.store.write_artifact(
            metadata.id, ArtifactKind.AUDIO_MANIFEST, json.dumps(manifest.to_dict())
        )
        return metadata.id


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


def segments(*items: tuple[float, float, str, str]) -> list[Segment]:
    return [Segment(start=s, end=e, speaker=sp, text=t) for s, e, sp, t in items]


def tone_silence_tone_wav(tone_ms: int = 1000, silence_ms: int = 1000) -> bytes:
    """A WAV recording: tone, silence, tone."""
    from pydub import AudioSegment
    from pydub.generators import Sine

    tone = Sine(440, sample_rate=16000).to_audio_segment(duration=tone_ms, volume=-6.0)
    silence = AudioSegment.silent(duration=silence_ms, frame_rate=16000)
    recording = tone + silence + tone
    buf = io.BytesIO()
    recording.export(buf, format="wav")
    return buf.getvalue()
