"""Data models for meetings, transcripts, chunks and summaries."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass
class MeetingMetadata:
    """Identity and display data for one recorded meeting."""

    id: str
    created_at: str
    name: str | None = None
    audio_file: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MeetingMetadata:
        return cls(
            id=data["id"],
            created_at=data.get("created_at") or "",
            name=data.get("name"),
            audio_file=data.get("audio_file"),
        )


@dataclass(frozen=True)
class Segment:
    """A speaker-attributed time interval (seconds) with transcribed text."""

    start: float
    end: float
    speaker: str
    text: str = ""

    def shifted(self, offset: float) -> Segment:
        """Return a copy rebased by *offset* seconds."""
        return Segment(
            start=self.start + offset,
            end=self.end + offset,
            speaker=self.speaker,
            text=self.text,
        )


@dataclass
class Transcript:
    """Ordered speaker-labelled segments for one meeting."""

    segments: list[Segment] = field(default_factory=list)

    @property
    def speakers(self) -> list[str]:
        """Distinct speaker labels in order of first appearance."""
        seen: dict[str, None] = {}
        for seg in self.segments:
            seen.setdefault(seg.speaker, None)
        return list(seen)

    def to_dict(self) -> dict[str, Any]:
        return {"segments": [asdict(s) for s in self.segments]}


@dataclass(frozen=True)
class TextChunk:
    """A contiguous character range of a larger text."""

    index: int
    offset: int
    size: int
    text: str


@dataclass(frozen=True)
class AudioChunk:
    """A contiguous time range (seconds) of a recording.

    ``key`` is the storage key of the exported chunk file, once written.
    """

    index: int
    offset: float
    size: float
    key: str | None = None

    @property
    def end(self) -> float:
        return self.offset + self.size


@dataclass
class AudioManifest:
    """The written audio chunks of one recording, in index order."""

    duration: float
    chunks: list[AudioChunk] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"duration": self.duration, "chunks": [asdict(c) for c in self.chunks]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AudioManifest:
        return cls(
            duration=float(data.get("duration", 0.0)),
            chunks=[
                AudioChunk(
                    index=int(c["index"]),
                    offset=float(c["offset"]),
                    size=float(c["size"]),
                    key=c.get("key"),
                )
                for c in data.get("chunks", [])
            ],
        )


@dataclass(frozen=True)
class ChunkResult(Generic[T]):
    """The output produced for one chunk index."""

    index: int
    output: T


@dataclass
class SummaryArtifact:
    """Per-chunk summaries (drill-down) plus the final summary (primary view).

    In the structured summary format the Markdown fields are renderings of
    ``chunk_details`` / ``final_details``, and ``title`` is the generated title.
    """

    chunk_summaries: list[str] = field(default_factory=list)
    final_summary: str = ""
    model: str | None = None
    created_at: str | None = None
    title: str | None = None
    chunk_details: list[dict[str, Any]] = field(default_factory=list)
    final_details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SummaryArtifact:
        return cls(
            chunk_summaries=list(data.get("chunk_summaries", [])),
            final_summary=data.get("final_summary", ""),
            model=data.get("model"),
            created_at=data.get("created_at"),
            title=data.get("title"),
            chunk_details=list(data.get("chunk_details", [])),
            final_details=data.get("final_details"),
        )

    def to_markdown(self, title: str | None = None) -> str:
        parts: list[str] = []
        if title:
            parts.append(f"# {title}\n")
        parts.append(self.final_summary.strip())
        if len(self.chunk_summaries) > 1:
            parts.append("\n---\n")
            for i, summary in enumerate(self.chunk_summaries):
                parts.append(f"## Part {i + 1}\n\n{summary.strip()}\n")
        return "\n".join(parts).strip() + "\n"
