"""Merge per-chunk results into one artifact.

All functions are pure except the two summary assemblers, which may make
the final language-model pass through their *finalize* callback.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import replace
from typing import TypeVar

from meeting_pipeline.errors import AssemblyError, ServiceError
from meeting_pipeline.ingestion.models import (
    AudioChunk,
    AudioManifest,
    ChunkResult,
    Segment,
    SummaryArtifact,
    Transcript,
)
from meeting_pipeline.pipeline_config import SpeakerScope
from meeting_pipeline.summarization.models import ChunkSummary, FinalSummary

logger = logging.getLogger(__name__)

T = TypeVar("T")


def ordered(results: Sequence[ChunkResult[T]], expected: int) -> list[ChunkResult[T]]:
    """Return *results* in index order, checking that ``0..expected-1`` are all present.

    Raises:
        AssemblyError: An index is missing, duplicated or out of range.
    """
    by_index: dict[int, ChunkResult[T]] = {}
    for result in results:
        if not 0 <= result.index < expected:
            raise AssemblyError(f"Chunk index {result.index} out of range (expected {expected})")
        if result.index in by_index:
            raise AssemblyError(f"Duplicate result for chunk {result.index}")
        by_index[result.index] = result

    missing = [i for i in range(expected) if i not in by_index]
    if missing:
        raise AssemblyError(f"Missing results for chunks {missing}")
    return [by_index[i] for i in range(expected)]


def _label(speaker: str, chunk_index: int, scope: SpeakerScope) -> str:
    if scope is SpeakerScope.CHUNK:
        return f"C{chunk_index}_{speaker}"
    return speaker


def assemble_transcript(
    chunks: Sequence[AudioChunk],
    results: Sequence[ChunkResult[list[Segment]]],
    scope: SpeakerScope = SpeakerScope.GLOBAL,
) -> Transcript:
    """Rebase chunk-local segments onto the recording timeline.

    Segments are sorted by start time; the sort is stable, so segments that
    start together keep their reported order.  Overlapping segments from
    different speakers are kept as they are.
    """
    by_chunk = {c.index: c for c in chunks}
    segments: list[Segment] = []
    for result in ordered(results, len(chunks)):
        chunk = by_chunk.get(result.index)
        if chunk is None:
            raise AssemblyError(f"No chunk with index {result.index}")
        for seg in result.output:
            shifted = seg.shifted(chunk.offset)
            segments.append(replace(shifted, speaker=_label(seg.speaker, chunk.index, scope)))

    segments.sort(key=lambda s: s.start)
    return Transcript(segments=segments)


async def assemble_summary(
    results: Sequence[ChunkResult[str]],
    expected: int,
    finalize: Callable[[list[str]], Awaitable[str]],
) -> SummaryArtifact:
    """Collect chunk summaries and produce the final summary.

    With more than one chunk, *finalize* merges the chunk summaries; with
    exactly one, that summary is the final summary and *finalize* is not
    called.

    Raises:
        AssemblyError: Results are incomplete, or the final pass failed (the
            service error is chained as the cause).
    """
    summaries = [r.output for r in ordered(results, expected)]
    if len(summaries) <= 1:
        final = summaries[0] if summaries else ""
        return SummaryArtifact(chunk_summaries=summaries, final_summary=final)

    try:
        final = await finalize(summaries)
    except ServiceError as exc:
        raise AssemblyError(f"Final summary pass failed: {exc}") from exc
    return SummaryArtifact(chunk_summaries=summaries, final_summary=final)


async def assemble_structured_summary(
    results: Sequence[ChunkResult[ChunkSummary]],
    expected: int,
    finalize: Callable[[list[ChunkSummary]], Awaitable[FinalSummary]],
) -> SummaryArtifact:
    """Structured counterpart of :func:`assemble_summary`.

    The final pass also produces the meeting title.  A single chunk gets no
    final pass and therefore no title.
    """
    details = [r.output for r in ordered(results, expected)]
    artifact = SummaryArtifact(
        chunk_summaries=[d.to_markdown() for d in details],
        chunk_details=[d.model_dump() for d in details],
    )
    if len(details) == 1:
        artifact.final_summary = artifact.chunk_summaries[0]
    elif details:
        try:
            final = await finalize(details)
        except ServiceError as exc:
            raise AssemblyError(f"Final summary pass failed: {exc}") from exc
        artifact.final_summary = final.to_markdown()
        artifact.final_details = final.model_dump()
        artifact.title = str(final.title)
    return artifact


def assemble_manifest(
    chunks: Sequence[AudioChunk],
    results: Sequence[ChunkResult[str]],
    duration: float,
) -> AudioManifest:
    """Attach the written storage key of every chunk."""
    by_chunk = {c.index: c for c in chunks}
    written = [
        replace(by_chunk[r.index], key=r.output)
        for r in ordered(results, len(chunks))
        if r.index in by_chunk
    ]
    if len(written) != len(chunks):
        raise AssemblyError("Audio chunk indices do not match their results")
    return AudioManifest(duration=duration, chunks=written)


def rename_speakers(transcript: Transcript, mapping: Mapping[str, str]) -> Transcript:
    """Return a copy of *transcript* with speaker labels rewritten.

    Labels absent from *mapping*, or mapped to a blank name, stay unchanged.
    Times and text are never touched.
    """
    names = {old: new.strip() for old, new in mapping.items() if new and new.strip()}
    return Transcript(
        segments=[
            replace(seg, speaker=names[seg.speaker]) if seg.speaker in names else seg
            for seg in transcript.segments
        ]
    )
