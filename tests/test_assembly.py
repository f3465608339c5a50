"""Tests for result assembly: ordering, timeline rebasing, summaries and speaker renames."""

from __future__ import annotations

import asyncio

import pytest
from conftest import segments

from meeting_pipeline.errors import AssemblyError, NetworkError
from meeting_pipeline.ingestion.models import AudioChunk, ChunkResult, Segment, Transcript
from meeting_pipeline.pipeline.assembly import (
    assemble_manifest,
    assemble_summary,
    assemble_transcript,
    ordered,
    rename_speakers,
)
from meeting_pipeline.pipeline_config import SpeakerScope


class TestOrdered:
    def test_sorts_by_index(self) -> None:
        results = [ChunkResult(2, "c"), ChunkResult(0, "a"), ChunkResult(1, "b")]
        assert [r.output for r in ordered(results, 3)] == ["a", "b", "c"]

    def test_missing_index(self) -> None:
        with pytest.raises(AssemblyError, match="Missing"):
            ordered([ChunkResult(0, "a"), ChunkResult(2, "c")], 3)

    def test_duplicate_index(self) -> None:
        with pytest.raises(AssemblyError, match="Duplicate"):
            ordered([ChunkResult(0, "a"), ChunkResult(0, "a")], 2)

    def test_out_of_range_index(self) -> None:
        with pytest.raises(AssemblyError):
            ordered([ChunkResult(5, "a")], 1)

    def test_empty(self) -> None:
        assert ordered([], 0) == []


class TestAssembleTranscript:
    def test_rebases_offsets(self) -> None:
        chunks = [AudioChunk(0, 0.0, 60.0), AudioChunk(1, 60.0, 60.0)]
        results = [
            ChunkResult(0, segments((1.0, 4.0, "A", "hello"))),
            ChunkResult(1, segments((2.0, 5.0, "B", "hi"))),
        ]
        transcript = assemble_transcript(chunks, results)
        assert [(s.start, s.end, s.speaker) for s in transcript.segments] == [
            (1.0, 4.0, "A"),
            (62.0, 65.0, "B"),
        ]

    def test_sorted_by_start_and_overlaps_preserved(self) -> None:
        chunks = [AudioChunk(0, 0.0, 30.0)]
        results = [
            ChunkResult(
                0,
                segments(
                    (10.0, 14.0, "B", "second"),
                    (2.0, 12.0, "A", "first"),
                    (10.0, 11.0, "C", "third"),
                ),
            )
        ]
        transcript = assemble_transcript(chunks, results)
        assert [s.text for s in transcript.segments] == ["first", "second", "third"]
        assert len(transcript.segments) == 3

    def test_chunk_speaker_scope(self) -> None:
        chunks = [AudioChunk(0, 0.0, 10.0), AudioChunk(1, 10.0, 10.0)]
        results = [
            ChunkResult(0, segments((0.0, 1.0, "A", "x"))),
            ChunkResult(1, segments((0.0, 1.0, "A", "y"))),
        ]
        transcript = assemble_transcript(chunks, results, SpeakerScope.CHUNK)
        assert transcript.speakers == ["C0_A", "C1_A"]

    def test_global_speaker_scope_keeps_labels(self) -> None:
        chunks = [AudioChunk(0, 0.0, 10.0), AudioChunk(1, 10.0, 10.0)]
        results = [
            ChunkResult(0, segments((0.0, 1.0, "A", "x"))),
            ChunkResult(1, segments((0.0, 1.0, "A", "y"))),
        ]
        assert assemble_transcript(chunks, results).speakers == ["A"]

    def test_incomplete_results_fail(self) -> None:
        chunks = [AudioChunk(0, 0.0, 10.0), AudioChunk(1, 10.0, 10.0)]
        with pytest.raises(AssemblyError):
            assemble_transcript(chunks, [ChunkResult(0, [])])


class TestAssembleSummary:
    def test_single_chunk_is_final_without_extra_call(self) -> None:
        calls: list[list[str]] = []

        async def finalize(summaries: list[str]) -> str:
            calls.append(summaries)
            return "merged"

        artifact = asyncio.run(assemble_summary([ChunkResult(0, "only")], 1, finalize))
        assert artifact.final_summary == "only"
        assert artifact.chunk_summaries == ["only"]
        assert calls == []

    def test_multiple_chunks_are_merged(self) -> None:
        async def finalize(summaries: list[str]) -> str:
            return " + ".join(summaries)

        results = [ChunkResult(1, "b"), ChunkResult(0, "a")]
        artifact = asyncio.run(assemble_summary(results, 2, finalize))
        assert artifact.chunk_summaries == ["a", "b"]
        assert artifact.final_summary == "a + b"

    def test_empty_input(self) -> None:
        async def finalize(summaries: list[str]) -> str:
            raise AssertionError("must not be called")

        artifact = asyncio.run(assemble_summary([], 0, finalize))
        assert artifact.chunk_summaries == []
        assert artifact.final_summary == ""

    def test_final_pass_failure_carries_cause(self) -> None:
        async def finalize(summaries: list[str]) -> str:
            raise NetworkError("llm down")

        with pytest.raises(AssemblyError) as exc_info:
            asyncio.run(assemble_summary([ChunkResult(0, "a"), ChunkResult(1, "b")], 2, finalize))
        assert isinstance(exc_info.value.__cause__, NetworkError)


class TestAssembleManifest:
    def test_attaches_keys(self) -> None:
        chunks = [AudioChunk(0, 0.0, 5.0), AudioChunk(1, 5.0, 5.0)]
        results = [ChunkResult(1, "chunks/b.wav"), ChunkResult(0, "chunks/a.wav")]
        manifest = assemble_manifest(chunks, results, 10.0)
        assert manifest.duration == 10.0
        assert [c.key for c in manifest.chunks] == ["chunks/a.wav", "chunks/b.wav"]


class TestRenameSpeakers:
    def test_rewrites_labels_only(self) -> None:
        transcript = Transcript(
            segments=segments((0.0, 1.0, "SPEAKER_00", "hi"), (1.0, 2.0, "SPEAKER_01", "hey"))
        )
        renamed = rename_speakers(transcript, {"SPEAKER_00": "Alice"})
        assert renamed.segments[0] == Segment(0.0, 1.0, "Alice", "hi")
        assert renamed.segments[1] == transcript.segments[1]

    def test_original_is_unchanged(self) -> None:
        transcript = Transcript(segments=segments((0.0, 1.0, "A", "hi")))
        rename_speakers(transcript, {"A": "Alice"})
        assert transcript.segments[0].speaker == "A"

    def test_blank_names_are_ignored(self) -> None:
        transcript = Transcript(segments=segments((0.0, 1.0, "A", "hi")))
        assert rename_speakers(transcript, {"A": "  "}).segments[0].speaker == "A"
