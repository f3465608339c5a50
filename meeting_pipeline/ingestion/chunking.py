"""Chunking strategies for transcript text and recordings.

Both splitters share one boundary policy: the input is cut into units of
meaning (sentences or lines for text, spans between detected silences for
audio) and units are packed greedily into chunks no larger than the bound.
A unit is never split; a unit that alone exceeds the bound becomes an
oversized chunk of its own.  Chunks are gapless and non-overlapping, so
concatenating them in index order reproduces the input exactly.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from meeting_pipeline.ingestion.models import AudioChunk, TextChunk

# A unit ends after sentence punctuation followed by whitespace, or at a line
# break.  The whitespace run belongs to the unit it follows.
_UNIT_END_RE = re.compile(r"(?<=[.!?])\s+|[ \t]*\n\s*")

# Float tolerance when comparing audio spans against the bound.
_EPSILON = 1e-9


def _text_units(text: str) -> list[tuple[int, int]]:
    """Return ``(start, end)`` character spans of sentence/line units."""
    units: list[tuple[int, int]] = []
    start = 0
    for match in _UNIT_END_RE.finditer(text):
        end = match.end()
        if end > start:
            units.append((start, end))
            start = end
    if start < len(text):
        units.append((start, len(text)))
    return units


def _pack(units: Sequence[tuple[float, float]], bound: float) -> list[tuple[float, float]]:
    """Greedily merge consecutive unit spans into ranges of at most *bound*."""
    ranges: list[tuple[float, float]] = []
    current: tuple[float, float] | None = None

    for start, end in units:
        if current is None:
            current = (start, end)
        elif end - current[0] <= bound + _EPSILON:
            current = (current[0], end)
        else:
            ranges.append(current)
            current = (start, end)

    if current is not None:
        ranges.append(current)
    return ranges


def split_text(text: str, max_chars: int) -> list[TextChunk]:
    """Split *text* into sentence-aligned chunks of at most *max_chars* characters.

    Args:
        text: The full text (e.g. a rendered transcript).
        max_chars: Chunk size bound in characters.

    Returns:
        Ordered :class:`TextChunk` list; empty for empty input.

    Raises:
        ValueError: If *max_chars* is not positive.
    """
    if max_chars <= 0:
        raise ValueError(f"max_chars must be positive, got {max_chars}")
    if not text:
        return []
    if len(text) <= max_chars:
        return [TextChunk(index=0, offset=0, size=len(text), text=text)]

    chunks: list[TextChunk] = []
    for index, (start, end) in enumerate(_pack(_text_units(text), max_chars)):
        s, e = int(start), int(end)
        chunks.append(TextChunk(index=index, offset=s, size=e - s, text=text[s:e]))
    return chunks


def split_audio(
    duration: float,
    max_seconds: float,
    boundaries: Iterable[float] = (),
) -> list[AudioChunk]:
    """Partition ``[0, duration]`` into chunks cut only at silence *boundaries*.

    Args:
        duration: Length of the recording in seconds.
        max_seconds: Chunk length bound in seconds.
        boundaries: Candidate cut points in seconds (detected silences).
            Points outside ``(0, duration)`` are ignored.

    Returns:
        Ordered :class:`AudioChunk` list (without storage keys); empty when
        *duration* is zero.

    Raises:
        ValueError: If *max_seconds* is not positive.
    """
    if max_seconds <= 0:
        raise ValueError(f"max_seconds must be positive, got {max_seconds}")
    if duration <= 0:
        return []

    cuts = sorted({b for b in boundaries if 0 < b < duration})
    edges = [0.0, *cuts, float(duration)]
    units = list(zip(edges, edges[1:]))

    return [
        AudioChunk(index=index, offset=start, size=end - start)
        for index, (start, end) in enumerate(_pack(units, max_seconds))
    ]


def silence_boundaries(silences_ms: Iterable[Sequence[int]]) -> list[float]:
    """Convert detected silence ranges (milliseconds) into cut points (seconds).

    Each silence contributes its midpoint, so neither neighbouring span loses
    the speech at its edge.
    """
    return [(start + end) / 2000.0 for start, end in silences_ms]
