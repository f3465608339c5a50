"""Transcript parsers and renderers (JSON, plain text, WebVTT)."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from meeting_pipeline.ingestion.models import Segment, Transcript

DEFAULT_SPEAKER = "SPEAKER_00"

# Engines occasionally report zero-length segments; keep them ordered but non-empty.
MIN_SEGMENT_SECONDS = 0.01


def make_segment(
    start: float | None,
    end: float | None,
    speaker: str | None,
    text: str | None,
) -> Segment:
    """Build a :class:`Segment`, normalising missing fields and zero-length spans."""
    start_s = float(start or 0.0)
    end_s = float(end if end is not None else start_s)
    if end_s <= start_s:
        end_s = start_s + MIN_SEGMENT_SECONDS
    return Segment(
        start=start_s,
        end=end_s,
        speaker=str(speaker) if speaker not in (None, "") else DEFAULT_SPEAKER,
        text=(text or "").strip(),
    )


def _seconds(value: Any, field: str, position: int) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Record {position}: {field!r} must be a number, got {value!r}")
    return float(value)


def segments_from_records(records: Any, scale: float = 1.0) -> list[Segment]:
    """Convert ``{"start", "end", "speaker", "text"}`` records into segments.

    Args:
        records: A list of segment-like mappings.
        scale: Multiplier applied to times (``0.001`` for milliseconds).

    Raises:
        ValueError: *records* is not a list of objects, or a time is not numeric.
    """
    if not isinstance(records, list):
        raise ValueError(f"Expected a list of segments, got {type(records).__name__}")
    segments: list[Segment] = []
    for position, rec in enumerate(records):
        if not isinstance(rec, Mapping):
            raise ValueError(f"Record {position}: expected an object, got {type(rec).__name__}")
        start = _seconds(rec.get("start", rec.get("start_time")), "start", position)
        end = _seconds(rec.get("end", rec.get("end_time")), "end", position)
        text = rec.get("text")
        segments.append(
            make_segment(
                start * scale if start is not None else None,
                end * scale if end is not None else None,
                rec.get("speaker", rec.get("speaker_id")),
                text if isinstance(text, str) else None,
            )
        )
    return segments


def parse_json(content: str) -> Transcript:
    """Parse a JSON transcript (internal/Whisper segments or AssemblyAI utterances).

    Supported formats:

    Internal and Whisper verbose JSON (times in seconds)::

        {"segments": [{"start": s, "end": s, "speaker": "...", "text": "..."}]}

    AssemblyAI (times in milliseconds)::

        {"utterances": [{"speaker": "A", "text": "...", "start": ms, "end": ms}]}
    """
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")

    if "segments" in data:
        segments = segments_from_records(data["segments"])
    elif "utterances" in data:
        segments = segments_from_records(data["utterances"], scale=0.001)
    else:
        msg = f"Unrecognized JSON transcript format. Keys: {list(data.keys())}"
        raise ValueError(msg)

    return Transcript(segments=segments)


def format_timestamp(seconds: float, millis: bool = False) -> str:
    """Format seconds as ``HH:MM:SS`` (or ``HH:MM:SS.mmm``)."""
    total_ms = int(round(seconds * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    if millis:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}.{ms:03d}"
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def render_text(transcript: Transcript) -> str:
    """Render a transcript as ``[HH:MM:SS] SPEAKER: text`` lines.

    Segments with empty text are skipped.
    """
    lines = [
        f"[{format_timestamp(seg.start)}] {seg.speaker}: {seg.text}"
        for seg in transcript.segments
        if seg.text
    ]
    return "\n".join(lines) + ("\n" if lines else "")


def render_vtt(transcript: Transcript) -> str:
    """Render a transcript as WebVTT with ``<v Speaker>`` voice tags."""
    cues = ["WEBVTT", ""]
    for seg in transcript.segments:
        cues.append(
            f"{format_timestamp(seg.start, millis=True)} --> {format_timestamp(seg.end, millis=True)}"
        )
        cues.append(f"<v {seg.speaker}>{seg.text}</v>")
        cues.append("")
    return "\n".join(cues)
