"""pydub helpers: decode recordings, detect silences, export chunk ranges.

All functions here are blocking; callers on the event loop run them via
``asyncio.to_thread``.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field

from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError
from pydub.silence import detect_silence

from meeting_pipeline.errors import StorageError
from meeting_pipeline.ingestion.chunking import silence_boundaries

logger = logging.getLogger(__name__)

CHUNK_FORMAT = "wav"

# Extensions accepted as recordings
AUDIO_EXTENSIONS = {"mp3", "wav", "m4a", "mp4", "ogg", "flac", "webm"}


@dataclass
class DecodedAudio:
    """A decoded recording plus the silence cut points found in it."""

    segment: AudioSegment
    duration: float
    boundaries: list[float] = field(default_factory=list)


def decode_audio(data: bytes, fmt: str) -> AudioSegment:
    """Decode recording bytes (formats other than WAV need ffmpeg on PATH)."""
    try:
        return AudioSegment.from_file(io.BytesIO(data), format=fmt)
    except (CouldntDecodeError, IndexError) as exc:
        raise StorageError(f"Could not decode {fmt} recording: {exc}") from exc


def analyze_audio(
    data: bytes,
    fmt: str,
    min_silence_ms: int = 700,
    silence_thresh_dbfs: float = -40.0,
) -> DecodedAudio:
    """Decode a recording and find candidate cut points between utterances."""
    segment = decode_audio(data, fmt)
    silences = detect_silence(
        segment,
        min_silence_len=min_silence_ms,
        silence_thresh=silence_thresh_dbfs,
        seek_step=10,
    )
    duration = len(segment) / 1000.0
    logger.info(
        "Analyzed recording: %.2fs, %d silences >= %dms", duration, len(silences), min_silence_ms
    )
    return DecodedAudio(segment=segment, duration=duration, boundaries=silence_boundaries(silences))


def export_range(segment: AudioSegment, start: float, end: float) -> bytes:
    """Export ``[start, end)`` seconds of *segment* as WAV bytes."""
    buf = io.BytesIO()
    segment[int(round(start * 1000)) : int(round(end * 1000))].export(buf, format=CHUNK_FORMAT)
    return buf.getvalue()
