"""Flat per-meeting directory storage for recordings and pipeline artifacts.

Layout under the storage root::

    <root>/<meeting_id>/meeting.json
    <root>/<meeting_id>/audio.<ext>
    <root>/<meeting_id>/transcript.{json,txt,vtt}
    <root>/<meeting_id>/summary.{json,md}
    <root>/<meeting_id>/chunks/...
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import uuid
from collections.abc import Collection
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from meeting_pipeline.errors import InputNotFound, StorageError
from meeting_pipeline.ingestion.models import MeetingMetadata

logger = logging.getLogger(__name__)

CHUNKS_DIR = "chunks"

_MEETING_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_CHUNK_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def utc_timestamp() -> str:
    """Current time as ISO-8601 UTC with millisecond precision."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class ArtifactKind(str, Enum):
    """Named files inside a meeting directory."""

    METADATA = "meeting.json"
    AUDIO_MANIFEST = "chunks/audio_manifest.json"
    TRANSCRIPT = "transcript.json"
    TRANSCRIPT_TEXT = "transcript.txt"
    TRANSCRIPT_VTT = "transcript.vtt"
    SUMMARY = "summary.json"
    SUMMARY_MARKDOWN = "summary.md"


class MeetingStore:
    """Key-path file store rooted at *root* (one directory per meeting)."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def meeting_dir(self, meeting_id: str) -> Path:
        if not _MEETING_ID_RE.match(meeting_id) or ".." in meeting_id:
            raise StorageError(f"Invalid meeting id: {meeting_id!r}")
        return self.root / meeting_id

    def _path(self, meeting_id: str, relative: str) -> Path:
        return self.meeting_dir(meeting_id) / relative

    def _write(self, path: Path, content: str | bytes) -> None:
        """Write via a temporary file so readers never see a partial artifact."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(f".{path.name}.tmp")
            if isinstance(content, bytes):
                tmp.write_bytes(content)
            else:
                tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc

    def _read(self, path: Path, binary: bool) -> str | bytes:
        try:
            return path.read_bytes() if binary else path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise InputNotFound(f"{path.name} not found for meeting {path.parent.name}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Meetings
    # ------------------------------------------------------------------

    def create_meeting(
        self,
        audio: bytes | None,
        filename: str = "audio.wav",
        name: str | None = None,
        meeting_id: str | None = None,
    ) -> MeetingMetadata:
        """Save a new meeting (with its recording, if given); return the metadata."""
        meeting_id = meeting_id or uuid.uuid4().hex
        if self.meeting_dir(meeting_id).exists():
            raise StorageError(f"Meeting {meeting_id} already exists")

        audio_file = None
        if audio is not None:
            ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "wav"
            audio_file = f"audio.{ext}"
            self._write(self._path(meeting_id, audio_file), audio)

        metadata = MeetingMetadata(
            id=meeting_id,
            created_at=utc_timestamp(),
            name=name,
            audio_file=audio_file,
        )
        self.save_meeting(metadata)
        logger.info("Created meeting %s (%d bytes of audio)", meeting_id, len(audio or b""))
        return metadata

    def save_meeting(self, metadata: MeetingMetadata) -> None:
        self._write(
            self._path(metadata.id, ArtifactKind.METADATA.value),
            json.dumps(metadata.to_dict(), indent=2),
        )

    def get_meeting(self, meeting_id: str) -> MeetingMetadata:
        raw = self._read(self._path(meeting_id, ArtifactKind.METADATA.value), binary=False)
        try:
            return MeetingMetadata.from_dict(json.loads(raw))
        except (ValueError, KeyError) as exc:
            raise StorageError(f"Corrupt metadata for meeting {meeting_id}: {exc}") from exc

    def list_meetings(self) -> list[MeetingMetadata]:
        """All meetings with readable metadata, newest first."""
        if not self.root.exists():
            return []
        meetings: list[MeetingMetadata] = []
        for entry in self.root.iterdir():
            if not (entry / ArtifactKind.METADATA.value).exists():
                continue
            try:
                meetings.append(self.get_meeting(entry.name))
            except StorageError:
                logger.warning("Skipping meeting %s with unreadable metadata", entry.name)
        meetings.sort(key=lambda m: m.created_at, reverse=True)
        return meetings

    def rename_meeting(self, meeting_id: str, name: str) -> MeetingMetadata:
        metadata = self.get_meeting(meeting_id)
        metadata.name = name
        self.save_meeting(metadata)
        return metadata

    # ------------------------------------------------------------------
    # Stage inputs and artifacts
    # ------------------------------------------------------------------

    def read_audio(self, meeting_id: str) -> tuple[bytes, str]:
        """Return the recording bytes and their file extension."""
        metadata = self.get_meeting(meeting_id)
        if not metadata.audio_file:
            raise InputNotFound(f"Meeting {meeting_id} has no recording")
        data = self._read(self._path(meeting_id, metadata.audio_file), binary=True)
        ext = metadata.audio_file.rsplit(".", 1)[-1]
        return data, ext  # type: ignore[return-value]

    def read_input(self, meeting_id: str, kind: ArtifactKind) -> str:
        """Read a text artifact that a stage consumes as input."""
        return self._read(self._path(meeting_id, kind.value), binary=False)  # type: ignore[return-value]

    read_artifact = read_input

    def write_artifact(self, meeting_id: str, kind: ArtifactKind, content: str) -> None:
        self._write(self._path(meeting_id, kind.value), content)

    def has_artifact(self, meeting_id: str, kind: ArtifactKind) -> bool:
        return self._path(meeting_id, kind.value).exists()

    # ------------------------------------------------------------------
    # Chunk files
    # ------------------------------------------------------------------

    def write_chunk(self, meeting_id: str, name: str, content: str | bytes) -> str:
        """Write an intermediate chunk file; return its storage key."""
        if not _CHUNK_NAME_RE.match(name):
            raise StorageError(f"Invalid chunk file name: {name!r}")
        key = f"{CHUNKS_DIR}/{name}"
        self._write(self._path(meeting_id, key), content)
        return key

    def read_chunk(self, meeting_id: str, key: str) -> bytes:
        if not key.startswith(f"{CHUNKS_DIR}/") or ".." in key:
            raise StorageError(f"Invalid chunk key: {key!r}")
        return self._read(self._path(meeting_id, key), binary=True)  # type: ignore[return-value]

    def discard_chunks(self, meeting_id: str, prefix: str, keep: Collection[str] = ()) -> int:
        """Delete chunk files whose name starts with *prefix*; return the count.

        Keys listed in *keep* (``chunks/<name>``) are left in place.
        """
        chunks_dir = self._path(meeting_id, CHUNKS_DIR)
        if not chunks_dir.exists():
            return 0
        removed = 0
        for path in chunks_dir.glob(f"{prefix}*"):
            if f"{CHUNKS_DIR}/{path.name}" in keep:
                continue
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                removed += 1
            except OSError as exc:
                raise StorageError(f"Failed to remove {path}: {exc}") from exc
        return removed
