"""Pydantic request/response schemas for the Meeting Pipeline API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from meeting_pipeline.pipeline_config import StageKind


class MeetingOut(BaseModel):
    """A meeting and which artifacts it has."""

    id: str
    name: str | None = None
    created_at: str | None = None
    audio_file: str | None = None
    has_transcript: bool = False
    has_summary: bool = False


class MeetingRename(BaseModel):
    name: str = Field(min_length=1)


class SegmentOut(BaseModel):
    start: float
    end: float
    speaker: str
    text: str = ""


class TranscriptOut(BaseModel):
    meeting_id: str
    speakers: list[str]
    segments: list[SegmentOut]


class SpeakerRenameRequest(BaseModel):
    """Old speaker label -> new name."""

    mapping: dict[str, str]


class SummaryOut(BaseModel):
    meeting_id: str
    final_summary: str
    chunk_summaries: list[str] = []
    model: str | None = None
    created_at: str | None = None
    title: str | None = None
    chunk_details: list[dict[str, Any]] = []
    final_details: dict[str, Any] | None = None


class StageRunResponse(BaseModel):
    meeting_id: str
    stage: StageKind
    status: str


class StageStatus(BaseModel):
    """Live progress of one stage (process-wide)."""

    stage: StageKind
    meeting_id: str | None = None
    current: int = 0
    total: int = 0
    active: bool = False


class StagePhase(BaseModel):
    meeting_id: str
    stage: StageKind
    phase: str


class ServicesHealth(BaseModel):
    llm: bool
    transcription: bool
