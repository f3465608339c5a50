"""Meeting endpoints: upload, list, rename, transcript, summary and naming."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from meeting_pipeline.api.deps import get_orchestrator, http_error
from meeting_pipeline.api.models import (
    MeetingOut,
    MeetingRename,
    SegmentOut,
    SpeakerRenameRequest,
    SummaryOut,
    TranscriptOut,
)
from meeting_pipeline.errors import PipelineError
from meeting_pipeline.ingestion.models import MeetingMetadata, Transcript
from meeting_pipeline.ingestion.storage import ArtifactKind
from meeting_pipeline.pipeline.orchestrator import PipelineOrchestrator
from meeting_pipeline.pipeline.stages import read_summary, read_transcript

router = APIRouter()

Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]

# 500 MB upload limit (long recordings)
MAX_UPLOAD_BYTES = 500 * 1024 * 1024


def _meeting_out(orchestrator: PipelineOrchestrator, metadata: MeetingMetadata) -> MeetingOut:
    store = orchestrator.store
    return MeetingOut(
        id=metadata.id,
        name=metadata.name,
        created_at=metadata.created_at,
        audio_file=metadata.audio_file,
        has_transcript=store.has_artifact(metadata.id, ArtifactKind.TRANSCRIPT),
        has_summary=store.has_artifact(metadata.id, ArtifactKind.SUMMARY),
    )


def _transcript_out(meeting_id: str, transcript: Transcript) -> TranscriptOut:
    return TranscriptOut(
        meeting_id=meeting_id,
        speakers=transcript.speakers,
        segments=[
            SegmentOut(start=s.start, end=s.end, speaker=s.speaker, text=s.text)
            for s in transcript.segments
        ],
    )


@router.get("/api/meetings", response_model=list[MeetingOut])
async def list_meetings(orchestrator: Orchestrator) -> list[MeetingOut]:
    """List all meetings ordered by creation date (newest first)."""
    return [_meeting_out(orchestrator, m) for m in orchestrator.store.list_meetings()]


@router.post("/api/meetings", response_model=MeetingOut, status_code=201)
async def create_meeting(
    orchestrator: Orchestrator,
    file: Annotated[UploadFile, File(...)],
    name: Annotated[str | None, Form()] = None,
) -> MeetingOut:
    """Upload a recording (or a JSON transcript) as a new meeting."""
    raw = await file.read()
    if len(raw) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum size is {MAX_UPLOAD_BYTES // (1024 * 1024)} MB.",
        )
    try:
        metadata = orchestrator.import_meeting(raw, file.filename or "", name=name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _meeting_out(orchestrator, metadata)


@router.get("/api/meetings/{meeting_id}", response_model=MeetingOut)
async def get_meeting(meeting_id: str, orchestrator: Orchestrator) -> MeetingOut:
    try:
        metadata = orchestrator.store.get_meeting(meeting_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _meeting_out(orchestrator, metadata)


@router.patch("/api/meetings/{meeting_id}", response_model=MeetingOut)
async def rename_meeting(
    meeting_id: str, body: MeetingRename, orchestrator: Orchestrator
) -> MeetingOut:
    try:
        metadata = orchestrator.store.rename_meeting(meeting_id, body.name.strip())
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _meeting_out(orchestrator, metadata)


@router.get("/api/meetings/{meeting_id}/transcript", response_model=TranscriptOut)
async def get_transcript(meeting_id: str, orchestrator: Orchestrator) -> TranscriptOut:
    try:
        transcript = read_transcript(orchestrator.store, meeting_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _transcript_out(meeting_id, transcript)


@router.put("/api/meetings/{meeting_id}/speakers", response_model=TranscriptOut)
async def rename_speakers(
    meeting_id: str, body: SpeakerRenameRequest, orchestrator: Orchestrator
) -> TranscriptOut:
    """Rewrite speaker labels in the stored transcript (no service calls)."""
    try:
        transcript = orchestrator.rename_speakers(meeting_id, body.mapping)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _transcript_out(meeting_id, transcript)


@router.get("/api/meetings/{meeting_id}/summary", response_model=SummaryOut)
async def get_summary(meeting_id: str, orchestrator: Orchestrator) -> SummaryOut:
    try:
        summary = read_summary(orchestrator.store, meeting_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return SummaryOut(meeting_id=meeting_id, **summary.to_dict())


@router.post("/api/meetings/{meeting_id}/summary/final", response_model=SummaryOut)
async def regenerate_final_summary(meeting_id: str, orchestrator: Orchestrator) -> SummaryOut:
    """Re-run only the final summary pass over the stored chunk summaries."""
    try:
        summary = await orchestrator.regenerate_final_summary(meeting_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return SummaryOut(meeting_id=meeting_id, **summary.to_dict())


@router.post("/api/meetings/{meeting_id}/name", response_model=MeetingOut)
async def generate_name(meeting_id: str, orchestrator: Orchestrator) -> MeetingOut:
    """Name the meeting from its transcript with one language-model call."""
    try:
        metadata = await orchestrator.generate_name(meeting_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _meeting_out(orchestrator, metadata)
