"""Stage endpoints: start, cancel and observe pipeline runs."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from meeting_pipeline.api.deps import get_orchestrator, http_error
from meeting_pipeline.api.models import ServicesHealth, StagePhase, StageRunResponse, StageStatus
from meeting_pipeline.errors import PipelineError
from meeting_pipeline.pipeline.orchestrator import PipelineOrchestrator
from meeting_pipeline.pipeline_config import StageKind

router = APIRouter()

Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]


@router.post(
    "/api/meetings/{meeting_id}/stages/{stage}",
    response_model=StageRunResponse,
    status_code=202,
)
async def start_stage(
    meeting_id: str, stage: StageKind, orchestrator: Orchestrator
) -> StageRunResponse:
    """Start *stage* for the meeting in the background.

    Returns 409 when the stage is already running (for any meeting) and 400
    when the configuration is invalid.  Poll ``GET /api/stages/{stage}`` for
    progress.
    """
    try:
        orchestrator.store.get_meeting(meeting_id)
        orchestrator.start(meeting_id, stage)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return StageRunResponse(meeting_id=meeting_id, stage=stage, status="started")


@router.delete(
    "/api/meetings/{meeting_id}/stages/{stage}",
    response_model=StageRunResponse,
    status_code=202,
)
async def cancel_stage(
    meeting_id: str, stage: StageKind, orchestrator: Orchestrator
) -> StageRunResponse:
    """Cancel a running stage at the next chunk boundary."""
    if not orchestrator.cancel(meeting_id, stage):
        raise HTTPException(status_code=404, detail=f"No {stage.value} run for meeting {meeting_id}")
    return StageRunResponse(meeting_id=meeting_id, stage=stage, status="cancelling")


@router.get("/api/meetings/{meeting_id}/stages/{stage}", response_model=StagePhase)
async def stage_phase(meeting_id: str, stage: StageKind, orchestrator: Orchestrator) -> StagePhase:
    try:
        phase = orchestrator.run_phase(meeting_id, stage)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return StagePhase(meeting_id=meeting_id, stage=stage, phase=phase.value)


@router.get("/api/stages/{stage}", response_model=StageStatus)
async def stage_status(stage: StageKind, orchestrator: Orchestrator) -> StageStatus:
    state = orchestrator.query_status(stage)
    return StageStatus(
        stage=state.stage,
        meeting_id=state.meeting_id,
        current=state.current,
        total=state.total,
        active=state.active,
    )


@router.get("/api/services/health", response_model=ServicesHealth)
async def services_health(orchestrator: Orchestrator) -> ServicesHealth:
    """Check the language-model and transcription engines (no retries)."""
    return ServicesHealth(**await orchestrator.services_health())
