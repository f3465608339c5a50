"""Shared route dependencies and error translation."""

from __future__ import annotations

from functools import lru_cache

from fastapi import HTTPException

from meeting_pipeline.config import get_settings
from meeting_pipeline.errors import (
    AlreadyRunning,
    ConfigError,
    InputNotFound,
    PipelineError,
    ServiceError,
)
from meeting_pipeline.pipeline.orchestrator import PipelineOrchestrator, build_orchestrator


@lru_cache(maxsize=1)
def get_orchestrator() -> PipelineOrchestrator:
    """Process-wide orchestrator (overridden in tests)."""
    return build_orchestrator(get_settings())


def http_error(exc: PipelineError) -> HTTPException:
    """Map a pipeline error onto an HTTP status."""
    if isinstance(exc, InputNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AlreadyRunning):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ConfigError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ServiceError):
        # Not the client's fault: the engine is down or rejected the request.
        return HTTPException(status_code=503, detail=f"Service unavailable: {exc}")
    return HTTPException(status_code=500, detail=str(exc))
