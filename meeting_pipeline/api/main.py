from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meeting_pipeline.api.deps import get_orchestrator
from meeting_pipeline.api.routes.meetings import router as meetings_router
from meeting_pipeline.api.routes.stages import router as stages_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Background stage runs do not outlive the server; their slots are released.
    orchestrator = app.dependency_overrides.get(get_orchestrator, get_orchestrator)()
    logger.info("Shutting down: cancelling background stage runs")
    await orchestrator.shutdown()


app = FastAPI(
    title="Meeting Pipeline API",
    description="Chunked transcription and summarization of long meeting recordings",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_origin_regex=r"http://(localhost|127\.0\.0\.1):\d+",
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
)

app.include_router(meetings_router)
app.include_router(stages_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}
