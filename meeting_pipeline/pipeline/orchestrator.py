"""Drive a meeting through a pipeline stage, chunk by chunk.

One run is::

    acquire slot -> build handler -> [prerequisite] -> load -> split
        -> (process chunk -> advance progress)* -> assemble -> persist

Failures abort the whole run: the artifact is written only on success, so a
failed or cancelled run leaves the previous artifact (if any) in place and the
stage can be re-run.  The slot is released and progress returns to idle on
every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from enum import Enum
from typing import Any

from meeting_pipeline.config import Settings, get_settings
from meeting_pipeline.errors import (
    AlreadyRunning,
    ChunkProcessingError,
    ConfigError,
    PipelineError,
    RunCancelled,
    ServiceError,
)
from meeting_pipeline.ingestion.audio import AUDIO_EXTENSIONS
from meeting_pipeline.ingestion.models import ChunkResult, MeetingMetadata, SummaryArtifact, Transcript
from meeting_pipeline.ingestion.parsers import parse_json
from meeting_pipeline.ingestion.storage import ArtifactKind, MeetingStore
from meeting_pipeline.pipeline.assembly import rename_speakers
from meeting_pipeline.pipeline.guard import ConcurrencyGuard, StageToken
from meeting_pipeline.pipeline.progress import ProgressTracker, StageState
from meeting_pipeline.pipeline.stages import (
    StageFactory,
    StageHandler,
    SummaryStage,
    read_transcript,
    write_transcript,
)
from meeting_pipeline.pipeline_config import StageKind
from meeting_pipeline.summarization.naming import generate_meeting_name

logger = logging.getLogger(__name__)

STAGE_ARTIFACTS: dict[StageKind, ArtifactKind] = {
    StageKind.AUDIO_SPLIT: ArtifactKind.AUDIO_MANIFEST,
    StageKind.TRANSCRIBE: ArtifactKind.TRANSCRIPT,
    StageKind.SUMMARIZE: ArtifactKind.SUMMARY,
}


class RunPhase(str, Enum):
    NOT_STARTED = "not_started"
    SPLITTING = "splitting"
    PROCESSING = "processing"
    ASSEMBLING = "assembling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineOrchestrator:
    """Runs stages for meetings; the single place that aborts, cleans up and reports."""

    def __init__(
        self,
        store: MeetingStore,
        stages: StageFactory,
        tracker: ProgressTracker | None = None,
        guard: ConcurrencyGuard | None = None,
    ) -> None:
        self.store = store
        self.stages = stages
        self.tracker = tracker or ProgressTracker()
        self.guard = guard or ConcurrencyGuard()
        self._phases: dict[tuple[str, StageKind], RunPhase] = {}
        self._cancel_requested: set[StageToken] = set()
        self._tasks: dict[asyncio.Task[Any], StageToken] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def run(self, meeting_id: str, stage: StageKind) -> Any:
        """Run *stage* for *meeting_id* to completion and return its artifact.

        Raises:
            AlreadyRunning: The stage slot is taken (not retried).
            ConfigError: The configuration snapshot is invalid.
            InputNotFound: The stage input does not exist.
            ChunkProcessingError: A chunk failed after retries.
            AssemblyError: Results could not be merged.
            RunCancelled: :meth:`cancel` was honoured at a chunk boundary.
        """
        token = self.guard.try_acquire(stage, meeting_id)
        return await self._run_owned(token)

    def start(self, meeting_id: str, stage: StageKind) -> asyncio.Task[Any]:
        """Claim the slot now and run the stage in a background task.

        Must be called from a running event loop.  Contention
        (:class:`AlreadyRunning`) and invalid configuration (:class:`ConfigError`)
        are reported synchronously.
        """
        token = self.guard.try_acquire(stage, meeting_id)
        try:
            handler = self.stages.build(stage)
            task = asyncio.get_running_loop().create_task(self._run_owned(token, handler))
        except BaseException:
            self.guard.release(token)
            raise
        self._tasks[task] = token
        task.add_done_callback(self._task_done)
        return task

    def import_meeting(self, data: bytes, filename: str, name: str | None = None) -> MeetingMetadata:
        """Create a meeting from a recording or from an existing JSON transcript.

        Raises:
            ValueError: Unsupported file type or unreadable transcript.
        """
        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if ext in AUDIO_EXTENSIONS:
            return self.store.create_meeting(data, filename=filename, name=name)
        if ext != "json":
            raise ValueError(f"Unsupported file type: {filename!r}")

        transcript = parse_json(data.decode("utf-8"))
        metadata = self.store.create_meeting(None, name=name)
        write_transcript(self.store, metadata.id, transcript)
        logger.info(
            "Imported transcript with %d segment(s) as meeting %s",
            len(transcript.segments),
            metadata.id,
        )
        return metadata

    def query_status(self, stage: StageKind) -> StageState:
        return self.tracker.snapshot(stage)

    def run_phase(self, meeting_id: str, stage: StageKind) -> RunPhase:
        """Phase of the latest run in this process, else ``completed`` if an artifact exists."""
        phase = self._phases.get((meeting_id, stage))
        if phase is not None:
            return phase
        if self.store.has_artifact(meeting_id, STAGE_ARTIFACTS[stage]):
            return RunPhase.COMPLETED
        return RunPhase.NOT_STARTED

    def cancel(self, meeting_id: str, stage: StageKind) -> bool:
        """Request cancellation; honoured before the next chunk starts.

        The request is bound to the run holding the slot now and ends with it.
        Returns False when no such run is active.
        """
        token = self.guard.holder(stage)
        if token is None or token.meeting_id != meeting_id:
            return False
        self._cancel_requested.add(token)
        logger.info("Cancellation requested for %s of meeting %s", stage.value, meeting_id)
        return True

    async def regenerate_final_summary(self, meeting_id: str) -> SummaryArtifact:
        """Re-run only the final summary pass over the stored chunk summaries.

        A cancellation requested during the pass is honoured before the result
        is stored.
        """
        with self.guard.hold(StageKind.SUMMARIZE, meeting_id) as token:
            try:
                handler = self.stages.build(StageKind.SUMMARIZE)
                if not isinstance(handler, SummaryStage):
                    raise ConfigError("Summarize stage does not support final-summary regeneration")
                self.tracker.start(StageKind.SUMMARIZE, meeting_id, 1)
                try:
                    artifact = await handler.regenerate(meeting_id)
                    self._check_cancelled(token)
                    await handler.persist(meeting_id, artifact)
                except BaseException:
                    self.tracker.fail(StageKind.SUMMARIZE, meeting_id)
                    raise
                self.tracker.advance(StageKind.SUMMARIZE)
                self.tracker.finish(StageKind.SUMMARIZE)
                return artifact
            finally:
                self._cancel_requested.discard(token)

    async def generate_name(self, meeting_id: str) -> MeetingMetadata:
        """Name the meeting from its transcript with one language-model call."""
        settings = self.stages.settings()
        client = self.stages.llm_client(settings)
        return await generate_meeting_name(
            self.store,
            client,
            meeting_id,
            language=settings.prompt_language,
            max_chars=client.config.chunk_size,
        )

    def rename_speakers(self, meeting_id: str, mapping: Mapping[str, str]) -> Transcript:
        """Rewrite speaker labels in the stored transcript; no service calls."""
        if self.guard.is_running(meeting_id, StageKind.TRANSCRIBE):
            raise AlreadyRunning(meeting_id, StageKind.TRANSCRIBE.value)
        transcript = rename_speakers(read_transcript(self.store, meeting_id), mapping)
        write_transcript(self.store, meeting_id, transcript)
        logger.info("Renamed %d speaker(s) for meeting %s", len(mapping), meeting_id)
        return transcript

    async def services_health(self) -> dict[str, bool]:
        """Check both engines; an unusable configuration counts as unhealthy."""
        settings = self.stages.settings()
        health: dict[str, bool] = {}
        for name, build in (
            ("llm", self.stages.llm_client),
            ("transcription", self.stages.transcription_client),
        ):
            try:
                client = build(settings)
            except ConfigError as exc:
                logger.warning("%s service is misconfigured: %s", name, exc)
                health[name] = False
                continue
            health[name] = await client.health_check()
        return health

    async def shutdown(self) -> None:
        """Cancel and await background runs."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Run internals
    # ------------------------------------------------------------------

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        token = self._tasks.pop(task, None)
        # A task cancelled before its first step never reaches its own cleanup.
        if token is not None:
            self.guard.release(token)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, RunCancelled):
            logger.error("Background run failed: %s", exc)

    def _set_phase(self, key: tuple[str, StageKind], phase: RunPhase) -> None:
        self._phases[key] = phase
        logger.debug("%s/%s -> %s", key[0], key[1].value, phase.value)

    def _check_cancelled(self, token: StageToken) -> None:
        if token in self._cancel_requested:
            raise RunCancelled(token.meeting_id, token.stage.value)

    async def _run_owned(
        self, token: StageToken, handler: StageHandler[Any, Any, Any, Any] | None = None
    ) -> Any:
        meeting_id, stage = token.meeting_id, token.stage
        key = (meeting_id, stage)
        started = time.perf_counter()
        logger.info("Starting %s for meeting %s", stage.value, meeting_id)

        try:
            if handler is None:
                handler = self.stages.build(stage)
            self._set_phase(key, RunPhase.SPLITTING)

            if handler.prerequisite is not None and not handler.prerequisite_ready(meeting_id):
                logger.info(
                    "Running prerequisite %s for meeting %s", handler.prerequisite.value, meeting_id
                )
                await self.run(meeting_id, handler.prerequisite)
                self._check_cancelled(token)

            source = await handler.load_input(meeting_id)
            chunks = handler.split(source)
            logger.info("%s: %d chunk(s) for meeting %s", stage.value, len(chunks), meeting_id)

            self._set_phase(key, RunPhase.PROCESSING)
            if chunks:
                self.tracker.start(stage, meeting_id, len(chunks))
            results: list[ChunkResult[Any]] = []
            for chunk in chunks:
                self._check_cancelled(token)
                chunk_started = time.perf_counter()
                try:
                    output = await handler.process(meeting_id, chunk)
                except ServiceError as exc:
                    raise ChunkProcessingError(chunk.index, exc) from exc
                result = ChunkResult(chunk.index, output)
                handler.accept(result)
                results.append(result)
                self.tracker.advance(stage)
                logger.info(
                    "%s chunk %d/%d done in %.2fs",
                    stage.value,
                    chunk.index + 1,
                    len(chunks),
                    time.perf_counter() - chunk_started,
                )
            self._check_cancelled(token)

            self._set_phase(key, RunPhase.ASSEMBLING)
            artifact = await handler.assemble(meeting_id, source, chunks, results)
            self._check_cancelled(token)
            await handler.persist(meeting_id, artifact)
        except BaseException as exc:
            cancelled = isinstance(exc, (RunCancelled, asyncio.CancelledError))
            self._set_phase(key, RunPhase.CANCELLED if cancelled else RunPhase.FAILED)
            self.tracker.fail(stage, meeting_id)
            if handler is not None:
                await self._discard(handler, meeting_id)
            logger.warning(
                "%s for meeting %s %s after %.2fs: %s",
                stage.value,
                meeting_id,
                "cancelled" if cancelled else "failed",
                time.perf_counter() - started,
                exc,
            )
            raise
        else:
            self._set_phase(key, RunPhase.COMPLETED)
            self.tracker.finish(stage)
            logger.info(
                "Finished %s for meeting %s in %.2fs",
                stage.value,
                meeting_id,
                time.perf_counter() - started,
            )
            return artifact
        finally:
            self.guard.release(token)
            self._cancel_requested.discard(token)

    async def _discard(self, handler: StageHandler[Any, Any, Any, Any], meeting_id: str) -> None:
        try:
            await handler.discard(meeting_id)
        except PipelineError:
            # The run's own error is what the caller needs to see.
            logger.exception("Failed to discard intermediate files for meeting %s", meeting_id)


def build_orchestrator(settings: Settings | None = None) -> PipelineOrchestrator:
    """Orchestrator over the configured storage directory."""
    settings = settings or get_settings()
    store = MeetingStore(settings.storage_dir)
    return PipelineOrchestrator(store, StageFactory(store, settings_provider=lambda: settings))
