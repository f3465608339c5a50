"""Error taxonomy shared by the pipeline components."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the meeting pipeline."""


class ConfigError(PipelineError):
    """Invalid configuration detected before any external call."""


class ServiceError(PipelineError):
    """Failure talking to an external service (transcription or LLM)."""


class NetworkError(ServiceError):
    """Connection or transport failure. Retried automatically."""


class ServiceTimeoutError(ServiceError):
    """The call exceeded the configured per-call timeout. Retried automatically."""


class RemoteError(ServiceError):
    """The backend answered with a non-success status or an unusable payload.

    Never retried automatically: the caller decides whether to re-run.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InputNotFound(PipelineError):
    """The stage input (recording, manifest, transcript, ...) does not exist."""


class StorageError(PipelineError):
    """Reading or writing the per-meeting directory failed."""


class AlreadyRunning(PipelineError):
    """Another run holds the stage slot."""

    def __init__(self, owner_id: str, stage: str) -> None:
        super().__init__(f"{stage} is already running for meeting {owner_id}")
        self.owner_id = owner_id
        self.stage = stage


class ChunkProcessingError(PipelineError):
    """A chunk failed unrecoverably; the whole run is aborted."""

    def __init__(self, index: int, cause: BaseException) -> None:
        super().__init__(f"Chunk {index} failed: {cause}")
        self.index = index
        self.cause = cause


class AssemblyError(PipelineError):
    """Chunk results could not be merged into a single artifact."""


class RunCancelled(PipelineError):
    """The run was cancelled at a chunk boundary."""

    def __init__(self, meeting_id: str, stage: str) -> None:
        super().__init__(f"{stage} run for meeting {meeting_id} was cancelled")
        self.meeting_id = meeting_id
        self.stage = stage
