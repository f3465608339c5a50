"""Single-flight slots: at most one run per stage kind, process-wide.

Summarization of a meeting is additionally sequenced against audio splitting
and transcription of the same meeting, since it consumes their output.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from meeting_pipeline.errors import AlreadyRunning
from meeting_pipeline.pipeline_config import StageKind

logger = logging.getLogger(__name__)

# Stages that may not run for the same meeting while the key stage runs.
_SAME_MEETING_CONFLICTS: dict[StageKind, frozenset[StageKind]] = {
    StageKind.SUMMARIZE: frozenset({StageKind.AUDIO_SPLIT, StageKind.TRANSCRIBE}),
    StageKind.TRANSCRIBE: frozenset({StageKind.SUMMARIZE}),
    StageKind.AUDIO_SPLIT: frozenset({StageKind.SUMMARIZE}),
}


@dataclass(frozen=True)
class StageToken:
    """Proof of ownership of one stage slot."""

    stage: StageKind
    meeting_id: str
    serial: int


class ConcurrencyGuard:
    """Per-stage mutual exclusion with owner tracking."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: dict[StageKind, StageToken] = {}
        self._serial = itertools.count(1)

    def try_acquire(self, stage: StageKind, meeting_id: str) -> StageToken:
        """Claim the *stage* slot for *meeting_id*.

        Raises:
            AlreadyRunning: The slot is held, or a conflicting stage is running
                for the same meeting. Carries the owning meeting id.
        """
        with self._lock:
            held = self._slots.get(stage)
            if held is not None:
                raise AlreadyRunning(held.meeting_id, stage.value)
            for other in _SAME_MEETING_CONFLICTS[stage]:
                token = self._slots.get(other)
                if token is not None and token.meeting_id == meeting_id:
                    raise AlreadyRunning(meeting_id, other.value)
            token = StageToken(stage, meeting_id, next(self._serial))
            self._slots[stage] = token
        logger.debug("Acquired %s slot for meeting %s", stage.value, meeting_id)
        return token

    def release(self, token: StageToken) -> None:
        """Free the slot if *token* still owns it; stale tokens are ignored."""
        with self._lock:
            if self._slots.get(token.stage) != token:
                return
            del self._slots[token.stage]
        logger.debug("Released %s slot for meeting %s", token.stage.value, token.meeting_id)

    @contextmanager
    def hold(self, stage: StageKind, meeting_id: str) -> Iterator[StageToken]:
        token = self.try_acquire(stage, meeting_id)
        try:
            yield token
        finally:
            self.release(token)

    def holder(self, stage: StageKind) -> StageToken | None:
        """The token currently owning the *stage* slot, if any."""
        with self._lock:
            return self._slots.get(stage)

    def owner(self, stage: StageKind) -> str | None:
        token = self.holder(stage)
        return token.meeting_id if token else None

    def is_running(self, meeting_id: str, stage: StageKind | None = None) -> bool:
        with self._lock:
            tokens = list(self._slots.values())
        return any(
            t.meeting_id == meeting_id and (stage is None or t.stage is stage) for t in tokens
        )
