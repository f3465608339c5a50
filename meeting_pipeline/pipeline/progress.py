"""Process-wide progress state per stage, with change notifications.

Each :class:`StageKind` has exactly one :class:`StageState`.  A stage moves
``Idle -> Active(0, N) -> ... -> Active(N, N) -> Idle``; every exit path
(finish, fail, reset) returns it to Idle.  Listeners receive a
:class:`ProgressEvent` for every transition.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from meeting_pipeline.pipeline_config import StageKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageState:
    """Snapshot of one stage's progress."""

    stage: StageKind
    meeting_id: str | None = None
    current: int = 0
    total: int = 0
    active: bool = False

    @property
    def fraction(self) -> float:
        if not self.active or self.total == 0:
            return 0.0
        return self.current / self.total


class EventKind(str, Enum):
    STARTED = "stage-started"
    PROGRESS = "stage-progress"
    FINISHED = "stage-finished"
    FAILED = "stage-failed"


@dataclass(frozen=True)
class ProgressEvent:
    kind: EventKind
    state: StageState

    @property
    def meeting_id(self) -> str | None:
        return self.state.meeting_id


Listener = Callable[[ProgressEvent], None]


class ProgressTracker:
    """Thread-safe per-stage progress counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[StageKind, StageState] = {stage: StageState(stage) for stage in StageKind}
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; return a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: EventKind, state: StageState) -> None:
        with self._lock:
            listeners = list(self._listeners)
        event = ProgressEvent(kind, state)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed on %s", kind.value)

    def start(self, stage: StageKind, meeting_id: str, total: int) -> StageState:
        """Begin tracking *stage* for *meeting_id* with *total* chunks.

        Raises:
            RuntimeError: The stage is already active.
            ValueError: *total* is negative.
        """
        if total < 0:
            raise ValueError(f"total must be non-negative, got {total}")
        with self._lock:
            if self._states[stage].active:
                raise RuntimeError(f"{stage.value} progress is already active")
            state = StageState(stage, meeting_id, current=0, total=total, active=True)
            self._states[stage] = state
        self._emit(EventKind.STARTED, state)
        return state

    def advance(self, stage: StageKind) -> StageState:
        """Count one finished chunk; the counter never exceeds the total."""
        with self._lock:
            state = self._states[stage]
            if not state.active:
                raise RuntimeError(f"{stage.value} progress is not active")
            state = replace(state, current=min(state.current + 1, state.total))
            self._states[stage] = state
        self._emit(EventKind.PROGRESS, state)
        return state

    def _to_idle(self, stage: StageKind) -> StageState | None:
        """Return the stage to Idle; return its last active state, if any."""
        with self._lock:
            previous = self._states[stage]
            self._states[stage] = StageState(stage)
        return previous if previous.active else None

    def finish(self, stage: StageKind) -> None:
        previous = self._to_idle(stage)
        if previous is not None:
            self._emit(EventKind.FINISHED, previous)

    def fail(self, stage: StageKind, meeting_id: str | None = None) -> None:
        """Return *stage* to Idle and report the failure for *meeting_id*.

        Emits even when the stage was never started (a failure before the
        chunk count was known).
        """
        previous = self._to_idle(stage)
        if previous is None:
            previous = StageState(stage, meeting_id)
        self._emit(EventKind.FAILED, previous)

    def reset(self, stage: StageKind) -> None:
        self._to_idle(stage)

    def snapshot(self, stage: StageKind) -> StageState:
        with self._lock:
            return self._states[stage]

    def snapshots(self) -> dict[StageKind, StageState]:
        with self._lock:
            return dict(self._states)
