"""Uniform request/response wrapper around external services with retry/backoff.

Every attempt is reduced to a :class:`CallOutcome` (success, retryable or
fatal), so the retry-vs-abort decision depends only on the outcome kind:

- ``NetworkError`` / ``ServiceTimeoutError`` -> retryable, up to ``max_retries``
  extra attempts with exponential backoff.
- ``RemoteError`` -> fatal, surfaced on the first occurrence.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Protocol, TypeVar

from meeting_pipeline.errors import (
    NetworkError,
    ServiceError,
    ServiceTimeoutError,
)
from meeting_pipeline.pipeline_config import ServiceConfig

logger = logging.getLogger(__name__)

RequestT = TypeVar("RequestT")
ResponseT = TypeVar("ResponseT")
T = TypeVar("T")


class Backend(Protocol[RequestT, ResponseT]):
    """A transport to one external engine. Raises only :class:`ServiceError` subclasses."""

    name: str

    async def send(self, request: RequestT) -> ResponseT: ...

    async def ping(self) -> None: ...


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class CallOutcome(Generic[T]):
    """Result of a single attempt."""

    kind: OutcomeKind
    value: T | None = None
    error: ServiceError | None = None


def classify(error: ServiceError) -> OutcomeKind:
    """Map an error onto the retry policy."""
    if isinstance(error, (NetworkError, ServiceTimeoutError)):
        return OutcomeKind.RETRYABLE
    return OutcomeKind.FATAL


class ExternalServiceClient(Generic[RequestT, ResponseT]):
    """Drive a :class:`Backend` with per-call timeout and retry-with-backoff.

    The configuration is validated on construction, before any network
    activity; an invalid config raises :class:`ConfigError`.
    """

    def __init__(
        self,
        backend: Backend[RequestT, ResponseT],
        config: ServiceConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.config = config.validate()
        self._sleep = sleep

    async def _attempt(self, request: RequestT) -> CallOutcome[ResponseT]:
        try:
            value = await asyncio.wait_for(
                self.backend.send(request), timeout=self.config.timeout_seconds
            )
        except TimeoutError:
            error = ServiceTimeoutError(
                f"{self.backend.name} call exceeded {self.config.timeout_seconds}s"
            )
            return CallOutcome(OutcomeKind.RETRYABLE, error=error)
        except ServiceError as exc:
            return CallOutcome(classify(exc), error=exc)
        return CallOutcome(OutcomeKind.SUCCESS, value=value)

    async def call(self, request: RequestT) -> ResponseT:
        """Send *request*, retrying transient failures.

        Raises:
            NetworkError: Transport failure persisted through all retries.
            ServiceTimeoutError: Every attempt timed out.
            RemoteError: The backend rejected the request (never retried).
        """
        attempt = 0
        while True:
            started = time.perf_counter()
            outcome = await self._attempt(request)
            elapsed = time.perf_counter() - started

            if outcome.kind is OutcomeKind.SUCCESS:
                logger.debug("%s call succeeded in %.2fs", self.backend.name, elapsed)
                return outcome.value  # type: ignore[return-value]

            error = outcome.error
            if error is None:
                raise RuntimeError(f"{outcome.kind.value} outcome carries no error")
            if outcome.kind is OutcomeKind.FATAL or attempt >= self.config.max_retries:
                logger.error(
                    "%s call failed after %d attempt(s): %s",
                    self.backend.name,
                    attempt + 1,
                    error,
                )
                raise error

            delay = self.config.backoff.delay(attempt)
            logger.warning(
                "%s call failed (%s); retry %d/%d in %.1fs",
                self.backend.name,
                error,
                attempt + 1,
                self.config.max_retries,
                delay,
            )
            await self._sleep(delay)
            attempt += 1

    async def health_check(self) -> bool:
        """Zero-payload reachability check; not retried and never raises for service errors."""
        try:
            await asyncio.wait_for(self.backend.ping(), timeout=self.config.timeout_seconds)
        except (ServiceError, TimeoutError) as exc:
            logger.warning("%s health check failed: %s", self.backend.name, exc)
            return False
        return True
