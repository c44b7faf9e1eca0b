"""Narrow typed interfaces to the engine's external collaborators.

Every collaborator is a ``Protocol``: anything with the right methods
plugs in.  In-memory implementations for tests and the demo live in
``deployforge.adapters.memory``.

Weight maps passed to and read back from ``InfraController`` are keyed
by server group id and sum to 100.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from deployforge.models.artifacts import Artifact
from deployforge.models.server_groups import DeploySpec, HealthReport, ServerGroupHandle


class TimeWindow(BaseModel):
    """Half-open query window ``[start, end)``."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime


class VerificationResult(BaseModel):
    """Completion signal of a verification job."""

    model_config = ConfigDict(frozen=True)

    succeeded: bool
    detail: dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class ArtifactRegistry(Protocol):
    """Source of new builds."""

    def latest(self, service: str) -> Artifact | None:
        """Return the newest artifact for *service*, or None.

        Raises any exception on transport failure; the trigger treats it as
        a retryable ``TriggerError``.
        """
        ...


@runtime_checkable
class InfraController(Protocol):
    """Creates server groups and shifts traffic between them."""

    def apply(self, spec: DeploySpec) -> ServerGroupHandle:
        """Create or update the group named ``spec.name``.

        Must be idempotent on ``spec.name``: applying the same spec twice
        returns the same handle.  Raises ``InfraError`` on rejection.
        """
        ...

    def health(self, handle: ServerGroupHandle) -> HealthReport:
        ...

    def set_traffic_weights(self, service: str, weights: dict[str, int]) -> None:
        """Apply a complete weight map in one request.  Raises ``InfraError``."""
        ...

    def traffic_weights(self, service: str) -> dict[str, int]:
        """Read back the weight map actually in effect."""
        ...

    def scale(self, handle: ServerGroupHandle, replicas: int) -> None:
        ...

    def destroy(self, handle: ServerGroupHandle) -> None:
        ...


@runtime_checkable
class MetricsProvider(Protocol):
    """Read-only access to time-series metrics."""

    def query(self, template: str, population: str, window: TimeWindow) -> list[float]:
        """Return the samples of *template* for *population* within *window*.

        Raises ``MetricsQueryError`` on failure; the canary engine counts that as a
        missing sample.
        """
        ...


@runtime_checkable
class VerificationRunner(Protocol):
    """Runs a test suite against a server group endpoint."""

    def start(self, test_spec: dict[str, Any], endpoint: str) -> str:
        """Start a job and return its id."""
        ...

    def poll(self, job_id: str) -> VerificationResult | None:
        """Return the result once the job finished, None while it runs."""
        ...

    def cancel(self, job_id: str) -> None:
        ...


@runtime_checkable
class Clock(Protocol):
    """Time source for every suspension in the engine."""

    def now(self) -> datetime:
        ...

    def sleep(self, seconds: float, cancel_event: threading.Event | None = None) -> bool:
        """Sleep up to *seconds*.  Return True if *cancel_event* was set."""
        ...


# ---------------------------------------------------------------------------
# Default implementations
# ---------------------------------------------------------------------------


class SystemClock:
    """Wall clock; sleeps wake early when the cancel event is set."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float, cancel_event: threading.Event | None = None) -> bool:
        if seconds <= 0:
            return bool(cancel_event and cancel_event.is_set())
        if cancel_event is None:
            time.sleep(seconds)
            return False
        return cancel_event.wait(seconds)


__all__ = [
    "ArtifactRegistry",
    "Clock",
    "InfraController",
    "MetricsProvider",
    "SystemClock",
    "TimeWindow",
    "VerificationResult",
    "VerificationRunner",
]
