"""In-memory adapter implementations with fault injection.

These back the ``demo`` command and the test-suite.  Nothing here talks to
a network; every failure mode the engine handles can be scripted:

- ``InMemoryInfraController.weight_faults``: queue of ``"ok"``,
  ``"partial"`` or ``"reject"`` consumed by successive weight requests.
- ``InMemoryInfraController.apply_failures``: rejected applies per group.
- ``InMemoryMetricsProvider.fail``: failing queries per population.
- ``FakeClock``: time advances instantly; callbacks fire at set offsets.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from deployforge.adapters import TimeWindow, VerificationResult
from deployforge.core.errors import InfraError, MetricsQueryError
from deployforge.models.artifacts import Artifact
from deployforge.models.server_groups import DeploySpec, HealthReport, ServerGroupHandle

logger = logging.getLogger(__name__)


class InMemoryArtifactRegistry:
    """Registry holding the newest published artifact per service."""

    def __init__(self) -> None:
        self._latest: dict[str, Artifact] = {}
        self.unavailable_polls = 0

    def publish(self, artifact: Artifact) -> None:
        self._latest[artifact.service] = artifact

    def latest(self, service: str) -> Artifact | None:
        if self.unavailable_polls > 0:
            self.unavailable_polls -= 1
            raise ConnectionError("artifact registry unavailable")
        return self._latest.get(service)


class InMemoryInfraController:
    """Server groups and traffic weights held in dictionaries."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.groups: dict[str, ServerGroupHandle] = {}
        self.replicas: dict[str, int] = {}
        self.destroyed: list[str] = []
        self.weights: dict[str, dict[str, int]] = {}
        self.weight_requests: list[tuple[str, dict[str, int]]] = []
        self.apply_failures: dict[str, int] = defaultdict(int)
        self.weight_faults: list[str] = []
        self.health_scripts: dict[str, list[HealthReport]] = {}

    # -- helpers for tests ------------------------------------------------

    def seed_group(self, name: str, replicas: int = 1) -> ServerGroupHandle:
        """Create a group outside any execution (e.g. the current production one)."""
        handle = ServerGroupHandle(
            name=name, endpoint=f"http://{name}.internal", replicas=replicas
        )
        with self._lock:
            self.groups[name] = handle
            self.replicas[name] = replicas
        return handle

    def script_health(self, name: str, *reports: HealthReport) -> None:
        """Return *reports* in order from ``health``; the last one repeats."""
        self.health_scripts[name] = list(reports)

    # -- InfraController --------------------------------------------------

    def apply(self, spec: DeploySpec) -> ServerGroupHandle:
        with self._lock:
            if self.apply_failures[spec.name] > 0:
                self.apply_failures[spec.name] -= 1
                raise InfraError(f"apply rejected for {spec.name}")
            handle = self.groups.get(spec.name)
            if handle is None:
                handle = ServerGroupHandle(
                    name=spec.name,
                    endpoint=f"http://{spec.name}.internal",
                    replicas=spec.replicas,
                )
                self.groups[spec.name] = handle
            self.replicas[spec.name] = spec.replicas
            return handle

    def health(self, handle: ServerGroupHandle) -> HealthReport:
        script = self.health_scripts.get(handle.name)
        if script:
            return script.pop(0) if len(script) > 1 else script[0]
        replicas = self.replicas.get(handle.name, 0)
        return HealthReport(
            ready=handle.name in self.groups and replicas > 0,
            ready_instances=replicas,
            total_instances=replicas,
        )

    def set_traffic_weights(self, service: str, weights: dict[str, int]) -> None:
        with self._lock:
            self.weight_requests.append((service, dict(weights)))
            fault = self.weight_faults.pop(0) if self.weight_faults else "ok"
            if fault != "ok":
                logger.info("Injecting %s fault into weights for %s", fault, service)
            if fault == "reject":
                raise InfraError(f"traffic weights rejected for {service}")
            unknown = [g for g, w in weights.items() if w and g not in self.groups]
            if unknown:
                raise InfraError(f"unknown server groups {unknown}")
            if fault == "partial":
                # Only the first entry of the request takes effect.
                applied = dict(self.weights.get(service, {}))
                first = next(iter(weights))
                applied[first] = weights[first]
            else:
                applied = dict(weights)
            self.weights[service] = {g: w for g, w in applied.items() if w > 0}

    def traffic_weights(self, service: str) -> dict[str, int]:
        with self._lock:
            return dict(self.weights.get(service, {}))

    def scale(self, handle: ServerGroupHandle, replicas: int) -> None:
        with self._lock:
            self.replicas[handle.name] = replicas

    def destroy(self, handle: ServerGroupHandle) -> None:
        with self._lock:
            self.groups.pop(handle.name, None)
            self.replicas.pop(handle.name, None)
            self.destroyed.append(handle.name)


class InMemoryMetricsProvider:
    """Scripted metric values per (query template, population).

    A series is a constant, a list consumed one value per query (the last
    value repeats), or a callable receiving the window.
    """

    def __init__(self) -> None:
        self._series: dict[tuple[str, str], Any] = {}
        self._failures: dict[tuple[str, str], int | None] = {}
        self.queries: list[tuple[str, str, TimeWindow]] = []
        self._lock = threading.Lock()

    def set_series(self, template: str, population: str, values: Any) -> None:
        self._series[(template, population)] = list(values) if isinstance(values, (list, tuple)) else values

    def fail(self, template: str, population: str, times: int | None = None) -> None:
        """Make queries fail; ``times=None`` fails every query."""
        self._failures[(template, population)] = times

    def query(self, template: str, population: str, window: TimeWindow) -> list[float]:
        key = (template, population)
        with self._lock:
            self.queries.append((template, population, window))
            if key in self._failures:
                remaining = self._failures[key]
                if remaining is None:
                    raise MetricsQueryError(f"metrics query failed for {population}")
                if remaining > 0:
                    self._failures[key] = remaining - 1
                    raise MetricsQueryError(f"metrics query failed for {population}")
            series = self._series.get(key)
            if series is None:
                return []
            if callable(series):
                return list(series(window))
            if isinstance(series, list):
                value = series.pop(0) if len(series) > 1 else series[0]
                return [float(value)]
            return [float(series)]


class InMemoryVerificationRunner:
    """Jobs complete after ``polls_to_finish`` polls with a scripted outcome.

    The outcome is ``outcomes[test_spec["suite"]]`` (default: success).
    """

    def __init__(self, polls_to_finish: int = 1) -> None:
        self.polls_to_finish = polls_to_finish
        self.outcomes: dict[str, bool] = {}
        self.started: dict[str, tuple[dict[str, Any], str]] = {}
        self.cancelled: list[str] = []
        self._polls: dict[str, int] = defaultdict(int)
        self._ids = itertools.count(1)

    def start(self, test_spec: dict[str, Any], endpoint: str) -> str:
        job_id = f"job-{next(self._ids)}"
        self.started[job_id] = (dict(test_spec), endpoint)
        return job_id

    def poll(self, job_id: str) -> VerificationResult | None:
        if job_id in self.cancelled:
            return VerificationResult(succeeded=False, detail={"cancelled": True})
        self._polls[job_id] += 1
        if self._polls[job_id] < self.polls_to_finish:
            return None
        test_spec, endpoint = self.started[job_id]
        suite = str(test_spec.get("suite", ""))
        succeeded = self.outcomes.get(suite, True)
        return VerificationResult(
            succeeded=succeeded, detail={"suite": suite, "endpoint": endpoint}
        )

    def cancel(self, job_id: str) -> None:
        self.cancelled.append(job_id)


class FakeClock:
    """Clock whose ``sleep`` advances time instantly.

    ``call_at(offset, fn)`` runs *fn* the first time the clock reaches
    ``start + offset`` seconds, which lets tests decide or terminate
    mid-suspension.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._now = self._start
        self._lock = threading.Lock()
        self._callbacks: list[tuple[datetime, Callable[[], None]]] = []
        self.slept: float = 0.0

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            self.slept += seconds
            due = [cb for at, cb in self._callbacks if at <= self._now]
            self._callbacks = [(at, cb) for at, cb in self._callbacks if at > self._now]
        for callback in due:
            callback()

    def call_at(self, offset_seconds: float, callback: Callable[[], None]) -> None:
        with self._lock:
            self._callbacks.append((self._start + timedelta(seconds=offset_seconds), callback))

    def sleep(self, seconds: float, cancel_event: threading.Event | None = None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        if seconds > 0:
            self.advance(seconds)
        return bool(cancel_event and cancel_event.is_set())
