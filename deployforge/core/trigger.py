"""Trigger/Dispatcher — turns new artifacts into pipeline executions.

Idempotency lives in the Audit Ledger, not in memory: the unique
``execution_created`` record per (service, artifact_id) means a restarted
poller that sees the same artifact again creates nothing.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from deployforge.adapters import ArtifactRegistry, Clock, InfraController, SystemClock
from deployforge.core.audit_ledger import DuplicateExecutionError
from deployforge.core.errors import TriggerError
from deployforge.core.stage_machine import StageMachine
from deployforge.models.artifacts import Artifact
from deployforge.models.execution import ExecutionContext, PipelineExecution
from deployforge.models.pipeline import PipelineDefinition

logger = logging.getLogger(__name__)


class TriggerPoller:
    """Polls the artifact registry and instantiates executions.

    Parameters
    ----------
    registry:
        Source of the newest artifact per service.
    infra:
        Read for a provisional baseline at instantiation; the executor
        captures the real one when the execution starts.
    machine:
        Persists new executions.
    on_created:
        Called with each newly created execution (the orchestrator uses it
        to schedule the run).
    environment:
        Recorded on every execution context.
    """

    def __init__(
        self,
        registry: ArtifactRegistry,
        infra: InfraController,
        machine: StageMachine,
        *,
        on_created: Callable[[PipelineExecution], None] | None = None,
        environment: str = "production",
        clock: Clock | None = None,
    ) -> None:
        self._registry = registry
        self._infra = infra
        self._machine = machine
        self._store = machine.store
        self._ledger = machine.ledger
        self._on_created = on_created
        self._environment = environment
        self._clock = clock or SystemClock()

    def poll(self, service: str) -> Artifact | None:
        """Newest artifact for *service*, or None if the registry is unreachable."""
        try:
            return self._registry.latest(service)
        except Exception as exc:
            error = TriggerError(f"registry poll for {service} failed: {exc}")
            logger.warning("%s; retrying on next poll", error)
            return None

    def instantiate(
        self,
        definition: PipelineDefinition,
        artifact: Artifact,
        actor: str = "system",
    ) -> PipelineExecution:
        """Create the execution for *artifact*, or return the existing one."""
        if artifact.service != definition.service:
            raise TriggerError(
                f"artifact {artifact.artifact_id} belongs to {artifact.service}, "
                f"not {definition.service}"
            )
        existing = self._existing(artifact)
        if existing is not None:
            return existing

        active = self._store.active_group(definition.service)
        baseline = self._infra.traffic_weights(definition.service)
        execution = PipelineExecution(
            service=definition.service,
            artifact=artifact,
            definition_version=definition.version,
            actor=actor,
            context=ExecutionContext(
                execution_id="",
                service=definition.service,
                artifact=artifact,
                actor=actor,
                environment=self._environment,
                definition_version=definition.version,
                rollback_target=active.group_id if active else None,
                baseline_weights=baseline,
            ),
        )
        execution = execution.model_copy(
            update={
                "context": execution.context.model_copy(
                    update={"execution_id": execution.execution_id}
                )
            }
        )
        try:
            self._machine.create_execution(execution, definition)
        except DuplicateExecutionError:
            # Lost a race with another instantiation of the same artifact.
            existing = self._existing(artifact)
            if existing is None:
                raise
            return existing

        logger.info(
            "Instantiated %s for %s %s (actor=%s, rollback target=%s)",
            execution.execution_id, artifact.service, artifact.artifact_id,
            actor, execution.context.rollback_target,
        )
        if self._on_created is not None:
            self._on_created(execution)
        return execution

    def _existing(self, artifact: Artifact) -> PipelineExecution | None:
        execution_id = self._ledger.find_execution_for_artifact(
            artifact.service, artifact.artifact_id
        )
        if execution_id is None:
            return None
        logger.debug(
            "Artifact %s/%s already processed by %s",
            artifact.service, artifact.artifact_id, execution_id,
        )
        return self._store.get_execution(execution_id)

    def poll_once(self) -> list[PipelineExecution]:
        """Poll every registered service; return executions created this round."""
        created = []
        for definition in self._store.list_definitions():
            artifact = self.poll(definition.service)
            if artifact is None:
                continue
            if self._ledger.find_execution_for_artifact(
                artifact.service, artifact.artifact_id
            ) is not None:
                continue
            created.append(self.instantiate(definition, artifact))
        return created

    def run_forever(self, stop_event: threading.Event, interval_seconds: float) -> None:
        """Poll every *interval_seconds* until *stop_event* is set."""
        logger.info("Trigger polling every %.0fs", interval_seconds)
        while not stop_event.is_set():
            self.poll_once()
            if self._clock.sleep(interval_seconds, stop_event):
                break
        logger.info("Trigger stopped")
