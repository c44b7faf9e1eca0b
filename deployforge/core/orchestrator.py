"""Deployment orchestrator — the central coordinator for Deployforge.

The Orchestrator wires the AuditLedger, ExecutionStore, StageMachine,
TrafficController, CanaryAnalysisEngine, stage registry, StageExecutor,
JudgmentService, TriggerPoller and NotificationDispatcher into one engine.
Adapters (registry, infrastructure, metrics, verification runner, clock)
are supplied by the caller.

Executions for different services run concurrently on a thread pool;
cutovers for the same service are serialized by the traffic controller.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Any

from deployforge.adapters import (
    ArtifactRegistry,
    Clock,
    InfraController,
    MetricsProvider,
    SystemClock,
    VerificationRunner,
)
from deployforge.config import ProdConfig
from deployforge.core.audit_ledger import AuditLedger
from deployforge.core.canary_engine import CanaryAnalysisEngine
from deployforge.core.cutover import TrafficController
from deployforge.core.errors import PipelineDefinitionError, RollbackFailure
from deployforge.core.executor import StageExecutor
from deployforge.core.judgment import JudgmentService
from deployforge.core.production_guard import enforce_production_constraints
from deployforge.core.stage_machine import StageMachine
from deployforge.core.state_store import ExecutionStore
from deployforge.core.trigger import TriggerPoller
from deployforge.models.artifacts import Artifact
from deployforge.models.execution import PipelineExecution
from deployforge.models.judgment import JudgmentDecision, JudgmentRequest
from deployforge.models.notifications import NotificationSeverity
from deployforge.models.pipeline import PipelineDefinition, load_pipeline_definition
from deployforge.models.server_groups import ServerGroup, ServerGroupHandle, ServerGroupRole
from deployforge.routing.dispatcher import NotificationDispatcher
from deployforge.routing.sinks import BaseSink
from deployforge.routing.sinks.email import EmailSink
from deployforge.routing.sinks.local_file import LocalFileSink
from deployforge.stages import StageServices, build_stage_registry

logger = logging.getLogger(__name__)


class Orchestrator:
    """Central deployment orchestrator.

    Parameters
    ----------
    registry, infra, metrics, runner:
        External collaborators (see ``deployforge.adapters``).
    clock:
        Time source for every suspension.  Defaults to the system clock.
    prod_config:
        Engine configuration.  Uses environment defaults if not provided.
    dispatcher:
        Notification routing.  If not provided, a dispatcher is created
        with the sinks named by ``prod_config.notification_sinks`` on the
        default channel; register more on ``orchestrator.dispatcher``.
    """

    def __init__(
        self,
        *,
        registry: ArtifactRegistry,
        infra: InfraController,
        metrics: MetricsProvider,
        runner: VerificationRunner,
        clock: Clock | None = None,
        prod_config: ProdConfig | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self._prod_config = prod_config or ProdConfig()

        # Production guard fails hard if production constraints are violated
        enforce_production_constraints(self._prod_config)

        self.clock = clock or SystemClock()
        self.infra = infra

        # Core subsystems (ledger and state share one database file)
        db_path = Path(self._prod_config.db_path)
        self.ledger = AuditLedger(db_path)
        self.store = ExecutionStore(db_path)
        self.machine = StageMachine(self.store, self.ledger)
        self.controller = TrafficController(
            infra,
            self.store,
            self.ledger,
            lock_policy=self._prod_config.cutover_lock_policy,
            lock_timeout_seconds=self._prod_config.cutover_lock_timeout_seconds,
        )
        self.canary_engine = CanaryAnalysisEngine(metrics, self.clock)
        if dispatcher is None:
            dispatcher = NotificationDispatcher(
                default_channel=self._prod_config.default_channel
            )
            for sink in self._configured_sinks():
                dispatcher.register_sink(sink)
        self.dispatcher = dispatcher

        services = StageServices(
            store=self.store,
            ledger=self.ledger,
            infra=infra,
            controller=self.controller,
            canary_engine=self.canary_engine,
            runner=runner,
            clock=self.clock,
            deploy_retries=self._prod_config.deploy_retries,
            deploy_backoff_seconds=self._prod_config.deploy_backoff_seconds,
        )
        self.executor = StageExecutor(
            self.machine,
            self.controller,
            build_stage_registry(services),
            self.clock,
            dispatcher=self.dispatcher,
            urgent_channel=self._prod_config.urgent_channel,
            max_parallel=self._prod_config.max_workers,
        )
        self.judgments = JudgmentService(self.machine, self.clock)
        self.trigger = TriggerPoller(
            registry,
            infra,
            self.machine,
            environment=self._prod_config.environment,
            clock=self.clock,
        )

        self._pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Definitions and bootstrap
    # ------------------------------------------------------------------

    def register_definition(
        self, definition: PipelineDefinition | Path | str | dict[str, Any]
    ) -> PipelineDefinition:
        """Validate and store a pipeline definition for its service."""
        if not isinstance(definition, PipelineDefinition):
            definition = load_pipeline_definition(definition)
        self.store.save_definition(definition)
        logger.info(
            "Registered pipeline for %s (version %s, %d stages)",
            definition.service, definition.version, len(list(definition.iter_stages())),
        )
        return definition

    def adopt_active_group(
        self,
        service: str,
        group_id: str,
        artifact_id: str,
        handle: ServerGroupHandle | None = None,
        *,
        actor: str = "operator",
    ) -> dict[str, str]:
        """Bring an existing production group under management as ACTIVE."""
        group = ServerGroup(
            service=service,
            group_id=group_id,
            artifact_id=artifact_id,
            role=ServerGroupRole.DISABLED,
            handle=handle or ServerGroupHandle(name=group_id),
            created_by=f"bootstrap:{service}",
        )
        return self.controller.adopt(group, actor=actor)

    # ------------------------------------------------------------------
    # Execution lifecycle
    # ------------------------------------------------------------------

    def instantiate(
        self, service: str, artifact: Artifact, actor: str = "system"
    ) -> PipelineExecution:
        """Operator-initiated instantiation; same path as the trigger."""
        definition = self.store.get_definition(service)
        if definition is None:
            raise PipelineDefinitionError(f"no pipeline registered for {service}")
        return self.trigger.instantiate(definition, artifact, actor)

    def run(self, execution_id: str) -> PipelineExecution:
        """Drive an execution in the calling thread."""
        return self.executor.run(execution_id)

    def submit(self, execution_id: str) -> Future[PipelineExecution]:
        """Drive an execution on the worker pool.

        A run that raises is logged when it finishes, so callers that
        drop the future still see the failure.
        """
        future = self._workers().submit(self.executor.run, execution_id)
        future.add_done_callback(partial(_log_run_failure, execution_id))
        return future

    def terminate(self, execution_id: str, actor: str) -> PipelineExecution:
        return self.executor.terminate(execution_id, actor)

    def rollback(
        self, execution_id: str, actor: str, reason: str = "operator rollback"
    ) -> PipelineExecution:
        """Operator rollback to the execution's baseline.

        A live execution is terminated (which rolls back once a cutover was
        reached).  A finished execution keeps its status; its baseline
        weights and rollback target are restored and the ledger records it.
        """
        execution = self.store.get_execution(execution_id)
        if not execution.is_terminal:
            return self.executor.terminate(execution_id, actor)
        try:
            self.controller.rollback(execution.context, actor=actor, reason=reason)
        except RollbackFailure as exc:
            self.executor.notify(
                execution,
                self._prod_config.urgent_channel,
                event="rollback_failed",
                severity=NotificationSeverity.CRITICAL,
                message=f"operator rollback by {actor} failed: {exc}",
                urgent=True,
            )
            raise
        return self.store.get_execution(execution_id)

    # ------------------------------------------------------------------
    # Judgments
    # ------------------------------------------------------------------

    def decide(
        self, execution_id: str, actor: str, decision: str, *, resume: bool = True
    ) -> JudgmentRequest:
        """Record a judgment decision and, by default, act on it at once."""
        decided = self.judgments.decide(execution_id, actor, decision)
        if resume:
            self.executor.resume_after_judgment(execution_id)
        return decided

    def tick(self) -> list[PipelineExecution]:
        """Expire overdue judgments and resume every decided one."""
        self.judgments.expire_due()
        resumed = []
        for request in self.store.list_judgments(unresumed_only=True):
            if request.decision == JudgmentDecision.PENDING:
                continue
            resumed.append(self.executor.resume_after_judgment(request.execution_id))
        self.executor.drain_outbox()
        return resumed

    # ------------------------------------------------------------------
    # Trigger and recovery
    # ------------------------------------------------------------------

    def poll_once(self, *, wait: bool = False) -> list[PipelineExecution]:
        """Poll the registry; run new executions (inline when *wait*)."""
        created = self.trigger.poll_once()
        for execution in created:
            if wait:
                self.run(execution.execution_id)
            else:
                self.submit(execution.execution_id)
        return created

    def serve(self, stop_event: threading.Event) -> None:
        """Poll, tick and run executions until *stop_event* is set."""
        interval = self._prod_config.poll_interval_seconds
        logger.info("Serving (poll interval %.0fs)", interval)
        self.recover()
        while not stop_event.is_set():
            self.poll_once()
            self.tick()
            if self.clock.sleep(interval, stop_event):
                break
        self.shutdown()

    def recover(self) -> list[PipelineExecution]:
        """Resume every non-terminal execution after a restart."""
        self.executor.drain_outbox()
        recovered = [
            self.executor.recover_one(execution.execution_id)
            for execution in self.executor.recoverable()
        ]
        if recovered:
            logger.info("Recovered %d execution(s)", len(recovered))
        return recovered

    def shutdown(self, wait: bool = True) -> None:
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    def _configured_sinks(self) -> list[BaseSink]:
        sinks: list[BaseSink] = []
        for name in self._prod_config.notification_sinks:
            if name == "local_file":
                sinks.append(LocalFileSink(self._prod_config.events_dir))
            elif name == "email":
                sinks.append(
                    EmailSink(
                        self._prod_config.email_recipient,
                        sender=self._prod_config.email_sender,
                    )
                )
        return sinks

    def _workers(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._prod_config.max_workers,
                    thread_name_prefix="deployforge-exec",
                )
            return self._pool


def _log_run_failure(execution_id: str, future: Future[PipelineExecution]) -> None:
    if future.cancelled():
        logger.warning("Run of %s was cancelled before it started", execution_id)
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Run of %s crashed", execution_id, exc_info=exc)
