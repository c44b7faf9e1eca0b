"""Abstract base stage with enforced lifecycle.

Every concrete stage inherits from BaseStage and implements only
``execute()``.  The ``run_stage()`` wrapper is **not overridable**: it is
the stage boundary where engine errors become a ``StageResult``:

    execute -> SUCCEEDED
            -> SUSPENDED (a judgment is needed)
            -> FAILED / TIMED_OUT (error kind and escalation recorded)

Stages never read ambient state.  Everything an invocation may touch is on
the ``StageRun`` passed to ``execute``.
"""

from __future__ import annotations

import abc
import logging
import re
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, ClassVar, final

from pydantic import BaseModel, ConfigDict

from deployforge.adapters import Clock, InfraController, VerificationRunner
from deployforge.core.audit_ledger import AuditLedger
from deployforge.core.canary_engine import CanaryAnalysisEngine
from deployforge.core.cutover import TrafficController
from deployforge.core.errors import (
    CanaryTimeout,
    DeployforgeError,
    HealthTimeout,
    StageCancelled,
    VerificationTimeout,
)
from deployforge.core.state_store import ExecutionStore
from deployforge.models.execution import ExecutionContext, StageStatus
from deployforge.models.judgment import JudgmentRequest
from deployforge.models.ledger import AuditEvent, AuditRecord
from deployforge.models.pipeline import ACTIVE_REF, StageType
from deployforge.models.server_groups import ServerGroup

logger = logging.getLogger(__name__)

_TIMEOUT_ERRORS = (HealthTimeout, VerificationTimeout, CanaryTimeout)
_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9-]+")


class StageOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SUSPENDED = "suspended"


class StageResult(BaseModel):
    """What one stage invocation produced."""

    model_config = ConfigDict(frozen=True)

    outcome: StageOutcome
    result: dict[str, Any] = {}
    error_kind: str = ""
    error: str = ""
    always_escalates: bool = False
    judgment: JudgmentRequest | None = None

    @property
    def status(self) -> StageStatus:
        """Stage status this result finishes with (SUSPENDED stays RUNNING)."""
        if self.outcome == StageOutcome.SUSPENDED:
            return StageStatus.RUNNING
        return StageStatus(self.outcome.value)

    @property
    def ok(self) -> bool:
        return self.outcome == StageOutcome.SUCCEEDED

    @classmethod
    def suspend(
        cls, judgment: JudgmentRequest, result: dict[str, Any] | None = None
    ) -> StageResult:
        return cls(outcome=StageOutcome.SUSPENDED, judgment=judgment, result=result or {})


class StageServices:
    """Collaborators shared by every stage implementation."""

    def __init__(
        self,
        *,
        store: ExecutionStore,
        ledger: AuditLedger,
        infra: InfraController,
        controller: TrafficController,
        canary_engine: CanaryAnalysisEngine,
        runner: VerificationRunner,
        clock: Clock,
        deploy_retries: int = 3,
        deploy_backoff_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.infra = infra
        self.controller = controller
        self.canary_engine = canary_engine
        self.runner = runner
        self.clock = clock
        self.deploy_retries = deploy_retries
        self.deploy_backoff_seconds = deploy_backoff_seconds


class StageRun:
    """One invocation of one stage.

    Parameters
    ----------
    context:
        The execution context as of the stage start.
    checkpoint:
        Progress persisted by an earlier, interrupted invocation.
    save_checkpoint:
        Persists the checkpoint dict.
    update_context:
        Persists a context change; receives a function of the freshest
        context so parallel stages compose.
    """

    def __init__(
        self,
        *,
        context: ExecutionContext,
        stage_id: str,
        timeout_seconds: float | None,
        checkpoint: dict[str, Any],
        clock: Clock,
        cancel_event: threading.Event,
        save_checkpoint: Callable[[dict[str, Any]], None],
        update_context: Callable[[Callable[[ExecutionContext], ExecutionContext]], ExecutionContext],
    ) -> None:
        self._context = context
        self.stage_id = stage_id
        self._clock = clock
        self.cancel_event = cancel_event
        self._save = save_checkpoint
        self._update_context = update_context
        self.checkpoint: dict[str, Any] = dict(checkpoint)
        if "started_at" not in self.checkpoint:
            self.save_checkpoint(started_at=clock.now().isoformat())
        self.started_at = datetime.fromisoformat(self.checkpoint["started_at"])
        self.deadline = (
            self.started_at + timedelta(seconds=timeout_seconds)
            if timeout_seconds is not None
            else None
        )

    @property
    def context(self) -> ExecutionContext:
        return self._context

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def now(self) -> datetime:
        return self._clock.now()

    def remaining(self) -> float | None:
        """Seconds until the stage deadline, or None without one."""
        if self.deadline is None:
            return None
        return (self.deadline - self._clock.now()).total_seconds()

    def sleep(self, seconds: float) -> None:
        """Suspend; raises ``StageCancelled`` if the execution is terminated."""
        if self._clock.sleep(seconds, self.cancel_event):
            raise StageCancelled(f"stage {self.stage_id} cancelled")

    def save_checkpoint(self, **values: Any) -> None:
        self.checkpoint.update(values)
        self._save(dict(self.checkpoint))

    def update_context(
        self, change: Callable[[ExecutionContext], ExecutionContext]
    ) -> ExecutionContext:
        self._context = self._update_context(change)
        return self._context

    def resolve_group(self, ref: str) -> str:
        """Turn a stage's group reference into a server group id."""
        if ref == ACTIVE_REF:
            if self._context.rollback_target is None:
                raise DeployforgeError(
                    f"stage {self.stage_id}: {ACTIVE_REF} requested but the "
                    f"service had no ACTIVE group when the execution began"
                )
            return self._context.rollback_target
        try:
            return self._context.server_groups[ref]
        except KeyError:
            raise DeployforgeError(
                f"stage {self.stage_id}: deploy stage {ref!r} produced no server group"
            ) from None


def group_name(context: ExecutionContext, stage_id: str) -> str:
    """Server group name, stable per (service, artifact, deploy stage)."""
    raw = f"{context.service}-{context.artifact.slug}-{stage_id}".lower()
    return _UNSAFE_NAME_CHARS.sub("-", raw).strip("-")


class BaseStage(abc.ABC):
    """Abstract base for all Deployforge stage types.

    Subclasses **must** set ``stage_type`` and implement ``execute``.
    Subclasses **must not** override ``run_stage()``.
    """

    stage_type: ClassVar[StageType]

    def __init__(self, services: StageServices) -> None:
        self.services = services

    @abc.abstractmethod
    def execute(self, spec: Any, run: StageRun) -> dict[str, Any] | StageResult:
        """Run the stage's core logic.

        Return a JSON-safe result dict on success, a ``StageResult`` to
        suspend, or raise a ``DeployforgeError`` on failure.
        """
        ...

    @final
    def run_stage(self, spec: Any, run: StageRun) -> StageResult:
        """Execute the stage and translate errors.  **Do not override.**"""
        logger.info("%s [%s] starting", self.stage_type.value, spec.id)
        try:
            outcome = self.execute(spec, run)
        except DeployforgeError as exc:
            timed_out = isinstance(exc, _TIMEOUT_ERRORS)
            log = logger.warning if not exc.always_escalates else logger.error
            log("%s [%s] %s: %s", self.stage_type.value, spec.id, exc.kind, exc)
            return StageResult(
                outcome=StageOutcome.TIMED_OUT if timed_out else StageOutcome.FAILED,
                error_kind=exc.kind,
                error=str(exc),
                always_escalates=exc.always_escalates,
            )
        except Exception as exc:
            logger.exception("%s [%s] crashed", self.stage_type.value, spec.id)
            return StageResult(
                outcome=StageOutcome.FAILED,
                error_kind="error",
                error=f"{type(exc).__name__}: {exc}",
            )

        if isinstance(outcome, StageResult):
            return outcome
        logger.info("%s [%s] succeeded", self.stage_type.value, spec.id)
        return StageResult(outcome=StageOutcome.SUCCEEDED, result=outcome)

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def group(self, run: StageRun, ref: str) -> ServerGroup:
        group_id = run.resolve_group(ref)
        group = self.services.store.get_group(run.context.service, group_id)
        if group is None:
            raise DeployforgeError(f"server group {group_id} is not registered")
        return group

    def audit(
        self,
        run: StageRun,
        event: AuditEvent,
        payload: dict[str, Any],
        *,
        conn: Any = None,
    ) -> None:
        ctx = run.context
        self.services.ledger.append(
            AuditRecord(
                execution_id=ctx.execution_id,
                stage_id=run.stage_id,
                event=event,
                payload=payload,
                service=ctx.service,
                artifact_id=ctx.artifact.artifact_id,
            ),
            conn=conn,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} stage_type={self.stage_type.value!r}>"
