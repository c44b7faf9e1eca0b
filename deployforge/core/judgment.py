"""Judgment API — lists and decides pending human judgments.

A decision is recorded atomically: exactly one of several concurrent
callers wins (``JudgmentAlreadyDecided`` for the rest).  Recording a
decision does not move the execution by itself; the executor acts on it
through ``StageExecutor.resume_after_judgment``.
"""

from __future__ import annotations

import logging

from deployforge.adapters import Clock, SystemClock
from deployforge.core.errors import (
    JudgmentAlreadyDecided,
    JudgmentError,
    JudgmentNotPending,
    JudgmentUnauthorized,
)
from deployforge.core.executor import TIMEOUT_ACTOR
from deployforge.core.stage_machine import StageMachine
from deployforge.models.execution import ExecutionStatus
from deployforge.models.judgment import JudgmentDecision, JudgmentRequest
from deployforge.models.ledger import AuditEvent

logger = logging.getLogger(__name__)

_DECISIONS = {
    "approve": JudgmentDecision.APPROVED,
    "reject": JudgmentDecision.REJECTED,
}


class JudgmentService:
    """Records decisions on pending judgment requests.

    Parameters
    ----------
    machine:
        Used for the state store and the ``judgment_decided`` record.
    clock:
        Decides whether a request has expired.
    """

    def __init__(self, machine: StageMachine, clock: Clock | None = None) -> None:
        self._machine = machine
        self._store = machine.store
        self._clock = clock or SystemClock()

    def list_pending(self) -> list[JudgmentRequest]:
        """Pending requests whose execution is still awaiting judgment."""
        pending = []
        for request in self._store.list_judgments(JudgmentDecision.PENDING):
            execution = self._store.get_execution(request.execution_id)
            if execution.status == ExecutionStatus.AWAITING_JUDGMENT:
                pending.append(request)
        return pending

    def decide(self, execution_id: str, actor: str, decision: str) -> JudgmentRequest:
        """Record *actor*'s *decision* ("approve" or "reject").

        Raises
        ------
        JudgmentNotPending
            No request exists, the execution is not awaiting judgment, or
            the request has expired.
        JudgmentAlreadyDecided
            Someone decided first.
        JudgmentUnauthorized
            *actor* is not in the request's authorized actors.
        JudgmentError
            *decision* is not one the request allows.
        """
        request = self._store.latest_judgment(execution_id)
        if request is None:
            raise JudgmentNotPending(f"{execution_id} has no judgment request")
        if not request.is_pending:
            raise JudgmentAlreadyDecided(
                f"{execution_id}/{request.stage_id} already {request.decision.value} "
                f"by {request.decided_by}"
            )
        execution = self._store.get_execution(execution_id)
        if execution.status != ExecutionStatus.AWAITING_JUDGMENT:
            raise JudgmentNotPending(f"{execution_id} is {execution.status.value}")
        now = self._clock.now()
        if request.expires_at is not None and now >= request.expires_at:
            raise JudgmentNotPending(f"judgment for {execution_id} expired at {request.expires_at}")
        if not request.is_authorized(actor):
            logger.warning("Unauthorized judgment attempt on %s by %s", execution_id, actor)
            raise JudgmentUnauthorized(f"{actor} may not decide {execution_id}")
        if decision not in request.allowed_decisions or decision not in _DECISIONS:
            raise JudgmentError(
                f"decision {decision!r} not allowed; expected one of {request.allowed_decisions}"
            )
        return self._record(request, _DECISIONS[decision], actor)

    def expire_due(self) -> list[JudgmentRequest]:
        """Reject every pending request past its ``expires_at``."""
        now = self._clock.now()
        expired = []
        for request in self._store.list_judgments(JudgmentDecision.PENDING):
            if request.expires_at is None or now < request.expires_at:
                continue
            try:
                expired.append(self._record(request, JudgmentDecision.REJECTED, TIMEOUT_ACTOR))
            except JudgmentAlreadyDecided:
                continue
            logger.warning(
                "Judgment for %s/%s expired", request.execution_id, request.stage_id
            )
        return expired

    def _record(
        self, request: JudgmentRequest, decision: JudgmentDecision, actor: str
    ) -> JudgmentRequest:
        decided = request.model_copy(
            update={
                "decision": decision,
                "decided_by": actor,
                "decided_at": self._clock.now(),
            }
        )
        with self._store.transaction() as tx:
            if not self._store.record_decision(decided, conn=tx):
                raise JudgmentAlreadyDecided(
                    f"{request.execution_id}/{request.stage_id} was decided concurrently"
                )
            execution = self._store.get_execution(request.execution_id, conn=tx)
            self._machine.record_event(
                execution,
                AuditEvent.JUDGMENT_DECIDED,
                stage_id=request.stage_id,
                actor=actor,
                payload={"decision": decision.value, "gate": request.gate.value},
                conn=tx,
            )
        logger.info(
            "Judgment %s/%s %s by %s",
            request.execution_id, request.stage_id, decision.value, actor,
        )
        return decided
