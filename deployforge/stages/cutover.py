"""Cutover stage — hands traffic to the candidate through the controller."""

from __future__ import annotations

import logging
from typing import Any

from deployforge.core.errors import PipelineDefinitionError
from deployforge.models.canary import CanaryResult
from deployforge.models.execution import ExecutionContext
from deployforge.models.ledger import AuditEvent
from deployforge.models.pipeline import CutoverStageSpec, CutoverStrategy, StageType
from deployforge.stages.base import BaseStage, StageRun

logger = logging.getLogger(__name__)


class CutoverStage(BaseStage):
    """Blue/green switch or gated canary ramp.

    Once the service lock is held, and before the first weight write, the
    context is marked ``cutover_reached`` so any later escalation (or a
    crash mid-cutover) rolls back.  On an execution's first cutover the
    rollback target and baseline weights are re-read under the lock: a
    cutover of the same service that finished after this execution
    started is what a rollback must return to.
    """

    stage_type = StageType.CUTOVER

    def execute(self, spec: CutoverStageSpec, run: StageRun) -> dict[str, Any]:
        controller = self.services.controller
        candidate = run.resolve_group(spec.candidate)

        def claim(active_id: str | None, weights: dict[str, int]) -> ExecutionContext:
            def change(current: ExecutionContext) -> ExecutionContext:
                if not current.cutover_reached and active_id != current.rollback_target:
                    logger.warning(
                        "%s: ACTIVE group of %s moved from %s to %s since start; "
                        "rollback target updated",
                        current.execution_id, current.service,
                        current.rollback_target, active_id,
                    )
                if not current.cutover_reached:
                    current = current.with_baseline(active_id, weights)
                return current.with_cutover_reached()

            return run.update_context(change)

        if spec.strategy == CutoverStrategy.BLUE_GREEN:
            return controller.blue_green(
                run.context, candidate, stage_id=spec.id, on_locked=claim
            )

        config = spec.analysis
        if config is None:
            raise PipelineDefinitionError(f"cutover {spec.id!r}: canary_ramp needs analysis")

        def gate(step: int) -> CanaryResult:
            baseline = run.context.rollback_target or candidate
            remaining = run.remaining()
            result = self.services.canary_engine.analyze(
                config,
                baseline,
                candidate,
                cancel_event=run.cancel_event,
                deadline=None if remaining is None else max(remaining, 0.0),
            )
            self.audit(run, AuditEvent.CANARY_RESULT, {"step": step, **result.model_dump(mode="json")})
            return result

        return controller.canary_ramp(
            run.context, candidate, list(spec.steps), gate, stage_id=spec.id, on_locked=claim
        )
