"""Canary-analysis stage — scores a canary group against its baseline."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from deployforge.core.canary_engine import CanaryProgress
from deployforge.core.errors import CanaryFail, CanaryInsufficientData, CanaryMarginal
from deployforge.models.canary import INSUFFICIENT_DATA, CanaryVerdict
from deployforge.models.judgment import GateKind, JudgmentRequest
from deployforge.models.ledger import AuditEvent
from deployforge.models.pipeline import CanaryAnalysisStageSpec, StageType
from deployforge.stages.base import BaseStage, StageResult, StageRun


class CanaryAnalysisStage(BaseStage):
    """PASS succeeds; FAIL collapses the canary; MARGINAL fails or asks a human."""

    stage_type = StageType.CANARY_ANALYSIS

    def execute(
        self, spec: CanaryAnalysisStageSpec, run: StageRun
    ) -> dict[str, Any] | StageResult:
        baseline = run.resolve_group(spec.baseline)
        canary = run.resolve_group(spec.canary)
        progress = CanaryProgress.model_validate(run.checkpoint.get("progress", {}))

        result = self.services.canary_engine.analyze(
            spec.config,
            baseline,
            canary,
            progress=progress,
            on_progress=lambda p: run.save_checkpoint(progress=p.model_dump()),
            cancel_event=run.cancel_event,
            deadline=spec.timeout_seconds,
        )
        summary = result.model_dump(mode="json")
        self.audit(run, AuditEvent.CANARY_RESULT, summary)

        if result.verdict == CanaryVerdict.PASS:
            return summary

        if result.verdict == CanaryVerdict.MARGINAL:
            if spec.on_marginal == "judgment":
                ctx = run.context
                expires_at = (
                    run.now() + timedelta(seconds=spec.judgment_timeout_seconds)
                    if spec.judgment_timeout_seconds
                    else None
                )
                prompt = spec.judgment_prompt or (
                    f"Canary {canary} scored {result.aggregate_score:.1f} "
                    f"(pass {spec.config.pass_threshold:g}). Promote anyway?"
                )
                return StageResult.suspend(
                    JudgmentRequest(
                        execution_id=ctx.execution_id,
                        stage_id=spec.id,
                        service=ctx.service,
                        artifact_id=ctx.artifact.artifact_id,
                        prompt=prompt,
                        authorized_actors=spec.authorized_actors,
                        gate=GateKind.CANARY_MARGINAL,
                        requested_at=run.now(),
                        expires_at=expires_at,
                    ),
                    result=summary,
                )
            raise CanaryMarginal(f"canary {canary}: {result.reason}")

        self.services.controller.collapse_canary(run.context, canary, stage_id=spec.id)
        if result.reason == INSUFFICIENT_DATA:
            raise CanaryInsufficientData(f"canary {canary}: {INSUFFICIENT_DATA}")
        raise CanaryFail(f"canary {canary}: {result.reason}")
